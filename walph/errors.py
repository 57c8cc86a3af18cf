"""Exceptions raised at startup; iteration failures never surface as exceptions."""


class WalphError(Exception):
    """Base error for walph."""


class ConfigError(WalphError):
    """Invalid configuration, missing prompt template or missing dependency."""
