"""Project config file loading for walph tools."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from walph.config.models import (
    Mode,
    RuntimeSettings,
    ToolProfile,
    _to_bool,
    _to_command,
    _to_non_negative_float,
    _to_positive_int,
)
from walph.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"

_SCALAR_FIELDS = {
    "max_iterations": _to_positive_int,
    "iteration_timeout": _to_non_negative_float,
    "termination_grace": _to_non_negative_float,
    "iteration_delay": _to_non_negative_float,
    "rate_limit_retry_delay": _to_non_negative_float,
    "assistant_command": _to_command,
    "estimate_tokens": _to_bool,
}

_BREAKER_FIELDS = ("no_change_threshold", "same_error_threshold", "no_commit_threshold")


def load_raw_config(config_path: Path) -> dict[str, Any]:
    """Load the raw YAML mapping; a missing file is an empty config."""
    if not config_path.exists():
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")
    return loaded


def parse_file_settings(raw: dict[str, Any], tool: ToolProfile, source: str = CONFIG_FILENAME) -> dict[str, Any]:
    """Validate a raw config mapping field by field against the allow list."""
    parsed: dict[str, Any] = {}
    ignored: list[str] = []

    for key, value in raw.items():
        if value is None:
            continue
        if key in _SCALAR_FIELDS:
            parsed[key] = _SCALAR_FIELDS[key](value, f"{source}: {key}")
        elif key == "models":
            parsed["models"] = _parse_models(value, tool, source)
        elif key == "circuit_breaker":
            parsed.update(_parse_breaker(value, source))
        elif key == "signatures_file":
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"{source}: signatures_file must be a path string")
            parsed["signatures_file"] = value.strip()
        else:
            ignored.append(str(key))

    if "iteration_timeout" in parsed and parsed["iteration_timeout"] <= 0:
        raise ConfigError(f"{source}: iteration_timeout must be greater than zero")
    if ignored:
        logger.warning("Ignoring unknown config keys in %s: %s", source, ", ".join(sorted(ignored)))
        parsed["ignored_keys"] = tuple(sorted(ignored))
    return parsed


def _parse_models(value: Any, tool: ToolProfile, source: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ConfigError(f"{source}: models must be a mapping of mode to model name")
    allowed = {mode.value for mode in tool.modes}
    models: dict[str, str] = {}
    for mode_name, model in value.items():
        if mode_name not in allowed:
            raise ConfigError(
                f"{source}: unknown mode '{mode_name}' in models (expected one of {', '.join(sorted(allowed))})"
            )
        if not isinstance(model, str) or not model.strip():
            raise ConfigError(f"{source}: model for '{mode_name}' must be a non-empty string")
        models[mode_name] = model.strip()
    return models


def _parse_breaker(value: Any, source: str) -> dict[str, int]:
    if not isinstance(value, dict):
        raise ConfigError(f"{source}: circuit_breaker must be a mapping")
    thresholds: dict[str, int] = {}
    for key, threshold in value.items():
        if key not in _BREAKER_FIELDS:
            raise ConfigError(f"{source}: unknown circuit_breaker key '{key}'")
        thresholds[key] = _to_positive_int(threshold, f"{source}: circuit_breaker.{key}")
    return thresholds


def load_settings(
    tool: ToolProfile,
    mode: Mode,
    project_dir: Path,
    environ: dict[str, str] | None = None,
    overrides: dict[str, Any] | None = None,
) -> RuntimeSettings:
    config_path = project_dir / tool.tool_dir / CONFIG_FILENAME
    raw = load_raw_config(config_path)
    file_settings = parse_file_settings(raw, tool, source=str(config_path))
    return RuntimeSettings.from_sources(
        tool,
        mode,
        settings=file_settings,
        environ=environ,
        overrides=overrides,
    )


def default_config_text(tool: ToolProfile) -> str:
    """Commented config written on first run."""
    mode_lines = "\n".join(
        f"#   {mode.value}: {tool.default_models[mode]}" for mode in tool.modes
    )
    return (
        f"# {tool.display_name} configuration\n"
        "# Uncomment and modify as needed.\n"
        f"# Environment variables ({tool.env_prefix}_*) and command-line flags override these values.\n"
        "\n"
        "# Maximum iterations before stopping\n"
        f"# max_iterations: {tool.max_iterations}\n"
        "\n"
        "# Models per mode (aliases such as opus/sonnet or full model names)\n"
        "# models:\n"
        f"{mode_lines}\n"
        "\n"
        "# Seconds before a hung assistant run is terminated\n"
        f"# iteration_timeout: {tool.iteration_timeout}\n"
        "\n"
        "# Seconds to wait after a rate limit before retrying\n"
        "# rate_limit_retry_delay: 60\n"
        "\n"
        "# circuit_breaker:\n"
        f"#   no_change_threshold: {tool.thresholds.no_change}\n"
        f"#   same_error_threshold: {tool.thresholds.same_error}\n"
        f"#   no_commit_threshold: {tool.thresholds.no_commit}\n"
    )
