"""Versioned output signatures for classifying assistant runs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from walph.errors import ConfigError

DEFAULT_SIGNATURES_PATH = Path(__file__).resolve().parent / "data" / "signatures.yaml"


@dataclass(frozen=True)
class StatusMarkers:
    start: str
    end: str


@dataclass(frozen=True)
class SignatureSet:
    version: int
    status_markers: tuple[StatusMarkers, ...]
    rate_limit: tuple[re.Pattern[str], ...]
    api_error: tuple[re.Pattern[str], ...]
    stuck: tuple[str, ...]
    rate_limit_detail: tuple[re.Pattern[str], ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str = "signatures") -> "SignatureSet":
        try:
            markers = tuple(
                StatusMarkers(start=str(item["start"]).strip(), end=str(item["end"]).strip())
                for item in data.get("status_markers", [])
            )
            return cls(
                version=int(data.get("version", 1)),
                status_markers=markers,
                rate_limit=_compile(data.get("rate_limit", [])),
                api_error=_compile(data.get("api_error", [])),
                stuck=tuple(str(token) for token in data.get("stuck", [])),
                rate_limit_detail=_compile(data.get("rate_limit_detail", [])),
            )
        except (KeyError, TypeError, ValueError, re.error) as exc:
            raise ConfigError(f"Invalid signature definitions in {source}: {exc}") from exc


def _compile(patterns: list[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


def load_signatures(path: Path | None = None) -> SignatureSet:
    """Load a signature set from YAML (the bundled file when *path* is None)."""
    resolved = path or DEFAULT_SIGNATURES_PATH
    if not resolved.exists():
        raise ConfigError(f"Signature file not found: {resolved}")
    try:
        with resolved.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse signature file {resolved}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Signature file {resolved} must contain a mapping")
    return SignatureSet.from_dict(data, source=str(resolved))


@lru_cache(maxsize=1)
def default_signatures() -> SignatureSet:
    return load_signatures()
