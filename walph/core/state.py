"""Persistent circuit breaker record."""

from pathlib import Path
from typing import Any

from walph.utils import read_json, write_json

DEFAULT_BREAKER_STATE: dict[str, Any] = {
    "no_change_count": 0,
    "same_error_count": 0,
    "no_commit_count": 0,
    "last_error": "",
    "last_revision": "",
    "stuck": False,
}


class CircuitBreakerState:
    """Counters and anchors the circuit breaker keeps between iterations and runs."""

    def __init__(self, state_path: Path):
        self.path = state_path
        self._data: dict[str, Any] = {}
        self.load()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> None:
        """Load state from disk, filling missing or malformed fields with defaults."""
        raw = read_json(self.path, DEFAULT_BREAKER_STATE)
        if not isinstance(raw, dict):
            raw = {}
        data = dict(DEFAULT_BREAKER_STATE)
        for key in ("no_change_count", "same_error_count", "no_commit_count"):
            value = raw.get(key, 0)
            data[key] = value if isinstance(value, int) and not isinstance(value, bool) and value >= 0 else 0
        for key in ("last_error", "last_revision"):
            value = raw.get(key, "")
            data[key] = value if isinstance(value, str) else ""
        data["stuck"] = raw.get("stuck") is True
        self._data = data

    def save(self) -> None:
        """Persist state to disk."""
        write_json(self.path, self._data)

    @property
    def no_change_count(self) -> int:
        return self._data["no_change_count"]

    @property
    def same_error_count(self) -> int:
        return self._data["same_error_count"]

    @property
    def no_commit_count(self) -> int:
        return self._data["no_commit_count"]

    @property
    def last_error(self) -> str:
        return self._data["last_error"]

    @property
    def last_revision(self) -> str:
        return self._data["last_revision"]

    @property
    def stuck(self) -> bool:
        return self._data["stuck"]

    def to_dict(self) -> dict[str, Any]:
        """Return state as dictionary."""
        return dict(self._data)

    def update(self, data: dict[str, Any]) -> None:
        """Update multiple fields at once."""
        unknown = set(data) - set(DEFAULT_BREAKER_STATE)
        if unknown:
            raise KeyError(f"Unknown circuit breaker fields: {', '.join(sorted(unknown))}")
        self._data.update(data)
        self.save()
