from __future__ import annotations

import io
from typing import Any, Sequence

import pytest
from rich.console import Console

from walph.config.models import WALPH, Mode, RuntimeSettings, ToolProfile
from walph.vcs import is_excluded


class FakeRepository:
    """In-memory stand-in for the git boundary."""

    def __init__(self, revision: str | None = "rev0") -> None:
        self.revision = revision
        self.dirty_paths: list[str] = []
        self.commits: dict[str, list[str]] = {}
        self.diff_calls: list[tuple[str | None, str]] = []

    def current_revision(self) -> str | None:
        return self.revision

    def has_uncommitted_changes(self, exclude: Sequence[str] = ()) -> bool:
        return any(not is_excluded(path, exclude) for path in self.dirty_paths)

    def changed_files(self, old: str | None, new: str) -> list[str]:
        self.diff_calls.append((old, new))
        return list(self.commits.get(new, []))

    def commit(self, revision: str, files: list[str]) -> None:
        self.revision = revision
        self.commits[revision] = list(files)
        self.dirty_paths = []


def make_settings(
    tool: ToolProfile = WALPH,
    mode: Mode = Mode.BUILD,
    overrides: dict[str, Any] | None = None,
    **file_settings: Any,
) -> RuntimeSettings:
    merged = {"estimate_tokens": False, "iteration_delay": 0.0, **file_settings}
    return RuntimeSettings.from_sources(tool, mode, settings=merged, environ={}, overrides=overrides)


@pytest.fixture
def fake_repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False, width=120)


@pytest.fixture(autouse=True)
def reset_walph_loggers():
    yield
    import logging

    for name in ("walph", "walph.transcript"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)
