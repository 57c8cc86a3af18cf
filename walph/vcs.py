"""Version control boundary used by the circuit breaker."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Iterable, Protocol, Sequence

logger = logging.getLogger(__name__)


class Repository(Protocol):
    def current_revision(self) -> str | None: ...

    def has_uncommitted_changes(self, exclude: Sequence[str] = ()) -> bool: ...

    def changed_files(self, old: str | None, new: str) -> list[str]: ...


def is_excluded(path: str, exclude: Iterable[str]) -> bool:
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return any(normalized.startswith(prefix) for prefix in exclude)


def _porcelain_path(line: str) -> str:
    path = line[3:]
    if " -> " in path:
        path = path.split(" -> ", 1)[1]
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        path = path[1:-1]
    return path


class GitRepository:
    """Thin wrapper around the ``git`` CLI; every failure reads as "no information"."""

    def __init__(self, root: Path, git: str = "git"):
        self.root = root
        self.git = git

    def _run(self, *args: str) -> subprocess.CompletedProcess[str] | None:
        try:
            return subprocess.run(
                [self.git, *args],
                cwd=self.root,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as exc:
            logger.debug("git %s failed to start: %s", " ".join(args), exc)
            return None

    def is_repository(self) -> bool:
        result = self._run("rev-parse", "--git-dir")
        return result is not None and result.returncode == 0

    def current_revision(self) -> str | None:
        result = self._run("rev-parse", "HEAD")
        if result is None or result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def has_uncommitted_changes(self, exclude: Sequence[str] = ()) -> bool:
        result = self._run("status", "--porcelain", "--untracked-files=all")
        if result is None or result.returncode != 0:
            return False
        for line in result.stdout.splitlines():
            if len(line) < 4:
                continue
            if not is_excluded(_porcelain_path(line), exclude):
                return True
        return False

    def changed_files(self, old: str | None, new: str) -> list[str]:
        if old:
            result = self._run("diff", "--name-only", old, new)
        else:
            result = self._run("ls-tree", "-r", "--name-only", new)
        if result is None or result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]
