"""Project layout and persistent files for walph tools."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from walph.config.loader import CONFIG_FILENAME, default_config_text
from walph.config.models import ToolProfile
from walph.core.state import CircuitBreakerState
from walph.utils import count_checkboxes, read_json, write_json

logger = logging.getLogger(__name__)

COMPLETION_SIGNAL_FILENAME = "completion_signal"
BREAKER_STATE_FILENAME = "circuit_breaker.json"
STATS_FILENAME = "stats.json"

DEFAULT_STATS: dict[str, Any] = {
    "iterations": [],
    "total_prompt_tokens": 0,
    "total_output_tokens": 0,
    "total_time_seconds": 0.0,
}


class Project:
    """A working directory driven by one tool, with its state, logs and stats."""

    def __init__(self, tool: ToolProfile, root: Path):
        self.tool = tool
        self.root = root
        self.tool_dir = root / tool.tool_dir
        self.state_dir = root / tool.state_dir
        self.log_dir = root / tool.log_dir
        self.config_path = self.tool_dir / CONFIG_FILENAME
        self.breaker_state_path = self.state_dir / BREAKER_STATE_FILENAME
        self.completion_signal_path = self.state_dir / COMPLETION_SIGNAL_FILENAME
        self.stats_path = self.state_dir / STATS_FILENAME
        self.plan_path = root / tool.plan_filename

    @property
    def name(self) -> str:
        return self.root.name

    @classmethod
    def load_or_create(cls, tool: ToolProfile, root: Path) -> "Project":
        """Open the project, creating the tool directory on first run."""
        project = cls(tool, root)
        first_run = not project.tool_dir.exists()
        project.ensure_directories()
        if first_run:
            logger.info("Initialized %s in %s", tool.tool_dir, root)
        if not project.config_path.exists():
            project.config_path.write_text(default_config_text(tool), encoding="utf-8")
        if tool.update_gitignore:
            project.update_gitignore()
        return project

    def ensure_directories(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def is_marked(self) -> bool:
        """True when the directory already looks like a project for this tool."""
        return self.tool_dir.exists() or (self.root / "AGENTS.md").exists()

    def update_gitignore(self) -> bool:
        """Append log and state entries to an existing .gitignore. Returns True if it changed."""
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            return False
        content = gitignore.read_text(encoding="utf-8")
        existing = {line.strip() for line in content.splitlines()}
        entries = [f"{self.tool.log_dir}/", f"{self.tool.state_dir}/"]
        missing = [entry for entry in entries if entry not in existing]
        if not missing:
            return False
        prefix = "" if not content or content.endswith("\n") else "\n"
        block = f"{prefix}\n# {self.tool.display_name}\n" + "\n".join(missing) + "\n"
        with gitignore.open("a", encoding="utf-8") as handle:
            handle.write(block)
        logger.info("Added %s to .gitignore", ", ".join(missing))
        return True

    def breaker_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(self.breaker_state_path)

    def prompt_override_path(self, filename: str) -> Path:
        return self.tool_dir / filename

    def completion_signalled(self) -> bool:
        return self.completion_signal_path.exists()

    def signal_completion(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.completion_signal_path.touch()

    def clear_completion_signal(self) -> bool:
        if self.completion_signal_path.exists():
            self.completion_signal_path.unlink()
            return True
        return False

    def task_counts(self) -> tuple[int, int] | None:
        """(remaining, done) checkbox counts from the plan file, or None if it is missing."""
        if not self.plan_path.exists():
            return None
        return count_checkboxes(self.plan_path.read_text(encoding="utf-8", errors="replace"))

    def get_stats(self) -> dict[str, Any]:
        """Get current stats."""
        stats = read_json(self.stats_path, DEFAULT_STATS)
        if not isinstance(stats, dict) or not isinstance(stats.get("iterations"), list):
            return dict(DEFAULT_STATS, iterations=[])
        return stats

    def append_stats(self, row: dict[str, Any]) -> dict[str, Any]:
        """Append an iteration row to stats and update totals."""
        stats = self.get_stats()
        stats["iterations"].append(row)
        stats["total_prompt_tokens"] = int(stats.get("total_prompt_tokens", 0)) + int(row.get("prompt_tokens", 0))
        stats["total_output_tokens"] = int(stats.get("total_output_tokens", 0)) + int(row.get("output_tokens", 0))
        stats["total_time_seconds"] = float(stats.get("total_time_seconds", 0.0)) + float(
            row.get("duration_seconds", 0.0)
        )
        write_json(self.stats_path, stats)
        return stats
