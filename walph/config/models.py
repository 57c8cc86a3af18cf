from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from walph.errors import ConfigError


class Mode(str, Enum):
    PLAN = "plan"
    BUILD = "build"
    AUDIT = "audit"
    FIX = "fix"


@dataclass(frozen=True)
class ModeProfile:
    """Per-mode behaviour: which prompt to load and whether commits are expected."""

    mode: Mode
    prompt_filename: str
    counts_commits: bool


MODE_PROFILES: dict[Mode, ModeProfile] = {
    Mode.PLAN: ModeProfile(Mode.PLAN, "PROMPT_plan.md", counts_commits=False),
    Mode.BUILD: ModeProfile(Mode.BUILD, "PROMPT_build.md", counts_commits=True),
    Mode.AUDIT: ModeProfile(Mode.AUDIT, "PROMPT_audit.md", counts_commits=False),
    Mode.FIX: ModeProfile(Mode.FIX, "PROMPT_fix.md", counts_commits=True),
}


@dataclass(frozen=True)
class BreakerThresholds:
    no_change: int = 3
    same_error: int = 5
    no_commit: int = 5


@dataclass(frozen=True)
class ToolProfile:
    """Identity and defaults of one command-line tool built on the shared loop."""

    name: str
    display_name: str
    version: str
    env_prefix: str
    tool_dir: str
    modes: tuple[Mode, ...]
    default_models: dict[Mode, str]
    plan_filename: str
    max_iterations: int
    thresholds: BreakerThresholds
    iteration_timeout: int = 900
    confirm_unmarked_project: bool = False
    update_gitignore: bool = False
    scoped_review: bool = False

    @property
    def log_dir(self) -> str:
        return f"{self.tool_dir}/logs"

    @property
    def state_dir(self) -> str:
        return f"{self.tool_dir}/state"

    @property
    def default_mode(self) -> Mode:
        return self.modes[-1]

    def resume_command(self, mode: Mode) -> str:
        return f"{self.name} {mode.value}"


WALPH = ToolProfile(
    name="walph",
    display_name="Walph Riggum",
    version="1.0.0",
    env_prefix="WALPH",
    tool_dir=".walph",
    modes=(Mode.PLAN, Mode.BUILD),
    default_models={Mode.PLAN: "opus", Mode.BUILD: "sonnet"},
    plan_filename="IMPLEMENTATION_PLAN.md",
    max_iterations=50,
    thresholds=BreakerThresholds(no_change=3, same_error=5, no_commit=5),
    confirm_unmarked_project=True,
)

GOODBUNNY = ToolProfile(
    name="goodbunny",
    display_name="Good Bunny",
    version="1.0.0",
    env_prefix="GOODBUNNY",
    tool_dir=".goodbunny",
    modes=(Mode.AUDIT, Mode.FIX),
    default_models={Mode.AUDIT: "opus", Mode.FIX: "sonnet"},
    plan_filename="REVIEW_FINDINGS.md",
    max_iterations=30,
    thresholds=BreakerThresholds(no_change=3, same_error=3, no_commit=4),
    update_gitignore=True,
    scoped_review=True,
)


def _to_positive_int(value: Any, source: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{source} must be a positive integer, got {value!r}")
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{source} must be a positive integer, got {value!r}") from exc
    if parsed <= 0:
        raise ConfigError(f"{source} must be a positive integer, got {value!r}")
    return parsed


def _to_non_negative_float(value: Any, source: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{source} must be a number, got {value!r}")
    try:
        parsed = float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{source} must be a number, got {value!r}") from exc
    if parsed < 0:
        raise ConfigError(f"{source} must not be negative, got {value!r}")
    return parsed


def _to_bool(value: Any, source: str) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{source} must be a boolean, got {value!r}")


def _to_command(value: Any, source: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        parts = list(value)
    else:
        raise ConfigError(f"{source} must be a string or a list of strings, got {value!r}")
    if not parts:
        raise ConfigError(f"{source} must not be empty")
    return tuple(parts)


@dataclass(frozen=True)
class RuntimeSettings:
    tool: ToolProfile
    mode: Mode
    max_iterations: int
    models: dict[str, str]
    model_override: str | None
    iteration_timeout: float
    termination_grace: float
    iteration_delay: float
    rate_limit_retry_delay: float
    thresholds: BreakerThresholds
    assistant_command: tuple[str, ...]
    signatures_file: str | None = None
    estimate_tokens: bool = True
    dry_run: bool = False
    verbose: bool = False
    categories: str | None = None
    files: str | None = None
    ignored_keys: tuple[str, ...] = field(default=())

    @property
    def mode_profile(self) -> ModeProfile:
        return MODE_PROFILES[self.mode]

    def default_model(self, mode: Mode | None = None) -> str:
        resolved = mode or self.mode
        return self.models.get(resolved.value, self.tool.default_models.get(resolved, "sonnet"))

    def model_for(self, mode: Mode | None = None) -> str:
        """Explicit override wins over the mode's configured model."""
        return self.model_override or self.default_model(mode)

    @classmethod
    def from_sources(
        cls,
        tool: ToolProfile,
        mode: Mode,
        settings: dict[str, Any] | None = None,
        environ: dict[str, str] | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> "RuntimeSettings":
        """Merge defaults -> config file -> environment -> flags.

        ``settings`` is the already allow-listed config file content (see
        ``walph.config.loader.parse_file_settings``).
        """
        file_settings = settings or {}
        env = os.environ if environ is None else environ
        flags = overrides or {}
        prefix = tool.env_prefix

        if mode not in tool.modes:
            raise ConfigError(f"{tool.name} does not support mode '{mode.value}'")

        def env_value(name: str) -> str | None:
            value = env.get(f"{prefix}_{name}")
            if value is None or not value.strip():
                return None
            return value

        max_iterations = tool.max_iterations
        if "max_iterations" in file_settings:
            max_iterations = file_settings["max_iterations"]
        if env_value("MAX_ITERATIONS") is not None:
            max_iterations = _to_positive_int(env_value("MAX_ITERATIONS"), f"{prefix}_MAX_ITERATIONS")
        if flags.get("max_iterations") is not None:
            max_iterations = _to_positive_int(flags["max_iterations"], "--max-iterations")

        models = {m.value: model for m, model in tool.default_models.items()}
        models.update(file_settings.get("models", {}))
        for known_mode in tool.modes:
            env_model = env_value(f"MODEL_{known_mode.value.upper()}")
            if env_model is not None:
                models[known_mode.value] = env_model.strip()

        iteration_timeout = float(tool.iteration_timeout)
        if "iteration_timeout" in file_settings:
            iteration_timeout = file_settings["iteration_timeout"]
        if env_value("ITERATION_TIMEOUT") is not None:
            iteration_timeout = float(
                _to_positive_int(env_value("ITERATION_TIMEOUT"), f"{prefix}_ITERATION_TIMEOUT")
            )

        rate_limit_retry_delay = file_settings.get("rate_limit_retry_delay", 60.0)
        if env_value("RATE_LIMIT_DELAY") is not None:
            rate_limit_retry_delay = _to_non_negative_float(
                env_value("RATE_LIMIT_DELAY"), f"{prefix}_RATE_LIMIT_DELAY"
            )

        no_change = file_settings.get("no_change_threshold", tool.thresholds.no_change)
        same_error = file_settings.get("same_error_threshold", tool.thresholds.same_error)
        no_commit = file_settings.get("no_commit_threshold", tool.thresholds.no_commit)
        if env_value("CB_NO_CHANGE") is not None:
            no_change = _to_positive_int(env_value("CB_NO_CHANGE"), f"{prefix}_CB_NO_CHANGE")
        if env_value("CB_SAME_ERROR") is not None:
            same_error = _to_positive_int(env_value("CB_SAME_ERROR"), f"{prefix}_CB_SAME_ERROR")
        if env_value("CB_NO_COMMIT") is not None:
            no_commit = _to_positive_int(env_value("CB_NO_COMMIT"), f"{prefix}_CB_NO_COMMIT")

        assistant_command = file_settings.get("assistant_command", ("claude",))
        if env_value("ASSISTANT_COMMAND") is not None:
            assistant_command = _to_command(env_value("ASSISTANT_COMMAND"), f"{prefix}_ASSISTANT_COMMAND")

        model_override = flags.get("model_override")
        if isinstance(model_override, str):
            model_override = model_override.strip() or None

        return cls(
            tool=tool,
            mode=mode,
            max_iterations=max_iterations,
            models=models,
            model_override=model_override,
            iteration_timeout=iteration_timeout,
            termination_grace=file_settings.get("termination_grace", 2.0),
            iteration_delay=file_settings.get("iteration_delay", 1.0),
            rate_limit_retry_delay=rate_limit_retry_delay,
            thresholds=BreakerThresholds(no_change=no_change, same_error=same_error, no_commit=no_commit),
            assistant_command=tuple(assistant_command),
            signatures_file=file_settings.get("signatures_file"),
            estimate_tokens=file_settings.get("estimate_tokens", True),
            dry_run=bool(flags.get("dry_run", False)),
            verbose=bool(flags.get("verbose", False)),
            categories=flags.get("categories") or None,
            files=flags.get("files") or None,
            ignored_keys=tuple(file_settings.get("ignored_keys", ())),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool.name,
            "mode": self.mode.value,
            "max_iterations": self.max_iterations,
            "models": dict(self.models),
            "model_override": self.model_override,
            "iteration_timeout": self.iteration_timeout,
            "termination_grace": self.termination_grace,
            "iteration_delay": self.iteration_delay,
            "rate_limit_retry_delay": self.rate_limit_retry_delay,
            "no_change_threshold": self.thresholds.no_change,
            "same_error_threshold": self.thresholds.same_error,
            "no_commit_threshold": self.thresholds.no_commit,
            "assistant_command": " ".join(self.assistant_command),
            "signatures_file": self.signatures_file,
            "estimate_tokens": self.estimate_tokens,
            "dry_run": self.dry_run,
            "verbose": self.verbose,
            "categories": self.categories,
            "files": self.files,
        }
