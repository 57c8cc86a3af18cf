"""Result types for orchestration and iteration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from walph.config.models import Mode
from walph.status import StatusReport

ITERATION_OK = 0
EXIT_REQUESTED = 2


@dataclass(frozen=True)
class IterationContext:
	"""Inputs of one iteration, discarded when it ends."""
	iteration: int
	max_iterations: int
	mode: Mode
	model: str
	prompt: str = ""


@dataclass
class IterationResult:
	"""Result from a single iteration of the orchestrator."""
	code: int
	status: str
	report: StatusReport
	timed_out: bool = False
	rate_limited: bool = False
	api_error: bool = False
	stuck: bool = False
	completed: bool = False
	error_message: str = ""
	output: str = ""
	duration: float = 0.0
	# Set only when the operator chooses exit at the rate-limit prompt.
	exit_requested: bool = False

	@property
	def failed(self) -> bool:
		return not self.exit_requested and self.code != ITERATION_OK

	def to_row(self) -> dict[str, Any]:
		return {
			"status": self.status,
			"exit_code": self.code,
			"timed_out": self.timed_out,
			"rate_limited": self.rate_limited,
			"api_error": self.api_error,
			"completed": self.completed,
			"exit_requested": self.exit_requested,
			"duration_seconds": round(self.duration, 3),
		}


class StopReason(str, Enum):
	BREAKER = "breaker"
	USER_EXIT = "user_exit"
	COMPLETE = "complete"
	EXHAUSTED = "exhausted"
	INTERRUPTED = "interrupted"
	DRY_RUN = "dry_run"


_EXIT_CODES = {
	StopReason.BREAKER: 1,
	StopReason.USER_EXIT: 0,
	StopReason.COMPLETE: 0,
	StopReason.EXHAUSTED: 0,
	StopReason.INTERRUPTED: 130,
	StopReason.DRY_RUN: 0,
}


@dataclass(frozen=True)
class LoopOutcome:
	"""Why a session stopped and after how many iterations."""
	reason: StopReason
	iterations: int
	detail: str = ""

	@property
	def exit_code(self) -> int:
		return _EXIT_CODES[self.reason]
