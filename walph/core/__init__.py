"""Core module exports for walph."""

from .project import Project
from .state import CircuitBreakerState
from .result import (
    EXIT_REQUESTED,
    ITERATION_OK,
    IterationContext,
    IterationResult,
    LoopOutcome,
    StopReason,
)

__all__ = [
    "Project",
    "CircuitBreakerState",
    "EXIT_REQUESTED",
    "ITERATION_OK",
    "IterationContext",
    "IterationResult",
    "LoopOutcome",
    "StopReason",
]
