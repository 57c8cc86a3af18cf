"""Circuit breaker: halts the loop when iterations stop making progress.

Progress is judged only from externally observable signals (working tree and
commit history, repeated error lines, an explicit stuck sentinel), so the
breaker behaves the same whatever kind of work the assistant is doing.
"""

from __future__ import annotations

import logging
from typing import Sequence

from walph.config.models import BreakerThresholds
from walph.core.state import DEFAULT_BREAKER_STATE, CircuitBreakerState
from walph.signatures import SignatureSet
from walph.status import check_stuck_signal
from walph.vcs import Repository, is_excluded

logger = logging.getLogger(__name__)

# Tool-owned paths never count as progress, for either tool.
TOOL_OWNED_PATHS: tuple[str, ...] = (
    ".walph/state/",
    ".walph/logs/",
    ".goodbunny/state/",
    ".goodbunny/logs/",
)


class CircuitBreaker:
    def __init__(
        self,
        state: CircuitBreakerState,
        repository: Repository,
        thresholds: BreakerThresholds,
        counts_commits: bool,
        excluded_paths: Sequence[str] = TOOL_OWNED_PATHS,
        signatures: SignatureSet | None = None,
    ):
        self.state = state
        self.repository = repository
        self.thresholds = thresholds
        self.counts_commits = counts_commits
        self.excluded_paths = tuple(excluded_paths)
        self.signatures = signatures
        if not self.state.exists():
            self._write_fresh_state()

    def _write_fresh_state(self) -> None:
        fresh = dict(DEFAULT_BREAKER_STATE)
        fresh["last_revision"] = self.repository.current_revision() or ""
        self.state.update(fresh)

    def update(self, output: str, error_message: str) -> bool:
        """Record one finished iteration. Returns False when the loop must stop."""
        if check_stuck_signal(output, self.signatures):
            logger.warning("Assistant reported it is stuck")
            self.state.update({"stuck": True})
            return False

        last_revision = self.state.last_revision
        current_revision = self.repository.current_revision() or ""

        new_commit = bool(current_revision) and current_revision != last_revision
        meaningful: list[str] = []
        if new_commit:
            touched = self.repository.changed_files(last_revision or None, current_revision)
            meaningful = [path for path in touched if not is_excluded(path, self.excluded_paths)]

        changed = bool(meaningful) or self.repository.has_uncommitted_changes(self.excluded_paths)
        if changed:
            no_change_count = 0
            logger.debug("File changes detected, reset no_change_count")
        else:
            no_change_count = self.state.no_change_count + 1
            logger.debug("No file changes, no_change_count=%d", no_change_count)

        last_error = self.state.last_error
        if error_message:
            if error_message == last_error:
                same_error_count = self.state.same_error_count + 1
                logger.debug("Same error repeated, same_error_count=%d", same_error_count)
            else:
                same_error_count = 1
                last_error = error_message
        else:
            same_error_count = 0

        no_commit_count = self.state.no_commit_count + 1
        if new_commit:
            if meaningful:
                no_commit_count = 0
                logger.debug("New commit %s touched %d file(s), reset no_commit_count", current_revision[:12], len(meaningful))
            else:
                logger.debug("New commit %s only touched tool state", current_revision[:12])
            last_revision = current_revision
        else:
            logger.debug("No new commit, no_commit_count=%d", no_commit_count)

        self.state.update(
            {
                "no_change_count": no_change_count,
                "same_error_count": same_error_count,
                "no_commit_count": no_commit_count,
                "last_error": last_error,
                "last_revision": last_revision,
            }
        )
        return True

    def trip_reason(self) -> str | None:
        """Human-readable reason the breaker is open, or None when it is closed."""
        if self.state.stuck:
            return "Assistant signalled it is stuck"
        if self.state.no_change_count >= self.thresholds.no_change:
            return f"No file changes for {self.state.no_change_count} iterations"
        if self.state.same_error_count >= self.thresholds.same_error:
            return f"Same error repeated {self.state.same_error_count} times"
        if self.counts_commits and self.state.no_commit_count >= self.thresholds.no_commit:
            return f"No commits for {self.state.no_commit_count} iterations"
        return None

    def triggered(self) -> bool:
        return self.trip_reason() is not None

    def reset(self) -> None:
        self._write_fresh_state()

    def status_line(self) -> str:
        return format_breaker_status(self.state)


def format_breaker_status(state: CircuitBreakerState) -> str:
    line = (
        f"no_change={state.no_change_count} "
        f"same_error={state.same_error_count} "
        f"no_commit={state.no_commit_count}"
    )
    if state.stuck:
        line += " stuck=true"
    return line
