"""Subprocess client for the coding assistant.

The assistant is treated as an opaque text-in/text-out oracle: the prompt is
written to its standard input and its combined stdout/stderr is captured.
Every run is guarded by a watchdog: once the wall-clock budget is spent the
process is asked to terminate, given a short grace period, then killed.

Usage::

    client = AssistantClient(("claude",), timeout=900, grace_period=2, cwd=root)
    run = client.run(prompt, model="sonnet")
    if run.timed_out:
        ...
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127

ASSISTANT_FLAGS: tuple[str, ...] = ("-p", "--dangerously-skip-permissions")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AssistantRun:
    """Outcome of one assistant invocation.

    Attributes:
        output: Combined stdout and stderr, decoded leniently.
        exit_code: Process exit code, ``124`` on timeout, ``127`` if it never started.
        timed_out: The watchdog fired before the process exited.
        terminated: A polite termination signal was sent.
        killed: The process ignored termination and was killed.
        duration: Wall-clock seconds spent in the run.
    """

    output: str
    exit_code: int
    timed_out: bool = False
    terminated: bool = False
    killed: bool = False
    duration: float = 0.0


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AssistantClient:
    """Runs the assistant command once per iteration under a watchdog."""

    def __init__(
        self,
        command: Sequence[str],
        timeout: float,
        grace_period: float = 2.0,
        cwd: Path | None = None,
        extra_flags: Sequence[str] = ASSISTANT_FLAGS,
    ):
        self.command = tuple(command)
        self.timeout = timeout
        self.grace_period = grace_period
        self.cwd = cwd
        self.extra_flags = tuple(extra_flags)

    def build_command(self, model: str) -> list[str]:
        argv = [*self.command, *self.extra_flags]
        if model:
            argv.extend(["--model", model])
        return argv

    def run(self, prompt: str, model: str) -> AssistantRun:
        argv = self.build_command(model)
        logger.debug("Starting assistant: %s", " ".join(argv))
        start_time = time.monotonic()

        try:
            process = subprocess.Popen(
                argv,
                cwd=self.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            logger.error("Could not start assistant %s: %s", argv[0], exc)
            return AssistantRun(
                output=f"error: failed to start {argv[0]}: {exc}",
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                duration=time.monotonic() - start_time,
            )

        try:
            output, _ = process.communicate(input=prompt, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            return self._stop_hung_process(process, exc, start_time)

        return AssistantRun(
            output=output or "",
            exit_code=process.returncode,
            duration=time.monotonic() - start_time,
        )

    def _stop_hung_process(
        self,
        process: subprocess.Popen[str],
        expired: subprocess.TimeoutExpired,
        start_time: float,
    ) -> AssistantRun:
        logger.warning("Assistant exceeded %.0fs timeout, terminating", self.timeout)
        partial = _decode_partial(expired.output)
        killed = False

        process.terminate()
        try:
            rest, _ = process.communicate(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning("Assistant ignored termination after %.1fs, killing", self.grace_period)
            process.kill()
            rest, _ = process.communicate()
            killed = True

        # A retried communicate() returns everything read so far, partial included.
        output = rest or partial
        return AssistantRun(
            output=output,
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
            terminated=True,
            killed=killed,
            duration=time.monotonic() - start_time,
        )


def _decode_partial(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
