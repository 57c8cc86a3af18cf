"""Status extraction from free-form assistant output.

The assistant reports progress in a plain-text block::

    RALPH_STATUS
    completion_level: HIGH|MEDIUM|LOW
    tasks_remaining: <number>
    current_task: <description>
    EXIT_SIGNAL: true|false
    RALPH_STATUS_END

``WALPH_STATUS`` / ``WALPH_STATUS_END`` are accepted as well. Output is
untrusted text, so every function here is total: malformed or missing input
yields the empty string, ``False`` or an absent report, never an exception.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from walph.signatures import SignatureSet, default_signatures
from walph.utils import tail_lines

API_ERROR_TAIL_LINES = 10
RATE_LIMIT_TAIL_LINES = 10
ERROR_MESSAGE_TAIL_LINES = 20

ERROR_LINE_PATTERN = re.compile(r"error|failed|exception", re.IGNORECASE)
JSON_MESSAGE_PATTERN = re.compile(r'"message"\s*:\s*"([^"]*)"')


class CompletionLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass(frozen=True)
class StatusReport:
    completion_level: CompletionLevel | None = None
    tasks_remaining: int | None = None
    current_task: str | None = None
    exit_signal: bool | None = None

    @property
    def present(self) -> bool:
        return any(
            value is not None
            for value in (self.completion_level, self.tasks_remaining, self.current_task, self.exit_signal)
        )


def _as_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return str(output)


def extract_status_block(output: Any, signatures: SignatureSet | None = None) -> str:
    """Return the first complete status block, markers included, or ``""``."""
    sigs = signatures or default_signatures()
    lines = _as_text(output).splitlines()
    for index, line in enumerate(lines):
        stripped = line.strip()
        for markers in sigs.status_markers:
            if stripped != markers.start:
                continue
            for end_index in range(index + 1, len(lines)):
                if lines[end_index].strip() == markers.end:
                    return "\n".join(lines[index : end_index + 1])
    return ""


def parse_field(block: Any, field_name: str) -> str:
    """Value of the first ``field_name:`` line in *block*, or ``""``."""
    prefix = f"{field_name}:"
    for line in _as_text(block).splitlines():
        candidate = line.replace("\r", "").lstrip()
        if candidate.startswith(prefix):
            return candidate[len(prefix) :].strip()
    return ""


def parse_status(output: Any, signatures: SignatureSet | None = None) -> StatusReport:
    block = extract_status_block(output, signatures)
    if not block:
        return StatusReport()

    level_text = parse_field(block, "completion_level")
    try:
        completion_level = CompletionLevel(level_text) if level_text else None
    except ValueError:
        completion_level = None

    remaining_text = parse_field(block, "tasks_remaining")
    tasks_remaining = int(remaining_text) if remaining_text.isdigit() else None

    exit_text = parse_field(block, "EXIT_SIGNAL")
    exit_signal = {"true": True, "false": False}.get(exit_text)

    return StatusReport(
        completion_level=completion_level,
        tasks_remaining=tasks_remaining,
        current_task=parse_field(block, "current_task") or None,
        exit_signal=exit_signal,
    )


def check_completion(output: Any, signatures: SignatureSet | None = None) -> bool:
    """Dual gate: ``completion_level: HIGH`` and ``EXIT_SIGNAL: true`` must both be reported."""
    block = extract_status_block(output, signatures)
    if not block:
        return False
    return parse_field(block, "completion_level") == "HIGH" and parse_field(block, "EXIT_SIGNAL") == "true"


def status_summary(output: Any, signatures: SignatureSet | None = None) -> str:
    block = extract_status_block(output, signatures)
    if not block:
        return "No status reported"
    summary = (
        f"Completion: {parse_field(block, 'completion_level')} | "
        f"Tasks remaining: {parse_field(block, 'tasks_remaining')} | "
        f"Exit: {parse_field(block, 'EXIT_SIGNAL')}"
    )
    current_task = parse_field(block, "current_task")
    if current_task:
        summary += f"\nCurrent task: {current_task}"
    return summary


def check_rate_limit(output: Any, signatures: SignatureSet | None = None) -> bool:
    # Throttled runs end with the limit message; quoted phrases earlier on do not count.
    sigs = signatures or default_signatures()
    tail = "\n".join(tail_lines(_as_text(output), RATE_LIMIT_TAIL_LINES))
    return any(pattern.search(tail) for pattern in sigs.rate_limit)


def check_api_error(output: Any, signatures: SignatureSet | None = None) -> bool:
    # Only the tail counts: responses often quote error messages mid-way.
    sigs = signatures or default_signatures()
    tail = "\n".join(tail_lines(_as_text(output), API_ERROR_TAIL_LINES))
    return any(pattern.search(tail) for pattern in sigs.api_error)


def extract_error_message(output: Any) -> str:
    for line in tail_lines(_as_text(output), ERROR_MESSAGE_TAIL_LINES):
        if ERROR_LINE_PATTERN.search(line):
            return line.strip()
    return ""


def check_stuck_signal(output: Any, signatures: SignatureSet | None = None) -> bool:
    sigs = signatures or default_signatures()
    text = _as_text(output)
    return any(token in text for token in sigs.stuck)


def extract_rate_limit_detail(output: Any, signatures: SignatureSet | None = None) -> str:
    """Best-effort reason for throttling: the API's message field, else a usage-limit line."""
    sigs = signatures or default_signatures()
    text = _as_text(output)
    match = JSON_MESSAGE_PATTERN.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    for line in text.splitlines():
        if any(pattern.search(line) for pattern in sigs.rate_limit_detail):
            return line.strip()
    return ""
