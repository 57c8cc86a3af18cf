from __future__ import annotations

import re

OPEN_CHECKBOX = re.compile(r"^\s*- \[ \]", re.MULTILINE)
DONE_CHECKBOX = re.compile(r"^\s*- \[[xX]\]", re.MULTILINE)


def tail_lines(text: str, count: int) -> list[str]:
    if count <= 0:
        return []
    return text.splitlines()[-count:]


def count_checkboxes(text: str) -> tuple[int, int]:
    """Return (remaining, done) markdown task counts."""
    return len(OPEN_CHECKBOX.findall(text)), len(DONE_CHECKBOX.findall(text))


def truncate_text(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return text
    if len(text) <= max_chars:
        return text
    remaining = len(text) - max_chars
    return f"{text[:max_chars]}… (+{remaining} chars)"
