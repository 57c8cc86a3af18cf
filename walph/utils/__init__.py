"""Utility helpers for walph."""

from .json_io import read_json, write_json
from .logs import configure_logging, log_transcript, session_log_path
from .text import count_checkboxes, tail_lines, truncate_text
from .tokens import estimate_tokens_text

__all__ = [
    "read_json",
    "write_json",
    "configure_logging",
    "log_transcript",
    "session_log_path",
    "count_checkboxes",
    "tail_lines",
    "truncate_text",
    "estimate_tokens_text",
]
