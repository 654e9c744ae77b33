"""Shared helper functions for diagnostics."""

from __future__ import annotations

from agentpipe.constants import LOG_PREVIEW_LEN


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def preview(text: str, limit: int = LOG_PREVIEW_LEN) -> str:
    """Truncate *text* for a log line."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."
