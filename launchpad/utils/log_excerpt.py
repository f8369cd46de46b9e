"""
Log Excerpt Helpers
Shorten captured output for error messages.
"""
from launchpad.core.constants import LOG_TAIL_LINES


def tail_lines(text: str, count: int = LOG_TAIL_LINES) -> str:
    """Last ``count`` lines of ``text``."""
    lines = text.splitlines()
    return "\n".join(lines[-count:])
