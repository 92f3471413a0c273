"""Helpers for cleaning raw terminal output."""

import re

# CSI sequences, OSC sequences (BEL or ST terminated), charset selection,
# and the remaining two-byte escapes
ANSI_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[()][A-Za-z0-9]"
    r"|\x1b[@-Z\\-_=>78]"
)

CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences and stray control characters."""
    text = ANSI_ESCAPE_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return CONTROL_CHARS_RE.sub("", text)


def trailing_lines(text: str, count: int) -> list[str]:
    """Return the last ``count`` lines, ignoring trailing blank padding.

    tmux pads captured panes with empty rows below the cursor; those rows
    are not output and must not push real lines out of the window.
    """
    lines = text.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return lines[-count:] if count > 0 else []
