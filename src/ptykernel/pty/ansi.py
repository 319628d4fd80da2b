"""Terminal output cleanup — strip escape sequences and control bytes."""

from __future__ import annotations

import re

# CSI (ESC [ ... final), OSC (ESC ] ... BEL/ST), and two-byte ESC sequences.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_control(text: str) -> str:
    """Remove control characters that carry no printable content.

    Keeps tabs and newlines. Carriage returns are dropped, so a PTY
    ``\\r\\n`` becomes ``\\n``.
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            cleaned.append(ch)
    return "".join(cleaned)


def clean(text: str) -> str:
    """Strip escapes, then control bytes."""
    return sanitize_control(strip_ansi(text))
