"""Command boundary parser — recover one command's output from raw PTY bytes.

A shell attached to a PTY gives no framing: after a command line is
written, the stream carries the echoed command, the command's output,
escape sequences, and finally the next prompt. ``BoundaryParser`` is a
small state machine over that stream:

* ``ECHO``   — discard the echoed command line(s).
* ``OUTPUT`` — clean and release complete output lines; watch the
  trailing partial line for the prompt marker.
* ``DONE``   — the prompt marker ended the stream; later bytes are ignored.

Output is released with its final line terminator held back, so the
concatenation of everything ``feed()`` returns equals the command output
without the trailing newline that precedes the prompt.
"""

from __future__ import annotations

import codecs
import enum
import re

from ptykernel.pty.ansi import clean


class ParserState(enum.Enum):
    ECHO = "echo"
    OUTPUT = "output"
    DONE = "done"


def prompt_pattern(marker: str) -> re.Pattern[str]:
    """Regex matching ``marker`` as the last thing on the current line."""
    return re.compile(re.escape(marker) + r"[ \t]*$")


def echo_line_count(command: str) -> int:
    """Number of lines the PTY echoes for ``command`` plus its terminator."""
    return command.count("\n") + 1


class BoundaryParser:
    """Incremental parser for a single command/prompt exchange.

    Args:
        prompt_marker: Literal prompt text that ends the exchange.
        echo_lines: Number of echoed lines to discard first. Zero starts
            directly in ``OUTPUT``.
    """

    def __init__(self, prompt_marker: str, echo_lines: int = 1) -> None:
        if not prompt_marker:
            raise ValueError("prompt_marker must not be empty")
        self._prompt_re = prompt_pattern(prompt_marker)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._echo_remaining = echo_lines
        self._pending = ""
        self._held_newline = False
        self._released: list[str] = []
        self.state = ParserState.ECHO if echo_lines > 0 else ParserState.OUTPUT

    @property
    def done(self) -> bool:
        return self.state is ParserState.DONE

    @property
    def output(self) -> str:
        """Everything released so far."""
        return "".join(self._released)

    def feed(self, chunk: bytes) -> str:
        """Consume a raw chunk and return newly released clean output."""
        if self.state is ParserState.DONE:
            return ""
        self._pending += self._decoder.decode(chunk)

        if self.state is ParserState.ECHO:
            self._skip_echo()
            if self.state is ParserState.ECHO:
                return ""

        released = self._release_lines()
        tail = clean(self._pending)
        match = self._prompt_re.search(tail)
        if match:
            before = tail[: match.start()]
            if before:
                released += ("\n" if self._held_newline else "") + before
            self._held_newline = False
            self._pending = ""
            self.state = ParserState.DONE
        if released:
            self._released.append(released)
        return released

    def partial_output(self) -> str:
        """Released output plus the cleaned, unreleased partial line.

        Used to report what was captured when the prompt never came.
        """
        out = self.output
        tail = clean(self._pending) if self.state is ParserState.OUTPUT else ""
        if tail:
            out += ("\n" if self._held_newline else "") + tail
        return out

    def _skip_echo(self) -> None:
        while self._echo_remaining > 0:
            idx = self._pending.find("\n")
            if idx < 0:
                return
            self._pending = self._pending[idx + 1 :]
            self._echo_remaining -= 1
        self.state = ParserState.OUTPUT

    def _release_lines(self) -> str:
        idx = self._pending.rfind("\n")
        if idx < 0:
            return ""
        complete, self._pending = self._pending[:idx], self._pending[idx + 1 :]
        text = ("\n" if self._held_newline else "") + clean(complete)
        self._held_newline = True
        return text


def parse_exit_code(output: str, token: str) -> int | None:
    """Extract the status printed as ``<token><digits>`` by the exit-code probe."""
    match = re.search(re.escape(token) + r"(-?\d+)", output)
    if match is None:
        return None
    return int(match.group(1))
