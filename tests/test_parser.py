"""Tests for ptykernel.pty.parser (BoundaryParser, parse_exit_code)."""

from __future__ import annotations

import pytest

from ptykernel.pty.parser import (
    BoundaryParser,
    ParserState,
    echo_line_count,
    parse_exit_code,
    prompt_pattern,
)

MARKER = "ptyk-0123abcd>"


def feed_all(parser: BoundaryParser, data: bytes, chunk_size: int | None = None) -> str:
    if chunk_size is None:
        return parser.feed(data)
    out = ""
    for i in range(0, len(data), chunk_size):
        out += parser.feed(data[i : i + chunk_size])
    return out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_echo_line_count_single(self) -> None:
        assert echo_line_count("echo hi") == 1

    def test_echo_line_count_continuation(self) -> None:
        assert echo_line_count("echo 'a\nb'") == 2

    def test_prompt_pattern_anchors_to_line_end(self) -> None:
        pattern = prompt_pattern(MARKER)
        assert pattern.search(f"{MARKER} ")
        assert pattern.search(f"output{MARKER}")
        assert not pattern.search(f"{MARKER} trailing text")

    def test_prompt_pattern_escapes_regex_chars(self) -> None:
        pattern = prompt_pattern("user@host:~$")
        assert pattern.search("user@host:~$ ")
        assert not pattern.search("user@host:~")


# ---------------------------------------------------------------------------
# BoundaryParser — complete exchanges
# ---------------------------------------------------------------------------


class TestBoundaryParser:
    def test_initial_state(self) -> None:
        assert BoundaryParser(MARKER).state is ParserState.ECHO
        assert BoundaryParser(MARKER, echo_lines=0).state is ParserState.OUTPUT

    def test_empty_marker_rejected(self) -> None:
        with pytest.raises(ValueError):
            BoundaryParser("")

    def test_simple_command(self) -> None:
        parser = BoundaryParser(MARKER)
        out = parser.feed(f"echo hi\r\nhi\r\n{MARKER} ".encode())
        assert out == "hi"
        assert parser.done
        assert parser.output == "hi"

    def test_byte_by_byte(self) -> None:
        parser = BoundaryParser(MARKER)
        data = f"echo hi\r\nhi\r\n{MARKER} ".encode()
        assert feed_all(parser, data, chunk_size=1) == "hi"
        assert parser.done

    def test_multiple_lines(self) -> None:
        parser = BoundaryParser(MARKER)
        out = parser.feed(f"echo a; echo b\r\na\r\nb\r\n{MARKER} ".encode())
        assert out == "a\nb"

    def test_chunks_concatenate_to_full_output(self) -> None:
        data = f"seq 3\r\n1\r\n2\r\n3\r\n{MARKER} ".encode()
        for size in (1, 2, 3, 7, len(data)):
            parser = BoundaryParser(MARKER)
            assert feed_all(parser, data, chunk_size=size) == "1\n2\n3"

    def test_output_without_trailing_newline(self) -> None:
        parser = BoundaryParser(MARKER)
        out = parser.feed(f"printf x\r\nx{MARKER} ".encode())
        assert out == "x"
        assert parser.done

    def test_no_output(self) -> None:
        parser = BoundaryParser(MARKER)
        assert parser.feed(f"true\r\n{MARKER} ".encode()) == ""
        assert parser.done

    def test_blank_line_output(self) -> None:
        parser = BoundaryParser(MARKER)
        assert parser.feed(f"echo\r\n\r\n{MARKER} ".encode()) == ""
        assert parser.done

    def test_strips_ansi(self) -> None:
        parser = BoundaryParser(MARKER)
        out = parser.feed(f"ls\r\n\x1b[01;34mdir\x1b[0m\r\n{MARKER} ".encode())
        assert out == "dir"

    def test_multiline_echo(self) -> None:
        command = "echo 'a\nb'"
        parser = BoundaryParser(MARKER, echo_line_count(command))
        out = parser.feed(f"echo 'a\r\n> b'\r\na\r\nb\r\n{MARKER} ".encode())
        assert out == "a\nb"

    def test_marker_inside_output_line_is_not_a_boundary(self) -> None:
        parser = BoundaryParser(MARKER)
        data = f"echo '{MARKER} x'\r\n{MARKER} x\r\n{MARKER} ".encode()
        assert parser.feed(data) == f"{MARKER} x"

    def test_marker_split_across_chunks(self) -> None:
        parser = BoundaryParser(MARKER)
        parser.feed(b"echo hi\r\nhi\r\nptyk-01")
        assert not parser.done
        parser.feed(b"23abcd> ")
        assert parser.done
        assert parser.output == "hi"

    def test_utf8_split_across_chunks(self) -> None:
        parser = BoundaryParser(MARKER)
        out = parser.feed(b"echo \xc3\xa9\r\n\xc3")
        out += parser.feed(f"\xa9\r\n{MARKER} ".encode("latin-1"))
        assert out == "é"

    def test_custom_prompt(self) -> None:
        parser = BoundaryParser("user@host:~$")
        assert parser.feed(b"pwd\r\n/root\r\nuser@host:~$ ") == "/root"

    def test_feed_after_done_ignored(self) -> None:
        parser = BoundaryParser(MARKER)
        parser.feed(f"true\r\n{MARKER} ".encode())
        assert parser.feed(b"more output\r\n") == ""
        assert parser.output == ""

    def test_no_echo_mode(self) -> None:
        parser = BoundaryParser(MARKER, echo_lines=0)
        out = parser.feed(f"^C\r\n{MARKER} ".encode())
        assert out == "^C"
        assert parser.done


# ---------------------------------------------------------------------------
# BoundaryParser — incomplete exchanges
# ---------------------------------------------------------------------------


class TestBoundaryParserPartial:
    def test_echo_not_yet_complete(self) -> None:
        parser = BoundaryParser(MARKER)
        assert parser.feed(b"sleep 10") == ""
        assert parser.state is ParserState.ECHO
        assert parser.partial_output() == ""

    def test_partial_line_reported(self) -> None:
        parser = BoundaryParser(MARKER)
        released = parser.feed(b"cmd\r\nfirst\r\nsec")
        assert released == "first"
        assert not parser.done
        assert parser.partial_output() == "first\nsec"

    def test_partial_output_without_complete_line(self) -> None:
        parser = BoundaryParser(MARKER)
        parser.feed(b"cmd\r\nworking...")
        assert parser.output == ""
        assert parser.partial_output() == "working..."


# ---------------------------------------------------------------------------
# parse_exit_code
# ---------------------------------------------------------------------------


class TestParseExitCode:
    def test_zero(self) -> None:
        assert parse_exit_code("__T__0", "__T__") == 0

    def test_nonzero(self) -> None:
        assert parse_exit_code("__T__130", "__T__") == 130

    def test_surrounded_by_noise(self) -> None:
        assert parse_exit_code("noise\n__T__2\nmore", "__T__") == 2

    def test_probe_echo_not_mistaken_for_status(self) -> None:
        assert parse_exit_code("printf '__T__%d\\n' \"$?\"", "__T__") is None

    def test_missing(self) -> None:
        assert parse_exit_code("", "__T__") is None
