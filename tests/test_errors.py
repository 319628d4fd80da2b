"""Tests for ptykernel.errors."""

from __future__ import annotations

import pytest

from ptykernel.errors import (
    ExecutionTimeout,
    IrrecoverableState,
    KernelError,
    PromptChangeFailed,
    PromptDetectionFailed,
    SessionClosed,
    SessionIOError,
    SessionNotFound,
)

ALL_ERRORS = [
    PromptDetectionFailed,
    PromptChangeFailed,
    SessionClosed,
    SessionIOError,
    ExecutionTimeout,
    IrrecoverableState,
]


class TestKernelError:
    @pytest.mark.parametrize("cls", ALL_ERRORS)
    def test_subclass_of_base(self, cls: type[KernelError]) -> None:
        assert issubclass(cls, KernelError)

    def test_kinds_are_unique(self) -> None:
        kinds = {cls.kind for cls in ALL_ERRORS} | {SessionNotFound.kind}
        assert len(kinds) == len(ALL_ERRORS) + 1

    def test_partial_output_kept(self) -> None:
        err = ExecutionTimeout("timed out", partial_output=b"half")
        assert err.partial_output == b"half"
        assert err.message == "timed out"
        assert str(err) == "timed out"

    def test_partial_output_default(self) -> None:
        assert SessionIOError("boom").partial_output == b""


class TestSessionNotFound:
    def test_message(self) -> None:
        err = SessionNotFound("abc")
        assert err.session_id == "abc"
        assert "abc" in str(err)

    def test_is_lookup_error(self) -> None:
        with pytest.raises(LookupError):
            raise SessionNotFound("abc")
