"""Shared fixtures for tests that drive a real shell."""

from __future__ import annotations

import shutil
from typing import AsyncIterator

import pytest

from ptykernel.config import SessionConfig
from ptykernel.pty.prompt import new_marker
from ptykernel.pty.registry import SessionRegistry
from ptykernel.pty.session import Session

# Startup files would replace the forced prompt and add noise.
BASH = ["bash", "--norc", "--noprofile"]
BASH_COMMAND = "bash --norc --noprofile"

requires_bash = pytest.mark.skipif(
    shutil.which("bash") is None, reason="bash is not installed"
)


def fast_session_config(**overrides: object) -> SessionConfig:
    values: dict[str, object] = {
        "shell": BASH_COMMAND,
        "execute_timeout": 10.0,
        "interrupt_grace": 3.0,
        "prompt_detect_timeout": 5.0,
        "prompt_change_timeout": 3.0,
    }
    values.update(overrides)
    return SessionConfig.model_validate(values)


@pytest.fixture
async def session() -> AsyncIterator[Session]:
    s = Session(command=list(BASH), prompt_marker=new_marker())
    await s.start(timeout=5.0)
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
async def registry() -> AsyncIterator[SessionRegistry]:
    reg = SessionRegistry(fast_session_config())
    try:
        yield reg
    finally:
        await reg.close_all()
