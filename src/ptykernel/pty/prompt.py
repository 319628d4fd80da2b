"""Prompt detection — learn the literal prompt a shell prints when idle."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid

from ptykernel.errors import PromptDetectionFailed
from ptykernel.pty.ansi import clean
from ptykernel.pty.process import PTYProcess, split_command

logger = logging.getLogger(__name__)

SETTLE_TIME = 0.3
_MARKER_RE = re.compile(r"ptyk-[0-9a-f]{8}>")


def new_marker() -> str:
    """A fresh prompt marker, unique enough not to collide with output."""
    return f"ptyk-{uuid.uuid4().hex[:8]}>"


def is_marker(prompt: str) -> bool:
    """Whether ``prompt`` is a marker produced by ``new_marker()``."""
    return bool(_MARKER_RE.fullmatch(prompt))


def prompt_env(marker: str) -> dict[str, str]:
    """Environment forcing ``marker`` as the primary prompt."""
    return {"PS1": f"{marker} "}


def last_line(text: str) -> str:
    lines = text.rstrip("\n").split("\n")
    return lines[-1].rstrip() if lines else ""


async def detect_prompt(
    command: str | list[str],
    timeout: float = 5.0,
    cwd: str | None = None,
    rows: int = 50,
    cols: int = 512,
) -> str:
    """Probe ``command`` once and return the prompt it renders.

    The shell is started with ``PS1`` forced to a unique marker so the prompt
    cannot be confused with command output. If startup files override
    ``PS1`` the marker never shows; in that case an empty line is entered
    and the re-rendered last line is taken as the prompt.

    Raises:
        PromptDetectionFailed: the shell exited before printing a prompt, or
            printed nothing recognisable before ``timeout``.
    """
    argv = split_command(command)
    marker = new_marker()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    proc = PTYProcess(argv, env=prompt_env(marker), cwd=cwd, rows=rows, cols=cols)
    try:
        text = await _read_until_idle(proc, deadline, marker)
        prompt = last_line(clean(text))
        if marker in prompt:
            logger.debug("Detected forced prompt for %s: %r", argv[0], prompt)
            return prompt

        logger.debug("%s overrides PS1; probing with an empty line", argv[0])
        proc.write(b"\n")
        text = await _read_until_idle(proc, deadline, None)
        prompt = last_line(clean(text))
        if not prompt:
            raise PromptDetectionFailed(f"{argv[0]} printed no prompt")
        logger.debug("Detected prompt for %s: %r", argv[0], prompt)
        return prompt
    finally:
        await loop.run_in_executor(None, proc.terminate)


async def _read_until_idle(
    proc: PTYProcess, deadline: float, marker: str | None
) -> str:
    """Collect output until ``marker`` ends a line or output goes quiet."""
    loop = asyncio.get_running_loop()
    raw = b""
    quiet_since: float | None = None

    while True:
        now = loop.time()
        if now >= deadline:
            if raw:
                return raw.decode("utf-8", errors="replace")
            raise PromptDetectionFailed(
                f"{proc.argv[0]} printed nothing before the timeout"
            )
        if quiet_since is not None and now - quiet_since >= SETTLE_TIME:
            return raw.decode("utf-8", errors="replace")

        chunk = await loop.run_in_executor(None, proc.read, 0.05)
        if chunk is None:
            if raw and quiet_since is None:
                quiet_since = loop.time()
            continue
        if not chunk:
            raise PromptDetectionFailed(
                f"{proc.argv[0]} exited before printing a prompt "
                f"(status {proc.poll()})"
            )

        raw += chunk
        quiet_since = None
        if marker is not None and marker in last_line(
            clean(raw.decode("utf-8", errors="replace"))
        ):
            return raw.decode("utf-8", errors="replace")
