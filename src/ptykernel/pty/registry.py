"""Session registry — owns every live session, keyed by identifier."""

from __future__ import annotations

import asyncio
import logging
import uuid

from ptykernel.config import SessionConfig
from ptykernel.errors import SessionNotFound
from ptykernel.pty.process import split_command
from ptykernel.pty.prompt import detect_prompt, is_marker, new_marker
from ptykernel.pty.session import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Manages the lifecycle of multiple shell sessions.

    The registry ensures:
    - Sessions are tracked and can be looked up by ID
    - IDs are never reused while a session is live
    - Sessions whose shell dies on its own are dropped
    - All sessions are closed on shutdown (no orphan processes)

    Creation and deletion are serialized; lookups take no lock, so calls on
    one session are never held up by another session being opened or closed.
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self._config = config or SessionConfig()
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def open_session(
        self,
        command: str | list[str] | None = None,
        prompt: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> tuple[Session, bytes]:
        """Spawn a new session.

        Args:
            command: Shell command line; defaults to the configured shell.
            prompt: Known prompt text. Skips prompt detection when given.
                A prompt that is not a generated marker is replaced by one
                once the shell is up.
            cwd: Working directory for the shell.
            env: Additional environment variables.

        Returns:
            The new session and the raw output printed before its first
            prompt.

        Raises:
            PromptDetectionFailed: the shell never presented a prompt.
        """
        cfg = self._config
        argv = split_command(command or cfg.shell)
        if not prompt:
            prompt = await detect_prompt(
                argv,
                timeout=cfg.prompt_detect_timeout,
                cwd=cwd,
                rows=cfg.rows,
                cols=cfg.cols,
            )

        async with self._lock:
            session_id = uuid.uuid4().hex
            while session_id in self._sessions:
                session_id = uuid.uuid4().hex
            session = Session(
                command=argv,
                prompt_marker=prompt,
                id=session_id,
                cwd=cwd,
                env=env or {},
                rows=cfg.rows,
                cols=cfg.cols,
                execute_timeout=cfg.execute_timeout,
                interrupt_grace=cfg.interrupt_grace,
                prompt_change_timeout=cfg.prompt_change_timeout,
            )
            session.set_on_exit(self._on_session_exit)
            intro = await session.start(timeout=cfg.prompt_detect_timeout)
            if not is_marker(session.prompt_marker):
                # Startup files set their own PS1; pin a unique marker.
                try:
                    await session.change_prompt(new_marker())
                except BaseException:
                    await session.close()
                    raise
            self._sessions[session.id] = session

        logger.info("Opened session %s (%s)", session.id, " ".join(argv))
        return session, intro

    def get(self, session_id: str) -> Session:
        """Look up a live session.

        Raises:
            SessionNotFound: no session with this ID.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def delete(self, session_id: str) -> None:
        """Close a session and stop tracking it.

        Raises:
            SessionNotFound: no session with this ID.
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)
        await session.close()
        logger.info("Deleted session %s", session_id)

    def list_ids(self) -> list[str]:
        """IDs of all live sessions, in creation order."""
        return list(self._sessions)

    async def close_all(self) -> None:
        """Close every session. Called on shutdown."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        await asyncio.gather(*(s.close() for s in sessions))
        logger.info("All sessions closed")

    def _on_session_exit(self, session: Session, exit_code: int | None) -> None:
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            logger.warning(
                "Session %s shell exited on its own (code=%s); removed",
                session.id,
                exit_code,
            )
