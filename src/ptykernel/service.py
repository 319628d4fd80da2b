"""Kernel service — session RPCs on top of the registry.

Each method implements one remote call: unary calls return a response
message, streaming calls are async iterators of messages, and ``io``
consumes a request iterator while producing a response iterator. Nothing
here knows about a particular transport; ``ptykernel.api`` maps the calls
onto HTTP and WebSocket.

Byte fields stay ``bytes`` in Python and travel as base64 text in JSON.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Annotated, Any, AsyncIterator

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer

from ptykernel.pty.registry import SessionRegistry
from ptykernel.pty.session import Session

logger = logging.getLogger(__name__)


def _decode_base64(value: Any) -> Any:
    if isinstance(value, str):
        return base64.b64decode(value, validate=True)
    return value


def _encode_base64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


Base64Data = Annotated[
    bytes,
    BeforeValidator(_decode_base64),
    PlainSerializer(_encode_base64, return_type=str, when_used="json"),
]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class SessionInfo(BaseModel):
    id: str


class PostSessionRequest(BaseModel):
    command: str = Field(
        default="",
        description="Shell command line to run. Empty uses the configured shell.",
    )
    prompt: str = Field(
        default="",
        description="Prompt the shell prints when idle. Empty to auto-detect.",
    )


class PostSessionResponse(BaseModel):
    session: SessionInfo
    intro_data: Base64Data = Field(
        default=b"", description="Output printed before the first prompt."
    )


class DeleteSessionRequest(BaseModel):
    session_id: str


class ListSessionsResponse(BaseModel):
    sessions: list[SessionInfo] = Field(default_factory=list)


class ExecuteRequest(BaseModel):
    session_id: str = ""
    command: str = Field(description="A single command line, without newline.")
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds before the command is interrupted. "
        "Defaults to the configured execute timeout.",
    )


class ExecuteResponse(BaseModel):
    exit_code: int | None = Field(
        default=None, description="Set only on the final message of a command."
    )
    data: Base64Data = Field(
        default=b"",
        description="Command output without echo, prompt or escape sequences.",
    )


class InputRequest(BaseModel):
    session_id: str = ""
    data: Base64Data = Field(
        default=b"",
        description="Raw input. May contain control characters such as ^C.",
    )


class OutputRequest(BaseModel):
    session_id: str


class OutputResponse(BaseModel):
    data: Base64Data = b""


class IORequest(BaseModel):
    session_id: str = ""
    data: Base64Data = b""


class IOResponse(BaseModel):
    data: Base64Data = b""


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class KernelService:
    """Remote-call surface over a ``SessionRegistry``.

    Every call that names a session raises ``SessionNotFound`` for an
    unknown identifier. Session errors propagate unchanged.
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    async def post_session(self, request: PostSessionRequest) -> PostSessionResponse:
        session, intro = await self._registry.open_session(
            request.command or None, request.prompt or None
        )
        return PostSessionResponse(session=SessionInfo(id=session.id), intro_data=intro)

    async def delete_session(self, request: DeleteSessionRequest) -> None:
        await self._registry.delete(request.session_id)

    async def list_sessions(self) -> ListSessionsResponse:
        return ListSessionsResponse(
            sessions=[SessionInfo(id=sid) for sid in self._registry.list_ids()]
        )

    async def execute(self, request: ExecuteRequest) -> ExecuteResponse:
        session = self._registry.get(request.session_id)
        result = await session.execute(request.command, request.timeout)
        return ExecuteResponse(exit_code=result.exit_code, data=result.data)

    async def execute_stream(
        self, request: ExecuteRequest
    ) -> AsyncIterator[ExecuteResponse]:
        """Stream output chunks as they arrive; the last message has the exit code.

        If the consumer stops early the command still runs to completion (or
        to its timeout) so the session stays in step with its shell.
        """
        session = self._registry.get(request.session_id)
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        task = asyncio.create_task(
            session.execute_with_writer(
                request.command, request.timeout, queue.put_nowait
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield ExecuteResponse(data=chunk)
            yield ExecuteResponse(exit_code=task.result())
        finally:
            if not task.done():
                task.add_done_callback(_log_orphaned_execute)

    async def input(self, request: InputRequest) -> None:
        session = self._registry.get(request.session_id)
        await session.send(request.data)

    async def output(self, request: OutputRequest) -> AsyncIterator[OutputResponse]:
        """Raw output from now until the session closes."""
        session = self._registry.get(request.session_id)
        with session.output() as sub:
            async for chunk in sub:
                yield OutputResponse(data=chunk)

    async def io(
        self, requests: AsyncIterator[IORequest]
    ) -> AsyncIterator[IOResponse]:
        """Bidirectional raw I/O.

        The first request names the session; the data of every request is
        written to the PTY. Raw output is yielded until the request stream
        ends or the session closes.
        """
        try:
            first = await requests.__anext__()
        except StopAsyncIteration:
            return
        session = self._registry.get(first.session_id)

        with session.output() as sub:
            if first.data:
                await session.send(first.data)
            pump = asyncio.create_task(_pump_input(session, requests))
            try:
                while True:
                    getter = asyncio.ensure_future(sub.get())
                    done, _ = await asyncio.wait(
                        {getter, pump}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if getter in done:
                        chunk = getter.result()
                        if chunk is None:
                            break
                        yield IOResponse(data=chunk)
                        continue
                    getter.cancel()
                    # Re-raises input errors; returns quietly at end of input.
                    pump.result()
                    break
            finally:
                if not pump.done():
                    pump.cancel()
                    try:
                        await pump
                    except asyncio.CancelledError:
                        pass
        logger.debug("IO stream for session %s ended", session.id)


async def _pump_input(session: Session, requests: AsyncIterator[IORequest]) -> None:
    async for request in requests:
        if request.data:
            await session.send(request.data)


def _log_orphaned_execute(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Streamed execute finished after its consumer left: %s", exc)
