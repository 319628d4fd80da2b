"""Session — one long-lived shell on a PTY, driven command by command."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Union

from ptykernel.errors import (
    ExecutionTimeout,
    IrrecoverableState,
    KernelError,
    PromptChangeFailed,
    PromptDetectionFailed,
    SessionClosed,
    SessionIOError,
)
from ptykernel.pty.parser import BoundaryParser, echo_line_count, parse_exit_code
from ptykernel.pty.process import PTYProcess
from ptykernel.pty.prompt import prompt_env
from ptykernel.pty.stream import OutputStream, Subscription

logger = logging.getLogger(__name__)

INTERRUPT = b"\x03"
READ_POLL_INTERVAL = 0.1
SETTLE_TIME = 0.1
SETTLE_LIMIT = 1.0

# The probe prints the status of the previous command behind this token.
# Its own echo shows ``%d`` after the token, never digits. ``$_`` is saved
# first and restored last so the next command still sees the user's value.
EXIT_CODE_TOKEN = "__PTYK_STATUS__"
EXIT_CODE_PROBE = (
    " __ptyk_s=$? __ptyk_u=$_;"
    f" printf '{EXIT_CODE_TOKEN}%d\\n' \"$__ptyk_s\";"
    " unset __ptyk_s;"
    ' : "$__ptyk_u"'
)

# Characters a shell would expand inside PS1.
_UNSAFE_PROMPT_CHARS = set("\\$`'!%\r\n")

Sink = Callable[[bytes], Union[Awaitable[None], None]]


class SessionState(enum.Enum):
    """Lifecycle states for a session."""

    CREATED = "created"
    READY = "ready"
    EXECUTING = "executing"
    CLOSED = "closed"


@dataclass
class ExecuteResult:
    """Clean output and exit status of one command."""

    data: bytes
    exit_code: int


@dataclass(eq=False)
class Session:
    """A managed shell session on a pseudo-terminal.

    Wraps an interactive shell with:
    - A reader task draining the PTY into a broadcast ``OutputStream``
    - Raw ``send``/``output`` access for interactive use
    - ``execute``: prompt-delimited command execution with exit codes
    - Timeout handling by ^C and resynchronisation on the prompt
    - An execution lock so concurrent ``execute`` calls never interleave

    Only one shell ever runs per session, so the working directory, exported
    variables and shell options persist across calls.
    """

    command: list[str]
    prompt_marker: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    rows: int = 50
    cols: int = 512
    execute_timeout: float = 30.0
    interrupt_grace: float = 3.0
    prompt_change_timeout: float = 3.0

    stream: OutputStream = field(default_factory=OutputStream, init=False)
    _process: PTYProcess | None = field(default=None, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _reader_pool: ThreadPoolExecutor | None = field(default=None, init=False)
    _state: SessionState = field(default=SessionState.CREATED, init=False)
    _closing: bool = field(default=False, init=False)
    _exec_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _on_exit: Callable[[Session, int | None], None] | None = field(
        default=None, init=False
    )

    def set_on_exit(self, callback: Callable[[Session, int | None], None]) -> None:
        """Set a callback invoked when the shell exits on its own.

        Not called when the session is closed through ``close()``.
        """
        self._on_exit = callback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, timeout: float = 5.0) -> bytes:
        """Spawn the shell and wait for its first prompt.

        Returns:
            Raw bytes printed before the first prompt (startup banner).

        Raises:
            PromptDetectionFailed: the prompt did not show within ``timeout``.
                The session is closed before the error propagates.
        """
        if self._state is not SessionState.CREATED:
            raise SessionClosed(f"Session {self.id} was already started")

        env = {"HISTCONTROL": "ignorespace", **self.env, **prompt_env(self.prompt_marker)}
        self._process = PTYProcess(
            self.command, env=env, cwd=self.cwd, rows=self.rows, cols=self.cols
        )
        self._reader_pool = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"pty-{self.id[:8]}"
        )

        sub = Subscription(self.stream)
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(
            "Session %s started: pid=%d cmd=%s",
            self.id,
            self._process.pid,
            " ".join(self.command),
        )

        try:
            intro = await self._wait_for_first_prompt(sub, timeout)
        except BaseException:
            await self.close()
            raise
        finally:
            sub.close()

        self._state = SessionState.READY
        return intro

    async def close(self) -> None:
        """Terminate the shell, release the PTY and end all output streams.

        Idempotent.
        """
        if self._closing:
            return
        self._closing = True
        self._state = SessionState.CLOSED

        loop = asyncio.get_running_loop()
        if self._process is not None:
            await loop.run_in_executor(None, self._process.kill)
        if self._reader_task is not None:
            await self._reader_task
        if self._process is not None:
            self._process.close_fd()
        if self._reader_pool is not None:
            self._reader_pool.shutdown(wait=False)
        self.stream.close()
        logger.info("Session %s closed", self.id)

    async def _read_loop(self) -> None:
        """Continuously drain the PTY master into the output stream."""
        loop = asyncio.get_running_loop()
        assert self._process is not None
        process = self._process
        try:
            while not self._closing:
                chunk = await loop.run_in_executor(
                    self._reader_pool, process.read, READ_POLL_INTERVAL
                )
                if chunk is None:
                    continue
                if not chunk:
                    break
                self.stream.publish(chunk)
        except Exception:
            logger.exception("PTY reader for session %s failed", self.id)
        finally:
            if not self._closing:
                self._closing = True
                self._state = SessionState.CLOSED
                process.close_fd()
                if self._reader_pool is not None:
                    self._reader_pool.shutdown(wait=False)
                exit_code = process.poll()
                self.stream.close()
                logger.info("Session %s exited (code=%s)", self.id, exit_code)
                if self._on_exit:
                    try:
                        self._on_exit(self, exit_code)
                    except Exception:
                        logger.exception(
                            "Error in on_exit callback for session %s", self.id
                        )

    async def _wait_for_first_prompt(self, sub: Subscription, timeout: float) -> bytes:
        parser = BoundaryParser(self.prompt_marker, echo_lines=0)
        raw = b""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not parser.done:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PromptDetectionFailed(
                    f"Prompt {self.prompt_marker!r} not seen within {timeout}s",
                    partial_output=raw,
                )
            try:
                chunk = await sub.get(remaining)
            except asyncio.TimeoutError:
                continue
            if chunk is None:
                raise PromptDetectionFailed(
                    f"{self.command[0]} exited before printing a prompt",
                    partial_output=raw,
                )
            raw += chunk
            parser.feed(chunk)

        idx = raw.rfind(self.prompt_marker.encode())
        return raw[:idx] if idx >= 0 else raw

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    async def send(self, data: bytes) -> None:
        """Write raw bytes to the PTY exactly as given (e.g. ``b"\\x03"``)."""
        self._ensure_open()
        await self._write(data)

    def output(self) -> Subscription:
        """Subscribe to the raw output stream from this point on.

        The subscription ends when the session closes.
        """
        self._ensure_open()
        return Subscription(self.stream)

    def resize(self, rows: int, cols: int) -> None:
        self._ensure_open()
        assert self._process is not None
        self._process.resize(rows, cols)
        self.rows, self.cols = rows, cols

    async def _write(self, data: bytes) -> None:
        process = self._process
        if process is None:
            raise SessionClosed(f"Session {self.id} is not running")
        loop = asyncio.get_running_loop()
        async with self._write_lock:
            await loop.run_in_executor(None, process.write, data)

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def execute(self, command: str, timeout: float | None = None) -> ExecuteResult:
        """Run ``command`` and return its clean output and exit code.

        ``command`` must be a single logical command line; backslash or
        quote continuations are fine, several newline-separated commands
        are not.

        Raises:
            ExecutionTimeout: the command was interrupted after ``timeout``;
                the session is still usable.
            IrrecoverableState: the shell did not answer the interrupt; the
                session has been closed.
            SessionClosed: the session is (or became) closed.
        """
        chunks: list[bytes] = []
        exit_code = await self.execute_with_writer(command, timeout, chunks.append)
        return ExecuteResult(data=b"".join(chunks), exit_code=exit_code)

    async def execute_with_writer(
        self, command: str, timeout: float | None, sink: Sink
    ) -> int:
        """Like ``execute`` but deliver clean output to ``sink`` as it arrives.

        ``sink`` may be a plain or an async callable taking ``bytes``.

        Returns:
            The command's exit code.
        """
        if timeout is None:
            timeout = self.execute_timeout
        command = command.rstrip("\n")

        async with self._exec_lock:
            self._ensure_open()
            self._state = SessionState.EXECUTING
            try:
                return await self._execute_locked(command, timeout, sink)
            finally:
                if self._state is SessionState.EXECUTING:
                    self._state = SessionState.READY

    async def _execute_locked(self, command: str, timeout: float, sink: Sink) -> int:
        parser = BoundaryParser(self.prompt_marker, echo_line_count(command))
        with Subscription(self.stream) as sub:
            try:
                await self._write(command.encode() + b"\n")
                await self._consume(sub, parser, timeout, sink)
            except asyncio.TimeoutError:
                partial = parser.partial_output().encode()
                await self._resync(sub, partial)
                raise ExecutionTimeout(
                    f"Command timed out after {timeout}s in session {self.id}",
                    partial_output=partial,
                ) from None
            except BaseException:
                # Cancelled, or the sink raised: the command may still be running.
                await self._abandon(sub, parser.partial_output().encode())
                raise

            output = parser.output.encode()
            try:
                return await self._probe_exit_code(sub, output)
            except BaseException:
                await self._abandon(sub, output)
                raise

    async def _consume(
        self,
        sub: Subscription,
        parser: BoundaryParser,
        timeout: float,
        sink: Sink | None,
    ) -> None:
        """Feed the parser until it sees the prompt. ``asyncio.TimeoutError`` if not."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not parser.done:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError
            chunk = await sub.get(remaining)
            if chunk is None:
                raise SessionClosed(
                    f"Session {self.id} closed during execution",
                    partial_output=parser.partial_output().encode(),
                )
            text = parser.feed(chunk)
            if text and sink is not None:
                result = sink(text.encode())
                if inspect.isawaitable(result):
                    await result

    async def _interrupt(self, sub: Subscription, partial: bytes) -> None:
        """Send ^C and wait for the prompt within the grace period."""
        logger.warning("Session %s: sending interrupt", self.id)
        await self._write(INTERRUPT)
        parser = BoundaryParser(self.prompt_marker, echo_lines=0)
        try:
            await self._consume(sub, parser, self.interrupt_grace, None)
        except asyncio.TimeoutError:
            logger.error(
                "Session %s did not return to its prompt after interrupt", self.id
            )
            await self.close()
            raise IrrecoverableState(
                f"Session {self.id} did not recover from interrupt and was closed",
                partial_output=partial,
            ) from None
        await self._settle(sub)

    async def _resync(self, sub: Subscription, partial: bytes) -> None:
        """Run ``_interrupt`` to completion even if the caller is cancelled.

        The execution lock is only released once the shell is back at its
        prompt or the session has been closed.
        """
        task = asyncio.ensure_future(self._interrupt(sub, partial))
        cancelled = False
        while not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    raise
                cancelled = True
        task.result()
        if cancelled:
            raise asyncio.CancelledError

    async def _abandon(self, sub: Subscription, partial: bytes) -> None:
        """Bring the shell back to its prompt after an execute ended early."""
        if self._closing:
            return
        logger.warning("Session %s: execute abandoned, resynchronising", self.id)
        try:
            await self._resync(sub, partial)
        except KernelError as e:
            logger.error("Session %s: resync failed: %s", self.id, e)

    async def _settle(self, sub: Subscription) -> None:
        """Swallow stray output (e.g. a second prompt) until the PTY goes quiet."""
        loop = asyncio.get_running_loop()
        limit = loop.time() + SETTLE_LIMIT
        while loop.time() < limit:
            try:
                chunk = await sub.get(SETTLE_TIME)
            except asyncio.TimeoutError:
                return
            if chunk is None:
                return
            logger.debug("Session %s: discarded %d stray bytes", self.id, len(chunk))

    async def _probe_exit_code(self, sub: Subscription, output: bytes) -> int:
        parser = BoundaryParser(self.prompt_marker, echo_line_count(EXIT_CODE_PROBE))
        await self._write(EXIT_CODE_PROBE.encode() + b"\n")
        try:
            await self._consume(sub, parser, self.interrupt_grace, None)
        except asyncio.TimeoutError:
            raise SessionIOError(
                f"Session {self.id}: exit code probe timed out",
                partial_output=output,
            ) from None
        code = parse_exit_code(parser.output, EXIT_CODE_TOKEN)
        if code is None:
            raise SessionIOError(
                f"Session {self.id}: could not recover exit code from "
                f"{parser.output!r}",
                partial_output=output,
            )
        return code

    # ------------------------------------------------------------------
    # Prompt management
    # ------------------------------------------------------------------

    async def change_prompt(self, new_marker: str) -> None:
        """Switch the shell's prompt to ``new_marker`` and confirm it.

        Raises:
            ValueError: the marker is empty or contains characters the shell
                would expand.
            PromptChangeFailed: the new prompt was not confirmed within
                ``prompt_change_timeout``.
        """
        if not new_marker or _UNSAFE_PROMPT_CHARS & set(new_marker):
            raise ValueError(f"Unsupported prompt marker: {new_marker!r}")

        async with self._exec_lock:
            self._ensure_open()
            command = f"PS1='{new_marker} '"
            parser = BoundaryParser(new_marker, echo_line_count(command))
            with Subscription(self.stream) as sub:
                await self._write(command.encode() + b"\n")
                try:
                    await self._consume(sub, parser, self.prompt_change_timeout, None)
                except asyncio.TimeoutError:
                    raise PromptChangeFailed(
                        f"Prompt {new_marker!r} not confirmed within "
                        f"{self.prompt_change_timeout}s",
                        partial_output=parser.partial_output().encode(),
                    ) from None
            logger.info(
                "Session %s prompt changed: %r -> %r",
                self.id,
                self.prompt_marker,
                new_marker,
            )
            self.prompt_marker = new_marker

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._state is SessionState.CLOSED:
            raise SessionClosed(f"Session {self.id} is closed")
        if self._state is SessionState.CREATED:
            raise SessionClosed(f"Session {self.id} is not started")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._state in (SessionState.READY, SessionState.EXECUTING)

    @property
    def pid(self) -> int:
        return self._process.pid if self._process else 0
