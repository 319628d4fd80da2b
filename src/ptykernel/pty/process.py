"""PTY process — a command spawned on a fresh pseudo-terminal."""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import pty
import select
import shlex
import signal
import struct
import subprocess
import termios

from ptykernel.errors import SessionIOError

logger = logging.getLogger(__name__)

READ_SIZE = 4096
HANGUP_GRACE = 0.5


def split_command(command: str | list[str]) -> list[str]:
    """Turn a shell command line into an argv list."""
    if isinstance(command, str):
        argv = shlex.split(command)
    else:
        argv = list(command)
    if not argv:
        raise ValueError("command must not be empty")
    return argv


class PTYProcess:
    """A child process whose stdio is the slave side of a new PTY.

    The parent keeps only the master fd. The child leads a new session with
    the slave as its controlling terminal, so the whole process group can be
    signalled and ^C written to the master reaches the foreground job.

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop.
    """

    def __init__(
        self,
        argv: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        rows: int = 50,
        cols: int = 512,
    ) -> None:
        self.argv = argv
        self.master_fd = -1
        self._proc: subprocess.Popen | None = None
        self._pgid = 0

        master_fd, slave_fd = pty.openpty()
        full_env = {**os.environ, "TERM": "dumb", **(env or {})}
        full_env.pop("PROMPT_COMMAND", None)
        try:
            _set_winsize(slave_fd, rows, cols)
            self._proc = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                preexec_fn=_become_session_leader,
                env=full_env,
                cwd=cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SessionIOError(f"Failed to spawn {argv[0]}: {e}") from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self.master_fd = master_fd
        self._pgid = self._proc.pid
        logger.debug("Spawned %s on pty: pid=%d", shlex.join(argv), self._proc.pid)

    @property
    def pid(self) -> int:
        return self._proc.pid if self._proc else 0

    def poll(self) -> int | None:
        return self._proc.poll() if self._proc else None

    def read(self, poll_interval: float = 0.1) -> bytes | None:
        """Read one chunk from the master fd. Blocking, meant for a worker thread.

        Returns ``None`` when nothing arrived within ``poll_interval`` and
        ``b""`` at end of stream (child gone or fd closed).
        """
        fd = self.master_fd
        if fd < 0:
            return b""
        try:
            ready, _, _ = select.select([fd], [], [], poll_interval)
            if not ready:
                return None
            return os.read(fd, READ_SIZE)
        except OSError as e:
            # EIO on the master means every slave fd was closed.
            if e.errno not in (errno.EIO, errno.EBADF):
                logger.debug("PTY read error on pid %d: %s", self.pid, e)
            return b""
        except ValueError:
            # select() on an fd that was closed concurrently
            return b""

    def write(self, data: bytes) -> None:
        """Write all of ``data`` to the master fd."""
        if self.master_fd < 0:
            raise SessionIOError("PTY is closed")
        view = memoryview(data)
        try:
            while view:
                written = os.write(self.master_fd, view)
                view = view[written:]
        except OSError as e:
            raise SessionIOError(f"PTY write failed: {e}") from e

    def resize(self, rows: int, cols: int) -> None:
        if self.master_fd < 0:
            raise SessionIOError("PTY is closed")
        _set_winsize(self.master_fd, rows, cols)

    def terminate(self, timeout: float = 2.0) -> int | None:
        """Kill the process group, reap the child and release the master fd.

        Safe to call more than once. Returns the child's exit status.
        """
        code = self.kill(timeout)
        self.close_fd()
        return code

    def kill(self, timeout: float = 2.0) -> int | None:
        """Kill the entire process group and reap the child.

        The master fd stays open so a concurrent reader can drain and stop
        before ``close_fd()``.
        """
        if self._proc is None:
            return None
        # SIGHUP first: an interactive shell forwards it to its jobs.
        for sig, wait in ((signal.SIGHUP, HANGUP_GRACE), (signal.SIGKILL, timeout)):
            if self._proc.poll() is not None:
                break
            try:
                os.killpg(self._pgid, sig)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self._pgid)
            except PermissionError as e:
                logger.warning("Could not signal process group %d: %s", self._pgid, e)
            try:
                self._proc.wait(timeout=wait)
            except subprocess.TimeoutExpired:
                continue
        code = self._proc.poll()
        if code is None:
            logger.warning("pid %d did not exit after SIGKILL", self._proc.pid)
        return code

    def close_fd(self) -> None:
        if self.master_fd >= 0:
            fd, self.master_fd = self.master_fd, -1
            try:
                os.close(fd)
            except OSError:
                pass


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _become_session_leader() -> None:
    # Runs in the child: new session with the PTY slave as controlling
    # terminal, so ^C reaches the foreground job and job control works.
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)
