"""Error taxonomy for sessions, the registry and the service layer."""

from __future__ import annotations


class KernelError(Exception):
    """Base class for every error raised by ptykernel.

    ``kind`` is a stable, transport-friendly name for the error.
    ``partial_output`` holds whatever cleaned output was captured before
    the failure; it is never discarded.
    """

    kind: str = "kernel_error"

    def __init__(self, message: str = "", partial_output: bytes = b"") -> None:
        super().__init__(message)
        self.message = message
        self.partial_output = partial_output


class PromptDetectionFailed(KernelError):
    kind = "prompt_detection_failed"


class PromptChangeFailed(KernelError):
    kind = "prompt_change_failed"


class SessionClosed(KernelError):
    kind = "session_closed"


class SessionNotFound(KernelError, LookupError):
    kind = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionIOError(KernelError):
    """Process or PTY I/O failure."""

    kind = "io_error"


class ExecutionTimeout(KernelError):
    """The command outlived its timeout and was interrupted.

    The session answered the interrupt and is still usable.
    """

    kind = "execution_timeout"


class IrrecoverableState(KernelError):
    """The shell did not come back after an interrupt; the session is closed."""

    kind = "irrecoverable_state"
