"""PTY shell sessions — prompt detection, command execution and registry.

Every shell runs in a managed PTY session with process group isolation,
a broadcast output stream, prompt-delimited command execution and
automatic cleanup.
"""

from ptykernel.pty.session import ExecuteResult, Session, SessionState
from ptykernel.pty.registry import SessionRegistry
from ptykernel.pty.prompt import detect_prompt
from ptykernel.pty.stream import OutputStream, Subscription

__all__ = [
    "ExecuteResult",
    "Session",
    "SessionState",
    "SessionRegistry",
    "detect_prompt",
    "OutputStream",
    "Subscription",
]
