"""Map kernel errors onto HTTP responses."""

from __future__ import annotations

import base64
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import Response

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

_STATUS_CODES: dict[type[KernelError], int] = {
    SessionNotFound: 404,
    SessionClosed: 409,
    ExecutionTimeout: 504,
    PromptDetectionFailed: 502,
    PromptChangeFailed: 502,
    IrrecoverableState: 500,
    SessionIOError: 500,
}


def status_code_for(exc: KernelError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 500


def error_body(kind: str, message: str, data: bytes = b"") -> dict[str, Any]:
    """The JSON error envelope. ``data`` is partial output, base64 encoded."""
    return {
        "kind": kind,
        "message": message,
        "data": base64.b64encode(data).decode("ascii"),
    }


def http_error(
    kind: str,
    message: str,
    *,
    status_code: int,
    data: bytes = b"",
) -> HTTPException:
    return HTTPException(
        status_code=int(status_code),
        detail=error_body(kind, message, data),
    )


def kernel_http_error(exc: KernelError) -> HTTPException:
    return http_error(
        exc.kind,
        exc.message or str(exc),
        status_code=status_code_for(exc),
        data=exc.partial_output,
    )


async def kernel_error_handler(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, KernelError)
    return await http_exception_handler(request, kernel_http_error(exc))
