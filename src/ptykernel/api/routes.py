"""API router for the kernel service.

Unary calls are plain JSON endpoints. Server streams are NDJSON: one
JSON message per line. An error after the stream has started is sent as a
final ``{"error": {...}}`` line. The bidirectional IO call is a WebSocket
carrying one JSON message per frame in each direction.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketState

from ptykernel.api.errors import error_body, http_error
from ptykernel.errors import KernelError
from ptykernel.service import (
    Base64Data,
    DeleteSessionRequest,
    ExecuteRequest,
    ExecuteResponse,
    InputRequest,
    IORequest,
    KernelService,
    ListSessionsResponse,
    OutputRequest,
    PostSessionRequest,
    PostSessionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Sessions"])

NDJSON = "application/x-ndjson"


class ExecuteBody(BaseModel):
    command: str
    timeout: float | None = Field(default=None, gt=0)


class InputBody(BaseModel):
    data: Base64Data = b""


def get_service(request: Request) -> KernelService:
    return request.app.state.service


async def _ndjson(messages: AsyncIterator[BaseModel]) -> AsyncIterator[str]:
    try:
        async for message in messages:
            yield message.model_dump_json() + "\n"
    except KernelError as e:
        logger.info("Stream ended with %s: %s", e.kind, e)
        yield json.dumps({"error": error_body(e.kind, str(e), e.partial_output)}) + "\n"


@router.post("/sessions", response_model=PostSessionResponse, status_code=201)
async def post_session(
    request: PostSessionRequest, service: KernelService = Depends(get_service)
):
    """Open a new shell session.

    Example:
        ```json
        {"command": "bash --norc", "prompt": ""}
        ```
    """
    try:
        return await service.post_session(request)
    except ValueError as e:
        raise http_error("invalid_argument", str(e), status_code=400)


@router.get("/sessions", response_model=ListSessionsResponse)
async def list_sessions(service: KernelService = Depends(get_service)):
    return await service.list_sessions()


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(
    session_id: str, service: KernelService = Depends(get_service)
) -> Response:
    await service.delete_session(DeleteSessionRequest(session_id=session_id))
    return Response(status_code=204)


@router.post("/sessions/{session_id}/execute", response_model=ExecuteResponse)
async def execute(
    session_id: str,
    body: ExecuteBody,
    service: KernelService = Depends(get_service),
):
    """Run one command and return its output and exit code.

    On timeout the response is 504 and ``detail.data`` holds the output
    captured before the command was interrupted.
    """
    return await service.execute(
        ExecuteRequest(session_id=session_id, command=body.command, timeout=body.timeout)
    )


@router.post("/sessions/{session_id}/execute:stream")
async def execute_stream(
    session_id: str,
    body: ExecuteBody,
    service: KernelService = Depends(get_service),
) -> StreamingResponse:
    """Run one command, streaming ``ExecuteResponse`` lines.

    The last line carries ``exit_code``.
    """
    service.registry.get(session_id)
    messages = service.execute_stream(
        ExecuteRequest(session_id=session_id, command=body.command, timeout=body.timeout)
    )
    return StreamingResponse(_ndjson(messages), media_type=NDJSON)


@router.post("/sessions/{session_id}/input", status_code=204)
async def send_input(
    session_id: str,
    body: InputBody,
    service: KernelService = Depends(get_service),
) -> Response:
    """Write raw bytes (base64 in ``data``) to the session's terminal."""
    await service.input(InputRequest(session_id=session_id, data=body.data))
    return Response(status_code=204)


@router.get("/sessions/{session_id}/output")
async def stream_output(
    session_id: str, service: KernelService = Depends(get_service)
) -> StreamingResponse:
    """Stream raw terminal output as ``OutputResponse`` lines until the session ends."""
    service.registry.get(session_id)
    messages = service.output(OutputRequest(session_id=session_id))
    return StreamingResponse(_ndjson(messages), media_type=NDJSON)


@router.websocket("/io")
async def io(websocket: WebSocket) -> None:
    """Bidirectional raw I/O with one session.

    Message format (client -> server), the first one naming the session:
    ```json
    {"session_id": "...", "data": "<base64>"}
    ```

    Message format (server -> client):
    ```json
    {"data": "<base64>"}
    ```

    Errors are sent as ``{"error": {"kind", "message", "data"}}`` before
    the socket is closed.
    """
    service: KernelService = websocket.app.state.service
    await websocket.accept()

    async def requests() -> AsyncIterator[IORequest]:
        while True:
            try:
                message = await websocket.receive_json()
            except WebSocketDisconnect:
                return
            yield IORequest.model_validate(message)

    try:
        async for response in service.io(requests()):
            await websocket.send_text(response.model_dump_json())
    except KernelError as e:
        logger.info("IO stream ended with %s: %s", e.kind, e)
        await _close_with_error(websocket, error_body(e.kind, str(e), e.partial_output), 1011)
        return
    except ValueError as e:
        # Malformed JSON or message
        await _close_with_error(websocket, error_body("invalid_argument", str(e)), 1003)
        return
    except WebSocketDisconnect:
        return

    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close()


async def _close_with_error(websocket: WebSocket, error: dict, code: int) -> None:
    if websocket.client_state != WebSocketState.CONNECTED:
        return
    await websocket.send_json({"error": error})
    await websocket.close(code=code)
