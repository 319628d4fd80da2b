"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from ptykernel.api.errors import kernel_error_handler
from ptykernel.api.routes import router
from ptykernel.config import KernelConfig
from ptykernel.errors import KernelError
from ptykernel.pty.registry import SessionRegistry
from ptykernel.service import KernelService

logger = logging.getLogger(__name__)


def create_app(config: KernelConfig | None = None) -> FastAPI:
    """Build the API app. Sessions live as long as the app's lifespan."""
    config = config or KernelConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        registry = SessionRegistry(config.session)
        app.state.registry = registry
        app.state.service = KernelService(registry)
        logger.info("Kernel service ready (default shell: %s)", config.session.shell)
        try:
            yield
        finally:
            await registry.close_all()

    app = FastAPI(
        title="ptykernel",
        description="Multiplexed shell sessions on pseudo-terminals.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(KernelError, kernel_error_handler)
    app.include_router(router)
    return app
