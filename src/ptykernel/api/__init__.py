"""HTTP and WebSocket transport for the kernel service."""

from ptykernel.api.app import create_app

__all__ = ["create_app"]
