"""Configuration — Pydantic models for ptykernel settings."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, Field


def _default_shell() -> str:
    return os.environ.get("SHELL") or "bash"


class SessionConfig(BaseModel):
    """Session engine tunables. All durations are in seconds."""

    shell: str = Field(
        default_factory=_default_shell,
        description="Shell command used when OpenSession does not name one",
    )
    execute_timeout: float = Field(
        default=30.0, description="Default timeout for Execute calls"
    )
    interrupt_grace: float = Field(
        default=3.0,
        description=(
            "How long to wait for the prompt after sending ^C to a timed-out "
            "command before the session is declared irrecoverable."
        ),
    )
    prompt_detect_timeout: float = Field(
        default=5.0, description="Bound for prompt detection and the first prompt"
    )
    prompt_change_timeout: float = Field(
        default=3.0, description="Bound for confirming a changed prompt"
    )
    rows: int = Field(default=50, description="PTY window rows")
    cols: int = Field(default=512, description="PTY window columns")


class ServerConfig(BaseModel):
    """HTTP transport configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=7863)


class KernelConfig(BaseModel):
    """Top-level ptykernel configuration."""

    session: SessionConfig = Field(default_factory=SessionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> KernelConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            PTYKERNEL_SHELL                  - Default shell command
            PTYKERNEL_EXECUTE_TIMEOUT        - Default Execute timeout (seconds)
            PTYKERNEL_INTERRUPT_GRACE        - Grace period after ^C (seconds)
            PTYKERNEL_PROMPT_DETECT_TIMEOUT  - Prompt detection bound (seconds)
            PTYKERNEL_PROMPT_CHANGE_TIMEOUT  - Prompt change bound (seconds)
            PTYKERNEL_HOST                   - Bind address for `serve`
            PTYKERNEL_PORT                   - Port for `serve`
        """
        from dotenv import load_dotenv

        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            import json

            with open(config_path) as f:
                config_data = json.load(f)

        session = config_data.get("session", {})
        server = config_data.get("server", {})

        env_shell = os.environ.get("PTYKERNEL_SHELL")
        if env_shell:
            session["shell"] = env_shell

        for key in (
            "execute_timeout",
            "interrupt_grace",
            "prompt_detect_timeout",
            "prompt_change_timeout",
        ):
            value = os.environ.get(f"PTYKERNEL_{key.upper()}")
            if value:
                session[key] = float(value)

        env_host = os.environ.get("PTYKERNEL_HOST")
        if env_host:
            server["host"] = env_host

        env_port = os.environ.get("PTYKERNEL_PORT")
        if env_port:
            server["port"] = int(env_port)

        if session:
            config_data["session"] = session
        if server:
            config_data["server"] = server

        return cls.model_validate(config_data)
