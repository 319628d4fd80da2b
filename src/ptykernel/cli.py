"""CLI entry point for ptykernel."""

from __future__ import annotations

import asyncio
import logging
import sys

import typer

from ptykernel.config import KernelConfig
from ptykernel.errors import ExecutionTimeout, KernelError

app = typer.Typer(
    name="ptykernel",
    help="Multiplexed shell sessions on pseudo-terminals.",
    no_args_is_help=True,
)

# Exit status used by timeout(1) for a command that ran out of time.
TIMEOUT_EXIT_CODE = 124


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(
        None, "--host", "-H", help="Bind address (default: from env/config)."
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Port (default: from env/config)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run the kernel service over HTTP and WebSocket."""
    import uvicorn

    from ptykernel.api import create_app

    setup_logging(verbose)
    config = KernelConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port

    typer.echo("ptykernel v0.1.0")
    typer.echo(f"Listening on http://{config.server.host}:{config.server.port}")
    typer.echo(f"Default shell: {config.session.shell}")
    typer.echo("---")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


@app.command("detect-prompt")
def detect_prompt_command(
    shell: str = typer.Argument(help="Shell command line to probe, e.g. 'bash'."),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Seconds to wait for the prompt."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Print the prompt a shell shows when it is idle."""
    from ptykernel.pty.prompt import detect_prompt

    setup_logging(verbose)
    config = KernelConfig.load(config_file)
    try:
        prompt = asyncio.run(
            detect_prompt(
                shell,
                timeout=timeout or config.session.prompt_detect_timeout,
                rows=config.session.rows,
                cols=config.session.cols,
            )
        )
    except (KernelError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(prompt)


@app.command("exec")
def exec_command(
    command: list[str] = typer.Argument(help="Command line to run in the shell."),
    shell: str | None = typer.Option(
        None, "--shell", "-s", help="Shell to run it in (default: from env/config)."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Seconds before the command is interrupted."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run one command in a fresh shell session and exit with its status."""
    setup_logging(verbose)
    config = KernelConfig.load(config_file)
    if shell:
        config.session.shell = shell

    try:
        exit_code = asyncio.run(_run_once(" ".join(command), timeout, config))
    except ExecutionTimeout as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(TIMEOUT_EXIT_CODE)
    except (KernelError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    raise typer.Exit(exit_code)


async def _run_once(command: str, timeout: float | None, config: KernelConfig) -> int:
    from ptykernel.pty.registry import SessionRegistry

    registry = SessionRegistry(config.session)
    written = 0

    def sink(data: bytes) -> None:
        nonlocal written
        written += len(data)
        _write_output(data)

    try:
        session, _intro = await registry.open_session()
        exit_code = await session.execute_with_writer(command, timeout, sink)
        if written:
            # Output arrives without its final newline.
            _write_output(b"\n")
        return exit_code
    finally:
        await registry.close_all()


def _write_output(data: bytes) -> None:
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
