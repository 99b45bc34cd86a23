"""messaging-link CLI.

Usage:
    messaging-link serve                          # Serve the echo engine over stdio
    messaging-link serve pkg.module:engine        # Serve an engine over stdio
    messaging-link serve ENGINE --http --port 8080  # Serve over WebSocket at /ws
    messaging-link query "{ foo }" --var arg1=1   # Run one operation against a stdio server
    messaging-link health --url http://localhost:4096
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import sys
from typing import Any

import click
import httpx

from .config import ENGINE_ENV_VAR, LinkConfig, get_engine_ref, get_log_level
from .engines import load_engine
from .exceptions import MessagingLinkError
from .executor import ExecutionEngine, MessagingExecutor
from .link import MessagingLink
from .operation import Operation
from .transport.stream import open_stdio_port, spawn_port

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4096
HEALTH_TIMEOUT = 5.0


@click.group()
@click.option(
    "--log-level",
    default=None,
    help="Logging level (default: $MESSAGING_LINK_LOG_LEVEL or WARNING)",
)
def main(log_level: str | None) -> None:
    """Run operations over message ports."""
    # Logs go to stderr; stdout carries protocol traffic in stdio mode
    logging.basicConfig(
        level=(log_level or get_log_level()).upper(),
        format="%(levelname)s: %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.argument("engine_ref", required=False)
@click.option("--http", "http_mode", is_flag=True, help="Serve over HTTP/WebSocket instead of stdio")
@click.option("--host", default=DEFAULT_HOST, help="Host to bind to (HTTP mode)")
@click.option("--port", default=DEFAULT_PORT, help="Port to bind to (HTTP mode)")
def serve(engine_ref: str | None, http_mode: bool, host: str, port: int) -> None:
    """Serve ENGINE_REF ("module:attribute") to requesters.

    Defaults to $MESSAGING_LINK_ENGINE, then the built-in echo engine.
    """
    if (host != DEFAULT_HOST or port != DEFAULT_PORT) and not http_mode:
        raise click.UsageError("--host and --port require --http mode.")

    ref = engine_ref or get_engine_ref()
    try:
        engine = load_engine(ref)
    except (ImportError, ValueError) as e:
        raise click.ClickException(f"Cannot load engine {ref}: {e}") from e

    if http_mode:
        _run_http_server(ref, host, port)
    else:
        _run_stdio_server(engine)


def _run_http_server(engine_ref: str, host: str, port: int) -> None:
    """Run HTTP/WebSocket server mode."""
    import uvicorn

    # The app factory reads the engine from the environment
    os.environ[ENGINE_ENV_VAR] = engine_ref
    click.echo(f"Serving {engine_ref} on ws://{host}:{port}/ws", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run("messaging_link.app:create_app", factory=True, host=host, port=port)


def _run_stdio_server(engine: ExecutionEngine) -> None:
    """Run stdio server mode until stdin closes."""

    async def run() -> None:
        port = await open_stdio_port()
        executor = MessagingExecutor(engine, config=LinkConfig.from_env())
        executor.bind(port)
        await port.wait_closed()
        executor.close()
        await port.aclose()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


def _parse_variables(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Parse key=value pairs; values are JSON when they parse as JSON."""
    variables: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--var")
        try:
            variables[key] = json.loads(raw)
        except json.JSONDecodeError:
            variables[key] = raw
    return variables


@main.command()
@click.argument("query_text", metavar="QUERY")
@click.option("--operation-name", "-o", default=None, help="Operation name")
@click.option("--var", "variables", multiple=True, help="Variable as key=value (repeatable)")
@click.option("--engine", "engine_ref", default=None, help="Engine for the spawned server")
@click.option("--spawn", "spawn_command", default=None, help="Server command to spawn")
def query(
    query_text: str,
    operation_name: str | None,
    variables: tuple[str, ...],
    engine_ref: str | None,
    spawn_command: str | None,
) -> None:
    """Run QUERY against a stdio server and print each result as a JSON line."""
    if spawn_command:
        command = shlex.split(spawn_command)
    else:
        command = [sys.executable, "-m", "messaging_link", "serve"]
        if engine_ref:
            command.append(engine_ref)

    operation = Operation(
        query=query_text,
        operation_name=operation_name,
        variables=_parse_variables(variables),
    )

    async def run() -> None:
        port = await spawn_port(command)
        link = MessagingLink(port, config=LinkConfig.from_env())
        try:
            async with link.request(operation) as stream:
                async for result in stream:
                    click.echo(json.dumps(result, ensure_ascii=False))
        finally:
            await port.aclose()

    try:
        asyncio.run(run())
    except MessagingLinkError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.option("--url", default=f"http://{DEFAULT_HOST}:{DEFAULT_PORT}", help="Server base URL")
@click.option("--timeout", default=HEALTH_TIMEOUT, show_default=True, help="Seconds to wait")
def health(url: str, timeout: float) -> None:
    """Report a server's open connections and in-flight operations."""

    async def fetch() -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(f"{url.rstrip('/')}/health")
            response.raise_for_status()
            return response.json()

    try:
        status = asyncio.run(fetch())
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"Health check failed: HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        raise click.ClickException(f"No messaging-link server at {url}: {e}") from e

    click.echo(
        f"{status.get('status', 'unknown')}: "
        f"{status.get('connections', 0)} connection(s), "
        f"{status.get('operations', 0)} operation(s) in flight"
    )


if __name__ == "__main__":
    main()
