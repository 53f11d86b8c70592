# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Web command for frags.

Starts the HTTP API or the MCP server with uvicorn.
"""

import typer

from frags.tools import read_tools_file

app = typer.Typer(help="Serve plans over HTTP or MCP")


def _serve(asgi_app, host: str, port: int, log_level: str) -> None:
    import uvicorn

    uvicorn.run(asgi_app, host=host, port=port, log_level=log_level.lower())


def _http(mode: str, host: str, port: int, debug: bool) -> None:
    from frags.cli import load_settings_or_exit, setup_logging
    from frags.web.app import create_app

    settings = load_settings_or_exit()
    setup_logging(debug, settings.log_level)
    _serve(create_app(settings, tools_config=read_tools_file(), mode=mode), host, port, settings.log_level)


@app.command("execute")
def execute_command(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8080, "--port", help="Port"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Serve POST /execute (plans sent in the request body)."""
    _http("execute", host, port, debug)


@app.command("run")
def run_command(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8080, "--port", help="Port"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Serve POST /run/{file} for plans in PLANS_DIR."""
    _http("run", host, port, debug)


@app.command("mcp")
def mcp_command(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8081, "--port", help="Port"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Serve plans as MCP tools over streamable HTTP (path /mcp)."""
    from frags.cli import load_settings_or_exit, setup_logging
    from frags.web.mcp_server import create_mcp_app

    settings = load_settings_or_exit()
    setup_logging(debug, settings.log_level)
    try:
        asgi_app = create_mcp_app(settings, tools_config=read_tools_file())
    except ImportError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    _serve(asgi_app, host, port, settings.log_level)
