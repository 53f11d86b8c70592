"""
Script command for frags.

Runs a standalone JavaScript file in the plan sandbox, with the configured
tools available through runFunction.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from frags.errors import FragsError
from frags.scripting import run_script_file
from frags.tools import connect_tools, read_tools_file


class _ToolRunner:
    """Runner handle exposing the tools registry to scripts."""

    def __init__(self, registry):
        self.registry = registry

    def run_function(self, name: str, args: Dict[str, Any]) -> Any:
        return self.registry.call(name, args, self)


def script_command(
    file: Path = typer.Argument(..., help="JavaScript file"),
    params: Optional[List[str]] = typer.Option(None, "--param", "-p", help="key=value passed as args (repeatable)"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Run a JavaScript file; prints the value of its last expression.

    The script sees its parameters as `args` and may call configured tools
    with runFunction(name, args).

    Examples:
        frags script transform.js -p name=world
    """
    from frags.cli import parse_params, setup_logging

    setup_logging(debug)
    if not file.exists():
        typer.echo(f"Error: script not found: {file}", err=True)
        raise typer.Exit(1)

    try:
        with connect_tools(read_tools_file()) as tools:
            result = run_script_file(str(file), parse_params(params), runner=_ToolRunner(tools.registry))
    except (FragsError, ImportError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except Exception as e:
        logging.getLogger(__name__).debug("script failed", exc_info=True)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(json.dumps(result, indent=2, default=str) if isinstance(result, (dict, list)) else str(result))
