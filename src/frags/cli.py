# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for frags.

Dumb trigger: parses args, loads the plan, executes, renders output.
No plan logic here - it all lives in the runner.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from frags import __version__
from frags.config import Settings, load_settings
from frags.errors import ConfigError, FragsError
from frags.events import JsonlEventSink, StreamerLogger
from frags.executor import FORMATS, execute, render_result
from frags.resources import FileResourceLoader
from frags.session_manager import SessionManager
from frags.tools import ToolsConfig, read_tools_file


app = typer.Typer(
    name="frags",
    help="Run declarative LLM plans: schema-scoped, phased, tool-using sessions",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)


def parse_params(args: Optional[List[str]]) -> Dict[str, str]:
    """Parse key=value arguments into a dict.

    Values stay strings; the plan's parameters schema converts them (loose
    mode), so "42" satisfies an integer parameter.
    """
    if not args:
        return {}
    result = {}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"expected key=value, got {arg!r}")
        key, value = arg.split("=", 1)
        result[key.strip()] = value
    return result


def setup_logging(debug: bool = False, level: str = "INFO") -> None:
    """Configure the root logger for CLI use (stderr)."""
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def load_settings_or_exit() -> Settings:
    """Load settings; on failure print the reason and exit 1."""
    try:
        return load_settings()
    except ConfigError as e:
        typer.echo(f"Config error: {e}", err=True)
        typer.echo("Run 'frags config' to see the available settings.", err=True)
        raise typer.Exit(1)


def _write_output(text: str, output: Optional[str]) -> None:
    if output:
        path = Path(output).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    else:
        typer.echo(text, nl=not text.endswith("\n"))


@app.command()
def run(
    plan: Path = typer.Argument(..., help="Plan YAML file"),
    format: str = typer.Option("yaml", "--format", "-f", help="Output format: yaml, json, template"),
    template: Optional[Path] = typer.Option(None, "--template", "-t", help="Template file (with -f template)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write output to a file"),
    params: Optional[List[str]] = typer.Option(None, "--param", "-p", help="key=value plan parameter (repeatable)"),
    events_log: Optional[Path] = typer.Option(None, "--events-log", help="Append run events to a JSONL file"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Run a plan and print its structured result."""
    if format not in FORMATS:
        typer.echo(f"Error: unsupported format {format!r}", err=True)
        raise typer.Exit(1)
    if format == "template" and template is None:
        typer.echo("Error: template path must be specified when using -f template", err=True)
        raise typer.Exit(1)
    if not plan.exists():
        typer.echo(f"Error: plan not found: {plan}", err=True)
        raise typer.Exit(1)

    settings = load_settings_or_exit()
    setup_logging(debug, settings.log_level)

    try:
        sm = SessionManager.from_file(plan)
        result = execute(
            None,
            sm,
            parse_params(params),
            read_tools_file(),
            FileResourceLoader(plan.parent),
            StreamerLogger(logging.getLogger("frags"), sink=JsonlEventSink(events_log) if events_log else None),
            settings=settings,
        )
        text = render_result(result, format, template.read_text() if template else None)
    except FragsError as e:
        typer.echo(f"Error ({e.kind}): {e}", err=True)
        raise typer.Exit(1)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    _write_output(text, output)


def ask_plan(
    prompt: str,
    system_prompt: Optional[str] = None,
    pre_prompt: Optional[str] = None,
    uploads: Optional[List[str]] = None,
    tools_config: Optional[ToolsConfig] = None,
) -> Dict[str, Any]:
    """One-session plan asking for a single ``answer`` string."""
    tools: List[Dict[str, str]] = []
    if tools_config is not None:
        tools += [{"name": n, "type": "mcp"} for n, s in tools_config.mcp_servers.items() if not s.disabled]
        tools += [{"name": n, "type": "collection"} for n, c in tools_config.collections.items() if not c.disabled]
    plan: Dict[str, Any] = {
        "sessions": {
            "default": {
                "prompt": prompt,
                "prePrompt": [pre_prompt] if pre_prompt else [],
                "tools": tools,
                "resources": [{"identifier": u} for u in uploads or []],
            }
        },
        "schema": {
            "type": "object",
            "required": ["answer"],
            "properties": {
                "answer": {
                    "type": "string",
                    "description": "the answer to the prompt",
                    "x-session": "default",
                    "x-phase": 0,
                }
            },
        },
    }
    if system_prompt:
        plan["systemPrompt"] = system_prompt
    return plan


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Question for the model"),
    system_prompt: Optional[str] = typer.Option(None, "--system-prompt", "-s", help="System prompt"),
    pre_prompt: Optional[str] = typer.Option(None, "--pre-prompt", help="Prompt sent before the question"),
    uploads: Optional[List[str]] = typer.Option(None, "--upload", "-u", help="File to attach (repeatable)"),
    tools: bool = typer.Option(False, "--tools", help="Expose every configured tool"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Ask the model a question using the current settings and tools."""
    settings = load_settings_or_exit()
    setup_logging(debug, settings.log_level)

    try:
        tools_config = read_tools_file() if tools else ToolsConfig()
        sm = SessionManager.from_dict(ask_plan(prompt, system_prompt, pre_prompt, uploads, tools_config))
        result = execute(None, sm, {}, tools_config, FileResourceLoader(Path.cwd()), settings=settings)
    except FragsError as e:
        typer.echo(f"Error ({e.kind}): {e}", err=True)
        raise typer.Exit(1)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(result.get("default", {}).get("answer", ""))


@app.command()
def render(
    data: Path = typer.Argument(..., help="YAML/JSON data file (a saved result)"),
    template: Path = typer.Option(..., "--template", "-t", help="Template file"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write output to a file"),
):
    """Render a saved result through a template."""
    try:
        result = yaml.safe_load(data.read_text()) or {}
        if not isinstance(result, dict):
            raise ConfigError(f"{data} must contain a mapping")
        text = render_result(result, "template", template.read_text())
    except (FragsError, OSError, yaml.YAMLError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    _write_output(text, output)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"frags version {__version__}")


# Static commands (config, script, web)
from frags.commands import config, script, web

app.add_typer(config.app, name="config")
app.command("script")(script.script_command)
app.add_typer(web.app, name="web")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
