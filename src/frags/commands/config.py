# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for frags.

Shows the effective configuration and writes the starter template.
"""

from dataclasses import fields
from typing import Optional

import typer

from frags.config import CONFIG_TEMPLATE, Settings, config_path, load_settings, write_template
from frags.errors import ConfigError

app = typer.Typer(help="Show and initialize configuration")

_SECRETS = ("api_key", "web_api_key")


def _show(path: Optional[str]) -> None:
    target = config_path(path)
    try:
        settings = load_settings(target)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        typer.echo()
        typer.echo("Available settings:", err=True)
        typer.echo(CONFIG_TEMPLATE, err=True)
        raise typer.Exit(1)

    typer.echo(f"Configuration file: {target}")
    typer.echo()
    for f in fields(Settings):
        value = getattr(settings, f.name)
        if f.name in _SECRETS and value:
            value = "****"
        typer.echo(f"  {f.name.upper()}={'' if value is None else value}")


@app.command("show")
def show_command(
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Validate the configuration and print the effective values.

    Secrets are masked.

    Examples:
        frags config show
        frags config show -c ~/.frags.env
    """
    _show(config_file)


@app.command("init")
def init_command(
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write the configuration template."""
    target = config_path(config_file)
    if target.exists() and not force:
        typer.echo(f"Error: {target} already exists (use --force to overwrite)", err=True)
        raise typer.Exit(1)
    write_template(target)
    typer.echo(f"Wrote configuration template to {target}")


@app.callback(invoke_without_command=True)
def main_callback(ctx: typer.Context):
    """Show and initialize configuration.

    Use subcommands:
        frags config show    Validate and print settings
        frags config init    Write the template

    Without a subcommand, behaves like 'show'.
    """
    if ctx.invoked_subcommand is None:
        _show(None)
