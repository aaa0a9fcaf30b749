"""Config commands for the layers-sync CLI.

Commands:
- config set: Store a configuration value
- config show: Print the configuration
"""

from __future__ import annotations

import sys

import click

from layerssync.client.cli.config import (
    CONFIG_KEYS,
    SECRET_KEYS,
    build_sync_config,
    load_config,
    save_config,
)


@click.group(name="config")
def config_group() -> None:
    """Manage layers-sync configuration."""


@config_group.command(name="set")
@click.argument("key", type=click.Choice(CONFIG_KEYS))
@click.argument("value")
def set_value(key: str, value: str) -> None:
    """Set a configuration value."""
    config = load_config()
    config[key] = value
    try:
        build_sync_config(config)
    except ValueError as e:
        click.echo(f"Error: Invalid value for {key}: {e}", err=True)
        sys.exit(1)
    save_config(config)
    shown = "********" if key in SECRET_KEYS else value
    click.echo(f"{key} = {shown}")


@config_group.command(name="show")
def show() -> None:
    """Print the configuration."""
    config = load_config()
    if not config:
        click.echo("No configuration set.")
        return
    for key in sorted(config):
        value = "********" if key in SECRET_KEYS else config[key]
        click.echo(f"{key} = {value}")
