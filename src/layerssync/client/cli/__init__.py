"""Command-line interface for layers-sync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- status: Show sync status
- failed: List changes that could not be synced
- retry: Retry a failed change
- conflicts: List conflicted entities
- resolve: Resolve a conflicted entity
- run: Sync continuously until interrupted
- config set / config show: Manage configuration
"""

from __future__ import annotations

import logging

import click

from layerssync.client.cli.config import (
    build_sync_config,
    get_config_dir,
    get_config_file,
    get_identity,
    load_config,
    save_config,
)
from layerssync.client.cli.settings import config_group
from layerssync.client.cli.sync import (
    conflicts,
    failed,
    resolve,
    retry,
    run,
    status,
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool) -> None:
    """Send layerssync logs to stderr."""
    package_logger = logging.getLogger("layerssync")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@click.group()
@click.version_option(package_name="layers-sync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
def cli(verbose: bool) -> None:
    """layers-sync - Offline-first sync for Layers documents."""
    setup_logging(verbose)


# Inspection and resolution commands
cli.add_command(status)
cli.add_command(failed)
cli.add_command(retry)
cli.add_command(conflicts)
cli.add_command(resolve)

# Sync command
cli.add_command(run)

# Configuration commands
cli.add_command(config_group)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    "setup_logging",
    # Config utilities
    "build_sync_config",
    "get_config_dir",
    "get_config_file",
    "get_identity",
    "load_config",
    "save_config",
]
