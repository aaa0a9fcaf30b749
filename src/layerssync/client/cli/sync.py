"""Sync commands for the layers-sync CLI.

Commands:
- status: Show queue, conflict and connection summary
- failed: List entries that exhausted their attempts or were rejected
- retry: Give a failed entry a fresh attempt budget
- conflicts: List conflicted entities
- resolve: Settle a conflicted entity
- run: Sync continuously until interrupted
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from collections.abc import Iterator

import click

from layerssync.client.auth import Identity, IdentityProvider
from layerssync.client.cli.config import (
    build_sync_config,
    get_identity,
    load_config,
)
from layerssync.client.state import SQLiteLocalStore
from layerssync.client.sync.queue import SyncQueue
from layerssync.client.sync.retry import BackoffPolicy
from layerssync.core.config import SyncConfig
from layerssync.core.types import EntityType


def _load_sync_config() -> SyncConfig:
    try:
        return build_sync_config(load_config())
    except ValueError as e:
        click.echo(f"Error: Invalid configuration: {e}", err=True)
        sys.exit(1)


@contextlib.contextmanager
def _open_queue(sync_config: SyncConfig) -> Iterator[tuple[SQLiteLocalStore, SyncQueue]]:
    """Open the local store and the queue it holds."""
    sync_config.data_dir.mkdir(parents=True, exist_ok=True)
    store = SQLiteLocalStore(sync_config.db_path)
    try:
        queue = SyncQueue(
            store,
            max_attempts=sync_config.max_attempts,
            backoff=BackoffPolicy.from_config(sync_config),
        )
        yield store, queue
    finally:
        store.close()


@click.command()
def status() -> None:
    """Show sync status."""
    config = load_config()
    sync_config = _load_sync_config()
    identity = get_identity(config)

    if sync_config.server:
        click.echo(f"Server: {sync_config.server.server_url}")
    else:
        click.echo("Server: not configured (run 'layers-sync config set server_url URL')")
    if identity:
        click.echo(f"Signed in as: {identity.user_id}")
    else:
        click.echo("Signed in as: nobody (sync suspended)")

    with _open_queue(sync_config) as (store, queue):
        stats = queue.stats()
        click.echo(
            f"Queue: {stats['total']} entries "
            f"({stats['pending']} pending, {stats['in_flight']} in flight, "
            f"{stats['failed']} failed)"
        )
        if stats["corrupt"]:
            click.echo(f"Skipped corrupt records: {stats['corrupt']}")
        click.echo(f"Conflicts: {len(store.list_conflicted())}")
        if identity:
            click.echo(f"Pull cursor: {store.get_pull_cursor(identity.user_id)}")


@click.command()
def failed() -> None:
    """List changes that could not be synced."""
    sync_config = _load_sync_config()
    with _open_queue(sync_config) as (_store, queue):
        entries = queue.failed_entries()
        if not entries:
            click.echo("No failed entries.")
            return
        for entry in entries:
            click.echo(
                f"{entry.entry_id}  {entry.operation.value} "
                f"{entry.entity_type.value}/{entry.entity_id}  "
                f"attempts={entry.attempts}  {entry.last_error or ''}".rstrip()
            )


@click.command()
@click.argument("entry_id")
def retry(entry_id: str) -> None:
    """Retry a failed change."""
    sync_config = _load_sync_config()
    with _open_queue(sync_config) as (_store, queue):
        entry = queue.get(entry_id)
        if entry is None:
            click.echo(f"Error: Unknown entry: {entry_id}", err=True)
            sys.exit(1)
        updated = queue.retry(entry_id)
        if updated is None:
            click.echo(f"Error: Entry {entry_id} has not failed", err=True)
            sys.exit(1)
        click.echo(f"Queued {entry.entity_type.value}/{entry.entity_id} for retry.")


@click.command()
def conflicts() -> None:
    """List entities changed on another device while edited here."""
    sync_config = _load_sync_config()
    with _open_queue(sync_config) as (store, _queue):
        entities = store.list_conflicted()
        if not entities:
            click.echo("No conflicts.")
            return
        for entity in entities:
            note = "  (deleted remotely)" if entity.remote_deleted else ""
            click.echo(
                f"{entity.entity_type.value}/{entity.id}  "
                f"remote revision {entity.remote_version}{note}"
            )


@click.command()
@click.argument("entity_type", type=click.Choice([t.value for t in EntityType]))
@click.argument("entity_id")
@click.option(
    "--keep",
    type=click.Choice(["local", "remote"]),
    required=True,
    help="Keep your edit on top of the server copy, or drop it.",
)
def resolve(entity_type: str, entity_id: str, keep: str) -> None:
    """Resolve a conflicted entity."""
    from layerssync.client.context import SyncContext

    config = load_config()
    sync_config = _load_sync_config()
    try:
        context = SyncContext.create(
            sync_config,
            identity=IdentityProvider(get_identity(config)),
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    try:
        entity = context.provider.resolve_conflict(EntityType(entity_type), entity_id, keep)
    except (KeyError, ValueError) as e:
        click.echo(f"Error: {e.args[0] if e.args else e}", err=True)
        sys.exit(1)
    finally:
        asyncio.run(context.stop())
        context.close()

    if entity is None:
        click.echo(f"Resolved {entity_type}/{entity_id}: removed.")
    else:
        click.echo(f"Resolved {entity_type}/{entity_id}: {entity.sync_state.value}.")


async def _run_until_cancelled(sync_config: SyncConfig, identity: Identity | None) -> None:
    from layerssync.client.context import SyncContext

    context = SyncContext.create(sync_config, identity=IdentityProvider(identity))
    await context.start()
    try:
        await asyncio.Event().wait()
    finally:
        await context.stop()
        context.close()


@click.command()
def run() -> None:
    """Sync continuously until interrupted.

    Pushes queued changes whenever the server is reachable and pulls
    remote changes on reconnect, on change notifications and periodically.
    """
    config = load_config()
    sync_config = _load_sync_config()
    if sync_config.server is None:
        click.echo("Error: No server configured. Run 'layers-sync config set server_url URL'.", err=True)
        sys.exit(1)

    identity = get_identity(config)
    if identity is None:
        click.echo("Warning: not signed in, changes stay queued until user_id and token are set.")

    click.echo(f"Syncing with {sync_config.server.server_url} (Ctrl+C to stop)")
    try:
        asyncio.run(_run_until_cancelled(sync_config, identity))
    except KeyboardInterrupt:
        click.echo("\nStopped.")
