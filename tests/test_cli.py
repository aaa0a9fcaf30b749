"""Tests for CLI commands - config, status, failed, retry, conflicts, resolve, run."""

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from layerssync.client.cli import cli
from layerssync.client.state import SQLiteLocalStore
from layerssync.client.sync.queue import SyncQueue
from layerssync.client.sync.types import QueueEntry, SyncedEntity
from layerssync.core.types import EntitySyncState, EntityType, Operation


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def config_dir(tmp_path: Path) -> Iterator[Path]:
    """Point the CLI at a temporary config directory."""
    with patch("layerssync.client.cli.config.get_config_dir", return_value=tmp_path):
        yield tmp_path


def seed_failed_entry(config_dir: Path) -> str:
    """Store one failed queue entry and return its id."""
    store = SQLiteLocalStore(config_dir / "layers.db")
    try:
        queue = SyncQueue(store)
        entry = queue.enqueue(QueueEntry.create(
            EntityType.DOCUMENT, "doc-1", Operation.INSERT, {"title": "Notes"}, 1, user_id="alice"
        ))
        assert entry is not None
        queue.fail(entry.entry_id, "Validation failed")
        return entry.entry_id
    finally:
        store.close()


class TestConfigCommands:
    """Tests for 'layers-sync config' commands."""

    def test_set_writes_config_file(self, runner: CliRunner, config_dir: Path) -> None:
        """config set should persist the value as JSON."""
        result = runner.invoke(cli, ["config", "set", "server_url", "https://api.example.com"])

        assert result.exit_code == 0
        assert "server_url = https://api.example.com" in result.output
        saved = json.loads((config_dir / "config.json").read_text())
        assert saved == {"server_url": "https://api.example.com"}

    def test_token_is_masked(self, runner: CliRunner) -> None:
        """Tokens should never be printed."""
        result = runner.invoke(cli, ["config", "set", "token", "secret-token"])
        shown = runner.invoke(cli, ["config", "show"])

        assert "secret-token" not in result.output
        assert "token = ********" in shown.output

    def test_invalid_value_rejected(self, runner: CliRunner, config_dir: Path) -> None:
        """Invalid values should fail without touching the config file."""
        result = runner.invoke(cli, ["config", "set", "max_attempts", "0"])

        assert result.exit_code == 1
        assert "Invalid value for max_attempts" in result.output
        assert not (config_dir / "config.json").exists()

    def test_unknown_key_rejected(self, runner: CliRunner) -> None:
        """Only known keys can be set."""
        result = runner.invoke(cli, ["config", "set", "theme", "dark"])
        assert result.exit_code != 0

    def test_show_empty(self, runner: CliRunner) -> None:
        """config show should say when nothing is configured."""
        result = runner.invoke(cli, ["config", "show"])
        assert "No configuration set." in result.output


class TestStatusCommand:
    """Tests for 'layers-sync status' command."""

    def test_status_without_configuration(self, runner: CliRunner) -> None:
        """Status should work on a fresh install."""
        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "Server: not configured" in result.output
        assert "Signed in as: nobody (sync suspended)" in result.output
        assert "Queue: 0 entries (0 pending, 0 in flight, 0 failed)" in result.output
        assert "Conflicts: 0" in result.output
        assert "Pull cursor" not in result.output

    def test_status_shows_server_and_queue(self, runner: CliRunner, config_dir: Path) -> None:
        """Status should report the queue and the signed-in user's pull cursor."""
        runner.invoke(cli, ["config", "set", "server_url", "https://api.example.com"])
        runner.invoke(cli, ["config", "set", "user_id", "alice"])
        runner.invoke(cli, ["config", "set", "token", "t"])
        seed_failed_entry(config_dir)
        store = SQLiteLocalStore(config_dir / "layers.db")
        store.set_pull_cursor(5, "alice")
        store.set_pull_cursor(9, "bob")
        store.close()

        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "Server: https://api.example.com" in result.output
        assert "Signed in as: alice" in result.output
        assert "Queue: 1 entries (0 pending, 0 in flight, 1 failed)" in result.output
        assert "Pull cursor: 5" in result.output


class TestFailedAndRetryCommands:
    """Tests for 'layers-sync failed' and 'layers-sync retry'."""

    def test_failed_empty(self, runner: CliRunner) -> None:
        """No failed entries should be reported as such."""
        result = runner.invoke(cli, ["failed"])
        assert result.exit_code == 0
        assert "No failed entries." in result.output

    def test_failed_lists_entries(self, runner: CliRunner, config_dir: Path) -> None:
        """Failed entries should be listed with their reason."""
        entry_id = seed_failed_entry(config_dir)

        result = runner.invoke(cli, ["failed"])

        assert entry_id in result.output
        assert "insert document/doc-1" in result.output
        assert "Validation failed" in result.output

    def test_retry_requeues_entry(self, runner: CliRunner, config_dir: Path) -> None:
        """Retry should return the entry to the pending queue."""
        entry_id = seed_failed_entry(config_dir)

        result = runner.invoke(cli, ["retry", entry_id])

        assert result.exit_code == 0
        assert "Queued document/doc-1 for retry." in result.output
        assert "No failed entries." in runner.invoke(cli, ["failed"]).output

    def test_retry_unknown_entry(self, runner: CliRunner) -> None:
        """Retrying an unknown entry should fail."""
        result = runner.invoke(cli, ["retry", "missing"])
        assert result.exit_code == 1
        assert "Unknown entry: missing" in result.output


class TestConflictCommands:
    """Tests for 'layers-sync conflicts' and 'layers-sync resolve'."""

    def test_conflicts_empty(self, runner: CliRunner) -> None:
        """No conflicts should be reported as such."""
        result = runner.invoke(cli, ["conflicts"])
        assert result.exit_code == 0
        assert "No conflicts." in result.output

    def test_conflicts_lists_entities(self, runner: CliRunner, config_dir: Path) -> None:
        """Conflicted entities should be listed with their remote revision."""
        store = SQLiteLocalStore(config_dir / "layers.db")
        store.put(SyncedEntity(
            EntityType.DOCUMENT,
            "doc-1",
            {"title": "Notes"},
            remote_version=7,
            sync_state=EntitySyncState.CONFLICTED,
            remote_deleted=True,
        ))
        store.close()

        result = runner.invoke(cli, ["conflicts"])

        assert "document/doc-1  remote revision 7  (deleted remotely)" in result.output

    def test_resolve_requires_server(self, runner: CliRunner) -> None:
        """Resolution needs a configured server."""
        result = runner.invoke(cli, ["resolve", "document", "doc-1", "--keep", "local"])
        assert result.exit_code == 1
        assert "No server configured" in result.output

    def test_resolve_requires_keep(self, runner: CliRunner) -> None:
        """The --keep option is mandatory."""
        result = runner.invoke(cli, ["resolve", "document", "doc-1"])
        assert result.exit_code != 0


class TestRunCommand:
    """Tests for 'layers-sync run' command."""

    def test_run_requires_server(self, runner: CliRunner) -> None:
        """Run should refuse to start without a server."""
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 1
        assert "No server configured" in result.output

    def test_version(self, runner: CliRunner) -> None:
        """--version should print the package version."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output
