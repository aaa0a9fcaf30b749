"""Desktop platform adapter (macOS, Windows, Linux)."""

from __future__ import annotations

from layerssync.client.notifications import DesktopNotifier
from layerssync.client.platform.base import (
    Platform,
    PlatformAdapter,
    PlatformUnavailableError,
    probe_network,
)
from layerssync.client.state import SQLiteLocalStore
from layerssync.core.config import SyncConfig

_SYSTEMS = {
    Platform.DESKTOP_MACOS: "Darwin",
    Platform.DESKTOP_WINDOWS: "Windows",
    Platform.DESKTOP_LINUX: "Linux",
}


class DesktopPlatformAdapter(PlatformAdapter):
    """SQLite store in the data directory, health-probe network monitor,
    native OS notifications."""

    def __init__(self, platform: Platform, config: SyncConfig) -> None:
        if not platform.is_desktop:
            raise PlatformUnavailableError(f"{platform.value} is not a desktop platform")
        try:
            config.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PlatformUnavailableError(
                f"Cannot create data directory {config.data_dir}: {e}"
            ) from e
        network = probe_network(config)
        super().__init__(
            platform,
            store=SQLiteLocalStore(config.db_path),
            network=network,
            notifier=DesktopNotifier(_SYSTEMS[platform]),
        )
