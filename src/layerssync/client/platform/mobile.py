"""Mobile platform adapter (iOS, Android).

Notifications go through plyer, installed with the ``mobile`` extra:

    pip install layers-sync[mobile]
"""

from __future__ import annotations

import logging
from types import ModuleType

from layerssync.client.notifications import APP_NAME, Notification, Notifier
from layerssync.client.platform.base import (
    Platform,
    PlatformAdapter,
    PlatformUnavailableError,
    probe_network,
)
from layerssync.client.state import SQLiteLocalStore
from layerssync.core.config import SyncConfig

logger = logging.getLogger(__name__)


def _load_plyer() -> ModuleType:
    try:
        import plyer
    except ImportError as e:
        raise PlatformUnavailableError(
            "Mobile notifications require plyer (pip install layers-sync[mobile])"
        ) from e
    return plyer


class PlyerNotifier(Notifier):
    """Notifier using the native mobile notification API through plyer."""

    blocking = True

    def __init__(self, plyer: ModuleType) -> None:
        self._plyer = plyer

    def send(self, notification: Notification) -> bool:
        """Show a local notification."""
        try:
            self._plyer.notification.notify(
                title=notification.title,
                message=notification.message,
                app_name=APP_NAME,
                timeout=10,
            )
            return True
        except NotImplementedError:
            logger.warning("plyer has no notification backend on this device")
            return False


class MobilePlatformAdapter(PlatformAdapter):
    """SQLite store in the app data directory, health-probe network monitor,
    plyer notifications."""

    def __init__(
        self,
        platform: Platform,
        config: SyncConfig,
        plyer: ModuleType | None = None,
    ) -> None:
        if not platform.is_mobile:
            raise PlatformUnavailableError(f"{platform.value} is not a mobile platform")
        notifier = PlyerNotifier(plyer or _load_plyer())
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
            notifier=notifier,
        )
