"""Platform adapter interface.

This module provides:
- Platform: The closed set of runtime platforms
- PlatformAdapter: Capability surface shared by every platform variant
- PlatformUnavailableError: Raised when a capability is missing

Each adapter carries the full capability set: persistent storage
(``store``), network-state subscription (``network``) and notification
delivery (``notifier``). A variant that cannot provide one of them raises
PlatformUnavailableError from its constructor.
"""

from __future__ import annotations

import logging
from abc import ABC
from enum import Enum
from typing import TYPE_CHECKING

from layerssync.client.sync.network import NetworkMonitor, ProbeNetworkMonitor

if TYPE_CHECKING:
    from layerssync.client.notifications import Notifier
    from layerssync.client.state import LocalStore
    from layerssync.client.sync.types import OnlineCallback, Unsubscribe
    from layerssync.core.config import SyncConfig

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    """Runtime platform."""

    DESKTOP_MACOS = "desktop-macos"
    DESKTOP_WINDOWS = "desktop-windows"
    DESKTOP_LINUX = "desktop-linux"
    MOBILE_IOS = "mobile-ios"
    MOBILE_ANDROID = "mobile-android"
    WEB = "web"

    @property
    def is_desktop(self) -> bool:
        """Whether this is a desktop platform."""
        return self.value.startswith("desktop-")

    @property
    def is_mobile(self) -> bool:
        """Whether this is a mobile platform."""
        return self.value.startswith("mobile-")


class PlatformUnavailableError(RuntimeError):
    """A platform capability is not available in this process."""


class PlatformAdapter(ABC):
    """Storage, network and notification capabilities of one platform."""

    def __init__(
        self,
        platform: Platform,
        store: LocalStore,
        network: NetworkMonitor,
        notifier: Notifier,
    ) -> None:
        self._platform = platform
        self._store = store
        self._network = network
        self._notifier = notifier
        logger.info("Using %s platform adapter", platform.value)

    @property
    def platform(self) -> Platform:
        """The detected platform."""
        return self._platform

    @property
    def store(self) -> LocalStore:
        """Persistent storage capability."""
        return self._store

    @property
    def network(self) -> NetworkMonitor:
        """Network-state capability."""
        return self._network

    @property
    def notifier(self) -> Notifier:
        """Notification delivery capability."""
        return self._notifier

    def is_native(self) -> bool:
        """Whether running in a native (desktop or mobile) shell."""
        return self._platform != Platform.WEB

    def is_online(self) -> bool:
        """Current connectivity state."""
        return self._network.is_online

    def on_online_status_change(self, callback: OnlineCallback) -> Unsubscribe:
        """Subscribe to online/offline transitions."""
        return self._network.on_online_status_change(callback)

    async def start(self) -> None:
        """Start observing platform signals."""
        await self._network.start()

    async def stop(self) -> None:
        """Stop observing platform signals."""
        await self._network.stop()

    def close(self) -> None:
        """Release the storage handle."""
        self._store.close()

    def __repr__(self) -> str:
        """Human-readable representation."""
        return f"{type(self).__name__}({self._platform.value})"


def probe_network(config: SyncConfig) -> NetworkMonitor:
    """Network monitor for native platforms.

    Probes the backend health endpoint.

    Raises:
        PlatformUnavailableError: If no server is configured, as there is
            nothing to probe and the client would never come online.
    """
    if config.server is None:
        raise PlatformUnavailableError("No server configured: network state cannot be probed")
    return ProbeNetworkMonitor(
        config.server.health_url,
        check_interval=config.network_check_interval,
        verify_ssl=config.server.verify_ssl,
    )
