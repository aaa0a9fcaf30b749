"""Web platform adapter (Pyodide in a browser).

This module provides:
- BrowserBridge: The ``js`` module and Pyodide proxy helpers
- BrowserStorage: KeyValueStorage over ``window.localStorage``
- BrowserNetworkMonitor: ``navigator.onLine`` with online/offline events
- BrowserNotifier: The Web Notifications API
- WebPlatformAdapter: The three combined over a KeyValueLocalStore

Only importable capabilities are checked at construction: outside a
browser (no ``js`` module) or without localStorage the adapter raises
PlatformUnavailableError.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from layerssync.client.notifications import Notification, Notifier
from layerssync.client.platform.base import (
    Platform,
    PlatformAdapter,
    PlatformUnavailableError,
)
from layerssync.client.state import KeyValueLocalStore
from layerssync.client.sync.network import NetworkMonitor
from layerssync.core.config import SyncConfig

logger = logging.getLogger(__name__)


@dataclass
class BrowserBridge:
    """Access to the browser from Python.

    Attributes:
        window: The Pyodide ``js`` module (global scope of the page).
        create_proxy: Wraps a Python callable for use as a JS event handler.
        to_js: Converts Python values to JS values.
    """

    window: Any
    create_proxy: Callable[[Callable[..., Any]], Any]
    to_js: Callable[..., Any]

    @classmethod
    def load(cls) -> BrowserBridge:
        """Load the bridge from the Pyodide runtime.

        Raises:
            PlatformUnavailableError: If not running in a browser.
        """
        try:
            import js
            from pyodide.ffi import create_proxy, to_js
        except ImportError as e:
            raise PlatformUnavailableError(
                "The web platform requires the Pyodide browser runtime"
            ) from e
        return cls(window=js, create_proxy=create_proxy, to_js=to_js)


class BrowserStorage:
    """KeyValueStorage over ``window.localStorage``."""

    def __init__(self, local_storage: Any) -> None:
        self._storage = local_storage

    def get_item(self, key: str) -> str | None:
        value = self._storage.getItem(key)
        return None if value is None else str(value)

    def set_item(self, key: str, value: str) -> None:
        self._storage.setItem(key, value)

    def remove_item(self, key: str) -> None:
        self._storage.removeItem(key)

    def keys(self) -> list[str]:
        return [str(self._storage.key(i)) for i in range(int(self._storage.length))]


class BrowserNetworkMonitor(NetworkMonitor):
    """Network monitor fed by the browser's online/offline events."""

    def __init__(self, bridge: BrowserBridge) -> None:
        super().__init__(online=bool(bridge.window.navigator.onLine))
        self._bridge = bridge
        self._handlers: dict[str, Any] = {}

    async def start(self) -> None:
        """Register the window event listeners."""
        if self._handlers:
            return
        window = self._bridge.window
        self._handlers = {
            "online": self._bridge.create_proxy(lambda _event: self.set_online(True)),
            "offline": self._bridge.create_proxy(lambda _event: self.set_online(False)),
        }
        for event, handler in self._handlers.items():
            window.addEventListener(event, handler)
        # Events fired before registration are not replayed
        self.set_online(bool(window.navigator.onLine))

    async def stop(self) -> None:
        """Remove the window event listeners."""
        window = self._bridge.window
        for event, handler in self._handlers.items():
            window.removeEventListener(event, handler)
            handler.destroy()
        self._handlers = {}


class BrowserNotifier(Notifier):
    """Notifier using the Web Notifications API."""

    def __init__(self, bridge: BrowserBridge) -> None:
        self._bridge = bridge

    async def request_permission(self) -> bool:
        """Ask the user for notification permission."""
        result = await self._bridge.window.Notification.requestPermission()
        return str(result) == "granted"

    def send(self, notification: Notification) -> bool:
        """Show a notification if the user granted permission."""
        api = self._bridge.window.Notification
        if str(api.permission) != "granted":
            logger.debug("Notification permission not granted")
            return False
        options = self._bridge.to_js(
            {"body": notification.message},
            dict_converter=self._bridge.window.Object.fromEntries,
        )
        api.new(notification.title, options)
        return True


class WebPlatformAdapter(PlatformAdapter):
    """localStorage store, browser network events, Web Notifications."""

    def __init__(
        self,
        config: SyncConfig,
        bridge: BrowserBridge | None = None,
    ) -> None:
        bridge = bridge or BrowserBridge.load()
        window = bridge.window
        local_storage = getattr(window, "localStorage", None)
        if local_storage is None:
            raise PlatformUnavailableError("localStorage is not available")
        if getattr(window, "Notification", None) is None:
            raise PlatformUnavailableError("The Notifications API is not available")
        super().__init__(
            Platform.WEB,
            store=KeyValueLocalStore(BrowserStorage(local_storage)),
            network=BrowserNetworkMonitor(bridge),
            notifier=BrowserNotifier(bridge),
        )
