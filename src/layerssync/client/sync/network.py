"""Network connectivity monitoring.

This module provides:
- NetworkMonitor: Edge-triggered online/offline signal with subscribers
- ProbeNetworkMonitor: Monitor that polls the backend health endpoint

Subscribers are called on transitions only (offline -> online and back),
never on a check that confirms the current state. The browser variant
lives in layerssync.client.platform.web.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

import httpx

from layerssync.client.sync.types import OnlineCallback, Unsubscribe

logger = logging.getLogger(__name__)

# Network-aware probing configuration
NETWORK_CHECK_INTERVAL = 5.0  # seconds between network checks


class NetworkMonitor:
    """Online/offline state with edge-triggered change notifications.

    The base class is driven explicitly through set_online(); subclasses
    feed it from a platform signal.
    """

    def __init__(self, online: bool = False) -> None:
        self._online = online
        self._callbacks: list[OnlineCallback] = []

    @property
    def is_online(self) -> bool:
        """Current connectivity state."""
        return self._online

    def on_online_status_change(self, callback: OnlineCallback) -> Unsubscribe:
        """Register a callback invoked on every online/offline transition.

        Args:
            callback: Called with the new state.

        Returns:
            Function removing the callback.
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Record an observed state; notify subscribers if it changed.

        Returns:
            True if this was a transition.
        """
        if online == self._online:
            return False
        self._online = online
        logger.info("Network is %s", "online" if online else "offline")
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception:
                logger.exception("Online status callback failed")
        return True

    async def start(self) -> None:
        """Start observing (no-op for the manual monitor)."""

    async def stop(self) -> None:
        """Stop observing."""


class ProbeNetworkMonitor(NetworkMonitor):
    """Monitor that polls an HTTP health endpoint.

    Used on desktop and mobile where no OS-level reachability signal is
    exposed to Python. A 200 response means online; any transport error
    or other status means offline.
    """

    def __init__(
        self,
        health_url: str,
        check_interval: float = NETWORK_CHECK_INTERVAL,
        timeout: float = 5.0,
        verify_ssl: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the probe.

        Args:
            health_url: URL answering 200 when the backend is reachable.
            check_interval: Seconds between checks.
            timeout: Timeout of each probe.
            verify_ssl: Whether to verify SSL certificates.
            transport: Optional httpx transport (tests).
        """
        super().__init__(online=False)
        self._health_url = health_url
        self._check_interval = check_interval
        self._timeout = timeout
        self._verify_ssl = verify_ssl
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._task: asyncio.Task[None] | None = None

    async def check(self) -> bool:
        """Probe the health endpoint once and update the state.

        Returns:
            The observed state.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                verify=self._verify_ssl,
                transport=self._transport,
            )
        try:
            response = await self._client.get(self._health_url)
            online = response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Health check failed: %s", e)
            online = False
        self.set_online(online)
        return online

    async def start(self) -> None:
        """Probe once, then keep probing in a background task."""
        if self._task is not None and not self._task.done():
            logger.warning("ProbeNetworkMonitor already running")
            return
        await self.check()
        self._task = asyncio.create_task(self._poll_loop(), name="ProbeNetworkMonitor")

    async def _poll_loop(self) -> None:
        attempts = 0
        while True:
            await asyncio.sleep(self._check_interval)
            online = await self.check()
            if online:
                attempts = 0
                continue
            attempts += 1
            if attempts % 12 == 0:
                logger.info(
                    "Still waiting for network... (%.0fs elapsed)",
                    attempts * self._check_interval,
                )

    async def stop(self) -> None:
        """Stop probing and close the HTTP client."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
