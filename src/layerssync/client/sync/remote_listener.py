"""Remote change listener for real-time sync notifications.

This module provides:
- RemoteChangeListener: WebSocket client that wakes the pull path when
  the backend reports a change

Architecture:
    Backend ─push─► RemoteChangeListener ─request_pull─► SyncProvider
                          │
                   (on (re)connect: request_pull)

Messages only signal that something changed; the records themselves are
always fetched through the provider's pull path, so a missed message is
recovered by the pull made after the next reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import ssl
from typing import TYPE_CHECKING

import websockets
from websockets.exceptions import WebSocketException

from layerssync.client.sync.retry import compute_backoff

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from layerssync.client.auth import IdentityProvider
    from layerssync.client.sync.provider import SyncProvider
    from layerssync.core.config import ServerConfig

logger = logging.getLogger(__name__)

# Message types that announce a changed record
CHANGE_MESSAGE_TYPES = frozenset({"entity_change", "entity_deleted"})


class RemoteChangeListener:
    """WebSocket listener for remote change notifications.

    Usage:
        listener = RemoteChangeListener(server_config, provider, identity)
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(
        self,
        config: ServerConfig,
        provider: SyncProvider,
        identity: IdentityProvider,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
    ) -> None:
        """Initialize the remote change listener.

        Args:
            config: Server configuration with URL and SSL settings.
            provider: Provider whose pull path is woken.
            identity: Source of the token sent on connect.
            reconnect_delay: Delay before the first reconnection attempt.
            max_reconnect_delay: Cap of the reconnection delay.
        """
        self._config = config
        self._provider = provider
        self._identity = identity
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay

        # Connection state
        self._ws: ClientConnection | None = None
        self._connected = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self.messages_received = 0

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL."""
        return self._config.ws_url

    async def start(self) -> None:
        """Start the listener task."""
        if self._task and not self._task.done():
            logger.warning("RemoteChangeListener already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._connection_loop(), name="RemoteChangeListener")
        logger.info("RemoteChangeListener started")

    async def stop(self) -> None:
        """Stop the listener."""
        self._stop_event.set()
        await self._close_connection()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("RemoteChangeListener stopped")

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        failures = 0

        while not self._stop_event.is_set():
            try:
                await self._connect()
                failures = 0
                # Anything announced while disconnected is fetched by a pull
                self._provider.request_pull()
                await self._listen_for_messages()

            except WebSocketException as e:
                if self._connected:
                    logger.warning("RemoteChangeListener disconnected: %s", e)
                logger.debug("WebSocket error: %s", e)
            except OSError as e:
                logger.debug("Connection error: %s", e)
            except asyncio.TimeoutError:
                logger.debug("Connection attempt timed out")

            self._connected = False
            if self._stop_event.is_set():
                break

            failures += 1
            delay = compute_backoff(
                failures,
                initial_backoff=self._reconnect_delay,
                max_backoff=self._max_reconnect_delay,
            )
            logger.info("RemoteChangeListener reconnecting in %.0fs...", delay)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    async def _connect(self) -> None:
        """Establish WebSocket connection."""
        identity = self._identity.identity
        if identity is None:
            raise OSError("not signed in")

        ssl_context: ssl.SSLContext | None = None
        if self.ws_url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ws = await websockets.connect(
            self.ws_url,
            ssl=ssl_context,
            additional_headers={"Authorization": f"Bearer {identity.access_token}"},
            open_timeout=10,
            close_timeout=5,
        )
        self._connected = True
        logger.info("RemoteChangeListener connected")

    async def _listen_for_messages(self) -> None:
        """Listen for incoming messages from server."""
        while not self._stop_event.is_set() and self._ws:
            try:
                message = await self._ws.recv()
            except websockets.ConnectionClosed:
                logger.info("Connection closed by server")
                break
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            self._handle_message(message)

    def _handle_message(self, message: str) -> bool:
        """Handle incoming message from server.

        Supported message types:
        - entity_change / entity_deleted:
          {"type": "entity_change", "entity_type": "document",
           "entity_id": "...", "remote_version": 42}

        Args:
            message: Raw message string.

        Returns:
            True if a pull was requested.
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid message received: %s", message[:100])
            return False
        if not isinstance(data, dict):
            logger.warning("Invalid message received: %s", message[:100])
            return False

        if data.get("type") not in CHANGE_MESSAGE_TYPES:
            return False

        self.messages_received += 1
        logger.debug(
            "Remote change: %s %s/%s",
            data.get("type"),
            data.get("entity_type"),
            data.get("entity_id"),
        )
        self._provider.request_pull()
        return True

    async def _close_connection(self) -> None:
        """Close the WebSocket connection."""
        if self._ws:
            with contextlib.suppress(WebSocketException):
                await self._ws.close()
            self._ws = None
        self._connected = False
