"""Sync context: the object graph of a running client.

This module provides:
- SyncContext: Platform adapter, queue, backend, provider and listener,
  built once at startup and passed by reference to whoever needs them

Usage:
    context = SyncContext.create(config, identity=IdentityProvider(identity))
    await context.start()
    context.provider.update(EntityType.DOCUMENT, doc_id, {"title": "Draft"})
    ...
    await context.stop()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from layerssync.client.api import HTTPBackend, RemoteBackend
from layerssync.client.auth import IdentityProvider
from layerssync.client.platform import create_platform_adapter, detect_platform
from layerssync.client.platform.base import PlatformAdapter
from layerssync.client.sync.provider import SyncProvider
from layerssync.client.sync.queue import SyncQueue
from layerssync.client.sync.remote_listener import RemoteChangeListener
from layerssync.client.sync.retry import BackoffPolicy
from layerssync.core.config import SyncConfig

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    """Everything the sync engine and the UI share."""

    config: SyncConfig
    adapter: PlatformAdapter
    identity: IdentityProvider
    queue: SyncQueue
    backend: RemoteBackend
    provider: SyncProvider
    listener: RemoteChangeListener | None = None

    @classmethod
    def create(
        cls,
        config: SyncConfig,
        adapter: PlatformAdapter | None = None,
        identity: IdentityProvider | None = None,
        backend: RemoteBackend | None = None,
    ) -> SyncContext:
        """Build the context.

        Args:
            config: Sync configuration.
            adapter: Platform adapter (default: detected platform).
            identity: Identity source (default: signed out).
            backend: Remote backend (default: HTTPBackend for config.server).

        Raises:
            ValueError: If no backend is given and no server is configured.
            PlatformUnavailableError: If the platform lacks a capability.
        """
        if backend is None and config.server is None:
            raise ValueError("No server configured")
        adapter = adapter or create_platform_adapter(detect_platform(), config)
        if backend is None:
            backend = HTTPBackend(
                config.server.server_url,
                timeout=config.server.timeout,
                verify_ssl=config.server.verify_ssl,
            )
        identity = identity or IdentityProvider()
        queue = SyncQueue(
            adapter.store,
            max_attempts=config.max_attempts,
            backoff=BackoffPolicy.from_config(config),
        )
        provider = SyncProvider(
            adapter.store,
            queue,
            backend,
            adapter.network,
            identity,
            config=config,
            notifier=adapter.notifier,
        )
        listener = None
        if config.server is not None:
            listener = RemoteChangeListener(
                config.server,
                provider,
                identity,
                max_reconnect_delay=config.backoff_cap,
            )
        return cls(
            config=config,
            adapter=adapter,
            identity=identity,
            queue=queue,
            backend=backend,
            provider=provider,
            listener=listener,
        )

    async def start(self) -> None:
        """Start network observation, the provider and the change listener."""
        await self.adapter.start()
        await self.provider.start()
        if self.listener is not None:
            await self.listener.start()
        logger.info("Sync context started on %s", self.adapter.platform.value)

    async def stop(self) -> None:
        """Stop everything started by start()."""
        if self.listener is not None:
            await self.listener.stop()
        await self.provider.stop()
        await self.adapter.stop()
        if isinstance(self.backend, HTTPBackend):
            await self.backend.close()

    def close(self) -> None:
        """Release the storage handle."""
        self.adapter.close()
