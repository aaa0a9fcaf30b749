"""HTTP client for the Layers sync backend.

This module provides:
- RemoteBackend: Protocol of the remote collaborator used by the provider
- HTTPBackend: httpx implementation of RemoteBackend
- classify_response: Status-code to error-taxonomy mapping

Endpoints:
    POST /api/sync/push            one mutation, answered with its revision
    GET  /api/sync/pull?since=N    records with revision > N, oldest first
    GET  /health                   liveness

A 409 on push carries the server's current copy under ``current``.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from layerssync.client.auth import Identity
from layerssync.client.sync.types import (
    ConflictDetected,
    PermanentRejection,
    PullResult,
    PushResult,
    QueueEntry,
    RemoteChange,
    TransientNetworkFailure,
)

logger = logging.getLogger(__name__)

# Status codes retried with backoff besides 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})

DEFAULT_PULL_LIMIT = 100


class RemoteBackend(Protocol):
    """Remote collaborator: accepts pushes and serves incremental pulls."""

    async def push(self, entry: QueueEntry, identity: Identity) -> PushResult:
        """Apply one mutation.

        Raises:
            ConflictDetected: The record moved past ``entry.base_version``.
            TransientNetworkFailure: Retry later.
            PermanentRejection: Never retry.
        """
        ...

    async def pull(self, since: int, identity: Identity) -> PullResult:
        """Fetch records changed after revision ``since``."""
        ...


def _detail(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or default
    if isinstance(data, dict):
        return str(data.get("detail", default))
    return default


def classify_response(response: httpx.Response) -> httpx.Response:
    """Raise the sync error matching a non-success response.

    Raises:
        TransientNetworkFailure: 408, 425, 429 and 5xx.
        ConflictDetected: 409.
        PermanentRejection: Any other 4xx.
    """
    status = response.status_code
    if status < 400:
        return response
    if status >= 500 or status in RETRYABLE_STATUS_CODES:
        raise TransientNetworkFailure(_detail(response, "Server unavailable"), status)
    if status == 409:
        try:
            data = response.json()
        except ValueError:
            data = {}
        current = data.get("current") if isinstance(data, dict) else None
        try:
            snapshot = RemoteChange.from_dict(current) if current else None
            remote_version = int(
                data.get("remote_version", snapshot.remote_version if snapshot else 0)
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentRejection(f"Malformed conflict response: {e}", status) from e
        raise ConflictDetected(remote_version, snapshot, _detail(response, "Conflict"))
    if status == 401:
        raise PermanentRejection("Invalid or expired token", status)
    raise PermanentRejection(_detail(response, "Rejected"), status)


class HTTPBackend:
    """RemoteBackend speaking JSON over HTTP."""

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        pull_limit: int = DEFAULT_PULL_LIMIT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the backend client.

        Args:
            server_url: Base URL of the server.
            timeout: Request timeout in seconds.
            verify_ssl: Whether to verify SSL certificates.
            pull_limit: Maximum records per pull page.
            transport: Optional httpx transport (tests).
        """
        self._server_url = server_url.rstrip("/")
        self._pull_limit = pull_limit
        self._client = httpx.AsyncClient(
            base_url=self._server_url,
            timeout=timeout,
            verify=verify_ssl,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> HTTPBackend:
        """Context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Context manager exit."""
        await self.close()

    async def _request(
        self,
        method: str,
        url: str,
        identity: Identity,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {identity.access_token}"}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkFailure(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkFailure(f"Connection failed: {e}") from e
        return classify_response(response)

    # === Health check ===

    async def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Sync operations ===

    async def push(self, entry: QueueEntry, identity: Identity) -> PushResult:
        """Send one mutation.

        Args:
            entry: Queue entry to apply.
            identity: Identity the request is made as.

        Returns:
            The revision assigned by the server.
        """
        body = {
            "entry_id": entry.entry_id,
            "entity_type": entry.entity_type.value,
            "entity_id": entry.entity_id,
            "operation": entry.operation.value,
            "payload": entry.payload,
            "local_version": entry.local_version,
            "base_version": entry.base_version,
        }
        response = await self._request("POST", "/api/sync/push", identity, json=body)
        try:
            data = response.json()
            return PushResult(
                remote_version=int(data["remote_version"]),
                content=data.get("content"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TransientNetworkFailure(f"Malformed push response: {e}") from e

    async def pull(self, since: int, identity: Identity) -> PullResult:
        """Fetch changes after revision ``since``.

        Args:
            since: Last revision already applied locally.
            identity: Identity the request is made as.

        Returns:
            Changes in revision order and whether more pages remain.
        """
        params = {"since": since, "limit": self._pull_limit}
        response = await self._request("GET", "/api/sync/pull", identity, params=params)
        try:
            data = response.json()
            changes = [RemoteChange.from_dict(c) for c in data["changes"]]
        except (KeyError, TypeError, ValueError) as e:
            raise TransientNetworkFailure(f"Malformed pull response: {e}") from e
        changes.sort(key=lambda c: c.remote_version)
        return PullResult(changes=changes, has_more=bool(data.get("has_more", False)))
