"""Shared configuration classes for layerssync.

ServerConfig describes how to reach the remote backend; SyncConfig holds
the tuning knobs of the queue and the sync provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


def default_data_dir() -> Path:
    """Get the default directory for the local store."""
    return Path.home() / ".layers-sync"


@dataclass
class ServerConfig:
    """Configuration for connecting to the remote backend.

    Used by both the HTTP backend and the WebSocket change listener
    to ensure consistent connection settings.

    Attributes:
        server_url: Base URL of the backend (e.g., "https://api.example.com").
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def ws_url(self) -> str:
        """Get WebSocket URL of the change feed."""
        url = self.server_url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/ws/changes"

    @property
    def health_url(self) -> str:
        """Get URL probed by the network monitor."""
        return f"{self.server_url}/health"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncConfig:
    """Tuning of the sync queue and provider.

    Attributes:
        batch_size: Maximum entries drained per batch.
        max_attempts: Attempt ceiling before an entry is marked failed.
        backoff_base: First retry delay in seconds (doubles per attempt).
        backoff_cap: Maximum retry delay in seconds.
        backoff_jitter: Random extra delay, as a fraction of the delay.
        sync_interval: Seconds between safety-net drive/pull runs.
        max_concurrent: Maximum concurrent pushes (distinct entities).
        network_check_interval: Seconds between connectivity probes.
        data_dir: Directory holding the local store.
        server: Backend connection settings, if configured.
    """

    batch_size: int = 20
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    backoff_jitter: float = 0.25
    sync_interval: float = 30.0
    max_concurrent: int = 4
    network_check_interval: float = 5.0
    data_dir: Path = field(default_factory=default_data_dir)
    server: ServerConfig | None = None

    def __post_init__(self) -> None:
        """Validate values."""
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.data_dir = Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        """Path of the SQLite local store."""
        return self.data_dir / "layers.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a SyncConfig from a config file dictionary.

        Unknown keys are ignored. ``server_url`` (and optionally
        ``timeout``/``verify_ssl``) produce the ServerConfig.
        """
        known = {f.name for f in fields(cls)} - {"server"}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key == "data_dir":
                kwargs[key] = Path(value)
            elif key in ("batch_size", "max_attempts", "max_concurrent"):
                kwargs[key] = int(value)
            else:
                kwargs[key] = float(value)

        server_url = data.get("server_url")
        if server_url:
            kwargs["server"] = ServerConfig(
                server_url=str(server_url),
                timeout=float(data.get("timeout", 30.0)),
                verify_ssl=str(data.get("verify_ssl", True)).lower() not in ("0", "false", "no"),
            )
        return cls(**kwargs)
