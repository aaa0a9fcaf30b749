"""Offline-first synchronization engine.

Architecture:
    UI mutation → SyncQueue → SyncProvider → RemoteBackend
                                  ▲   │
            NetworkMonitor ───────┘   └──► LocalStore

Components:
- **SyncQueue**: Durable, coalescing log of pending mutations
- **SyncProvider**: Drive loop, pull path and conflict reconciliation
- **NetworkMonitor**: Edge-triggered online/offline signal
- **RemoteChangeListener**: WebSocket change feed that wakes the pull path
- **BackoffPolicy**: Retry delays for transient failures

All public symbols are re-exported here.
"""

from layerssync.client.sync.network import (
    NETWORK_CHECK_INTERVAL,
    NetworkMonitor,
    ProbeNetworkMonitor,
)
from layerssync.client.sync.provider import SyncProvider, Trigger
from layerssync.client.sync.queue import DEFAULT_MAX_ATTEMPTS, SyncQueue, coalesce
from layerssync.client.sync.remote_listener import RemoteChangeListener
from layerssync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_JITTER,
    DEFAULT_MAX_BACKOFF,
    BackoffPolicy,
    compute_backoff,
)
from layerssync.client.sync.types import (
    ConflictDetected,
    EntityKey,
    OnlineCallback,
    PermanentRejection,
    ProviderStats,
    PullResult,
    PushResult,
    QueueCorruption,
    QueueEntry,
    RemoteChange,
    StorageWriteFailure,
    SyncedEntity,
    SyncError,
    TransientNetworkFailure,
    Unsubscribe,
)

__all__ = [
    # Queue
    "DEFAULT_MAX_ATTEMPTS",
    "SyncQueue",
    "coalesce",
    # Provider
    "SyncProvider",
    "Trigger",
    # Network
    "NETWORK_CHECK_INTERVAL",
    "NetworkMonitor",
    "ProbeNetworkMonitor",
    "RemoteChangeListener",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_JITTER",
    "DEFAULT_MAX_BACKOFF",
    "BackoffPolicy",
    "compute_backoff",
    # Types
    "EntityKey",
    "OnlineCallback",
    "ProviderStats",
    "PullResult",
    "PushResult",
    "QueueEntry",
    "RemoteChange",
    "SyncedEntity",
    "Unsubscribe",
    # Errors
    "ConflictDetected",
    "PermanentRejection",
    "QueueCorruption",
    "StorageWriteFailure",
    "SyncError",
    "TransientNetworkFailure",
]
