"""Platform abstraction layer.

This package selects, once per process, the adapter providing storage,
network monitoring and notifications for the running platform.

Detection order:
1. Desktop native shell
2. Mobile shell
3. Web (fallback)

Usage:
    adapter = get_platform_adapter(config)
    store = adapter.store

Prefer building a SyncContext once at startup and passing it around;
the process-wide adapter exists for code that cannot be handed one.
reset_platform_adapter() is for test isolation.
"""

from __future__ import annotations

import logging
import threading

from layerssync.client.platform.base import (
    Platform,
    PlatformAdapter,
    PlatformUnavailableError,
)
from layerssync.client.platform.desktop import DesktopPlatformAdapter
from layerssync.client.platform.detect import (
    detect_platform,
    is_desktop,
    is_mobile,
    is_native,
)
from layerssync.client.platform.mobile import MobilePlatformAdapter
from layerssync.client.platform.web import WebPlatformAdapter
from layerssync.core.config import SyncConfig

logger = logging.getLogger(__name__)

_adapter: PlatformAdapter | None = None
_lock = threading.Lock()


def create_platform_adapter(platform: Platform, config: SyncConfig) -> PlatformAdapter:
    """Construct the adapter variant for a platform.

    Raises:
        PlatformUnavailableError: If a capability of the platform is missing.
    """
    if platform.is_desktop:
        return DesktopPlatformAdapter(platform, config)
    if platform.is_mobile:
        return MobilePlatformAdapter(platform, config)
    return WebPlatformAdapter(config)


def get_platform_adapter(config: SyncConfig | None = None) -> PlatformAdapter:
    """Get the process-wide platform adapter, creating it on first call.

    Args:
        config: Configuration used on first call (ignored afterwards).

    Returns:
        The cached adapter.

    Raises:
        PlatformUnavailableError: If the detected platform lacks a capability.
    """
    global _adapter
    with _lock:
        if _adapter is None:
            platform = detect_platform()
            logger.debug("Detected platform %s", platform.value)
            _adapter = create_platform_adapter(platform, config or SyncConfig())
        return _adapter


def reset_platform_adapter() -> None:
    """Forget the process-wide adapter (test isolation only)."""
    global _adapter
    with _lock:
        if _adapter is not None:
            _adapter.close()
        _adapter = None


__all__ = [
    "DesktopPlatformAdapter",
    "MobilePlatformAdapter",
    "Platform",
    "PlatformAdapter",
    "PlatformUnavailableError",
    "WebPlatformAdapter",
    "create_platform_adapter",
    "detect_platform",
    "get_platform_adapter",
    "is_desktop",
    "is_mobile",
    "is_native",
    "reset_platform_adapter",
]
