"""Runtime platform detection.

Detection order:
1. Desktop native shell (macOS, Windows, or Linux outside Android)
2. Mobile shell (iOS, Android)
3. Web (Pyodide in a browser, or anything else)

Detection runs once, when the platform adapter is first created.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping

from layerssync.client.platform.base import Platform

_DESKTOP_PLATFORMS = {
    "darwin": Platform.DESKTOP_MACOS,
    "win32": Platform.DESKTOP_WINDOWS,
    "cygwin": Platform.DESKTOP_WINDOWS,
}


def _is_android(system: str, environ: Mapping[str, str]) -> bool:
    # Python-for-Android reports "linux" but sets ANDROID_ROOT
    return system == "android" or "ANDROID_ROOT" in environ


def is_desktop(system: str | None = None, environ: Mapping[str, str] | None = None) -> bool:
    """Check for a desktop native shell."""
    system = system or sys.platform
    environ = os.environ if environ is None else environ
    if system in _DESKTOP_PLATFORMS:
        return True
    return system.startswith("linux") and not _is_android(system, environ)


def is_mobile(system: str | None = None, environ: Mapping[str, str] | None = None) -> bool:
    """Check for a mobile shell."""
    system = system or sys.platform
    environ = os.environ if environ is None else environ
    return system == "ios" or _is_android(system, environ)


def is_native(system: str | None = None, environ: Mapping[str, str] | None = None) -> bool:
    """Check for any native (desktop or mobile) shell."""
    return is_desktop(system, environ) or is_mobile(system, environ)


def detect_platform(
    system: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Platform:
    """Detect the runtime platform.

    Args:
        system: Value of ``sys.platform`` (default: the running one).
        environ: Environment variables (default: ``os.environ``).

    Returns:
        The detected platform.
    """
    system = system or sys.platform
    environ = os.environ if environ is None else environ

    if is_desktop(system, environ):
        return _DESKTOP_PLATFORMS.get(system, Platform.DESKTOP_LINUX)
    if is_mobile(system, environ):
        return Platform.MOBILE_IOS if system == "ios" else Platform.MOBILE_ANDROID
    return Platform.WEB
