"""User-visible notifications for sync events.

This module provides:
- Notification, NotificationType: What to display
- Notifier: Base class of the notification capability
- DesktopNotifier: Native OS notifications (Windows toast, macOS
  notification center, Linux notify-send)
- RecordingNotifier: In-memory notifier (headless runs and tests)

The mobile and browser notifiers live in the platform package.
"""

from __future__ import annotations

import logging
import platform
import subprocess
from dataclasses import dataclass
from enum import Enum, auto

from layerssync.core.types import EntityType

logger = logging.getLogger(__name__)

APP_NAME = "Layers"

# Seconds a notification command may take
NOTIFY_TIMEOUT = 10.0


class NotificationType(Enum):
    """Type of notification."""

    INFO = auto()
    WARNING = auto()
    ERROR = auto()
    CONFLICT = auto()


@dataclass
class Notification:
    """Represents a notification to display."""

    title: str
    message: str
    type: NotificationType = NotificationType.INFO


class Notifier:
    """Notification delivery capability.

    Subclasses implement send(); the helpers build the sync-specific
    messages.

    Attributes:
        blocking: Whether send() may block (e.g. waits on a subprocess).
            Blocking notifiers are called from a worker thread.
    """

    blocking = False

    def send(self, notification: Notification) -> bool:
        """Display a notification.

        Returns:
            True if the notification was delivered.
        """
        raise NotImplementedError

    def notify_conflict(self, entity_type: EntityType, entity_id: str) -> bool:
        """Surface a conflicted entity for merge review."""
        return self.send(Notification(
            title=f"{APP_NAME} - Conflict Detected",
            message=(
                f"The {entity_type.value} '{entity_id}' was changed on another "
                "device. Your edit was kept; review it to resolve the conflict."
            ),
            type=NotificationType.CONFLICT,
        ))

    def notify_failed(self, entity_type: EntityType, entity_id: str, reason: str) -> bool:
        """Surface a change that could not be synced."""
        return self.send(Notification(
            title=f"{APP_NAME} - Sync Failed",
            message=f"Changes to {entity_type.value} '{entity_id}' were not saved: {reason}",
            type=NotificationType.ERROR,
        ))

    def notify_error(self, message: str) -> bool:
        """Send an error notification."""
        return self.send(Notification(
            title=f"{APP_NAME} - Error",
            message=message,
            type=NotificationType.ERROR,
        ))


def _notify_windows(notification: Notification) -> bool:
    """Send notification on Windows using PowerShell toast.

    Args:
        notification: The notification to send.

    Returns:
        True if notification was sent successfully.
    """
    ps_script = f'''
    [Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, ContentType = WindowsRuntime] | Out-Null
    [Windows.Data.Xml.Dom.XmlDocument, Windows.Data.Xml.Dom.XmlDocument, ContentType = WindowsRuntime] | Out-Null

    $template = @"
    <toast>
        <visual>
            <binding template="ToastText02">
                <text id="1">{notification.title}</text>
                <text id="2">{notification.message}</text>
            </binding>
        </visual>
    </toast>
"@

    $xml = New-Object Windows.Data.Xml.Dom.XmlDocument
    $xml.LoadXml($template)
    $toast = New-Object Windows.UI.Notifications.ToastNotification $xml
    [Windows.UI.Notifications.ToastNotificationManager]::CreateToastNotifier("{APP_NAME}").Show($toast)
    '''
    try:
        subprocess.run(
            ["powershell", "-ExecutionPolicy", "Bypass", "-Command", ps_script],
            capture_output=True,
            check=True,
            timeout=NOTIFY_TIMEOUT,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        return True
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Windows notification failed: %s", e)
        return False


def _notify_macos(notification: Notification) -> bool:
    """Send notification on macOS using osascript."""
    title = notification.title.replace('"', '\\"')
    message = notification.message.replace('"', '\\"')
    script = f'display notification "{message}" with title "{title}"'
    try:
        subprocess.run(
            ["osascript", "-e", script],
            capture_output=True,
            check=True,
            timeout=NOTIFY_TIMEOUT,
        )
        return True
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("macOS notification failed: %s", e)
        return False


def _notify_linux(notification: Notification) -> bool:
    """Send notification on Linux using notify-send."""
    urgency_map = {
        NotificationType.INFO: "normal",
        NotificationType.WARNING: "normal",
        NotificationType.ERROR: "critical",
        NotificationType.CONFLICT: "critical",
    }
    urgency = urgency_map.get(notification.type, "normal")
    try:
        subprocess.run(
            [
                "notify-send",
                "--urgency", urgency,
                "--app-name", APP_NAME,
                notification.title,
                notification.message,
            ],
            capture_output=True,
            check=True,
            timeout=NOTIFY_TIMEOUT,
        )
        return True
    except FileNotFoundError:
        logger.debug("notify-send not found")
        return False
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Linux notification failed: %s", e)
        return False


class DesktopNotifier(Notifier):
    """Notifier using the native notification system of the desktop OS."""

    blocking = True

    def __init__(self, system: str | None = None) -> None:
        self._system = system or platform.system()

    def send(self, notification: Notification) -> bool:
        """Send a system notification.

        Uses native OS notification system:
        - Windows: Toast notification via PowerShell
        - macOS: Notification Center via osascript
        - Linux: notify-send
        """
        if self._system == "Windows":
            return _notify_windows(notification)
        if self._system == "Darwin":
            return _notify_macos(notification)
        if self._system == "Linux":
            return _notify_linux(notification)
        logger.warning("Notifications not supported on %s", self._system)
        return False


class RecordingNotifier(Notifier):
    """Notifier that keeps notifications in memory."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> bool:
        """Record the notification."""
        logger.info("%s: %s", notification.title, notification.message)
        self.sent.append(notification)
        return True
