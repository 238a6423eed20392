"""Desktop notifications for finished package operations.

Notifications are sent with notify-send. Failing to send one is logged and
otherwise ignored.
"""

from __future__ import annotations

import shutil
import subprocess
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from .config import NotificationOptions
from .models import OperationMode, SessionStatus

if TYPE_CHECKING:
    from .models import PackageTarget

logger = structlog.get_logger(__name__)

APP_NAME = "Store Monitor"


class NotificationUrgency(str, Enum):
    """Urgency level for notifications."""

    LOW = "low"
    NORMAL = "normal"
    CRITICAL = "critical"


class NotificationManager:
    """Sends desktop notifications through the system notification daemon."""

    def __init__(self, options: NotificationOptions | None = None) -> None:
        """Initialize the notification manager.

        Args:
            options: Notification settings. Uses defaults if not provided.
        """
        self.options = options or NotificationOptions()
        self._notify_send_available: bool | None = None

    def _check_notify_send(self) -> bool:
        if self._notify_send_available is None:
            self._notify_send_available = shutil.which("notify-send") is not None
        return self._notify_send_available

    def notify(
        self,
        title: str,
        message: str,
        urgency: NotificationUrgency = NotificationUrgency.NORMAL,
        icon: str | None = None,
    ) -> bool:
        """Send a desktop notification.

        Args:
            title: Notification title.
            message: Notification message body.
            urgency: Urgency level (low, normal, critical).
            icon: Icon name or path.

        Returns:
            True if the notification was sent, False otherwise.
        """
        if not self.options.enabled:
            logger.debug("notifications_disabled")
            return False

        if not self._check_notify_send():
            logger.debug("notify_send_not_available")
            return False

        cmd = ["notify-send", "--urgency", urgency.value, "--app-name", APP_NAME]
        if icon:
            cmd.extend(["--icon", icon])
        cmd.extend([title, message])

        try:
            result = subprocess.run(cmd, capture_output=True, check=False, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("notification_error", error=str(e))
            return False

        if result.returncode != 0:
            logger.warning(
                "notification_failed",
                title=title,
                stderr=result.stderr.decode(errors="replace"),
            )
            return False

        logger.debug("notification_sent", title=title)
        return True

    def notify_outcome(
        self,
        target: PackageTarget,
        mode: OperationMode,
        status: SessionStatus,
    ) -> bool:
        """Send the notification for a finished operation.

        Args:
            target: Package the operation ran on.
            mode: Install or uninstall.
            status: Terminal status of the session.

        Returns:
            True if a notification was sent.
        """
        verb = "Installation" if mode == OperationMode.INSTALL else "Removal"
        done = "installed" if mode == OperationMode.INSTALL else "removed"

        if status == SessionStatus.SUCCESS:
            if not self.options.on_success:
                return False
            return self.notify(
                title=f"{verb} Complete",
                message=f"{target.name} was {done} successfully.",
                icon="dialog-information",
            )

        if not self.options.on_failure:
            return False

        if status == SessionStatus.UPDATE_REQUIRED:
            return self.notify(
                title="System Update Required",
                message=f"{target.name} needs a full system update before it can be installed.",
                urgency=NotificationUrgency.NORMAL,
                icon="system-software-update",
            )

        return self.notify(
            title=f"{verb} Failed",
            message=f"{target.name} could not be {done}.",
            urgency=NotificationUrgency.CRITICAL,
            icon="dialog-error",
        )
