"""
User Notifications

Transient, auto-expiring messages ("toasts").

DESIGN DECISION: Failure notices are coalesced. When several commits fail
within the notification window (a dropped connection fails every edit at
once) the user sees ONE message whose count grows, not a burst of
identical ones. The persistent failed-mutation list is where individual
failures live.

The clock is injectable so tests can step time instead of sleeping.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from zerosum.models.budget import new_id


class NotificationType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass
class Notification:
    message: str
    type: NotificationType
    created_at: float
    expires_at: float
    count: int = 1
    details: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)


class NotificationCenter:
    def __init__(
        self,
        window_seconds: float = 2.0,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._notifications: list[Notification] = []
        self._open_failure: Optional[Notification] = None
        self.history: list[Notification] = []

    def notify(self, message: str, type: NotificationType = NotificationType.INFO) -> Notification:
        now = self._clock()
        notification = Notification(
            message=message,
            type=type,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        self._notifications.append(notification)
        self.history.append(notification)
        return notification

    def notify_failure(self, description: str) -> Notification:
        """
        Report a failed commit, coalescing with a failure raised in the window.

        The window is measured from the first failure of the group, so a
        steady stream of failures still produces a fresh notice every window.
        """
        now = self._clock()
        current = self._open_failure
        if (
            current is not None
            and now - current.created_at <= self.window_seconds
            and current in self._notifications
        ):
            current.count += 1
            current.details.append(description)
            current.message = f"{current.count} changes could not be saved. They will stay queued for retry."
            current.expires_at = now + self.ttl_seconds
            return current

        notification = self.notify(f"{description}. Saved for retry.", NotificationType.ERROR)
        notification.details.append(description)
        self._open_failure = notification
        return notification

    def active(self) -> list[Notification]:
        """Notifications not yet expired; expired ones are dropped."""
        now = self._clock()
        self._notifications = [n for n in self._notifications if n.expires_at > now]
        return list(self._notifications)

    def dismiss(self, notification_id: str) -> None:
        self._notifications = [n for n in self._notifications if n.id != notification_id]
