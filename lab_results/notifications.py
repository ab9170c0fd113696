"""
notifications.py
----------------
LabResults — Lab Order Result Entry — User Notifications
--------------------------------------------------------
Success and error notifications surfaced to the user after a submission.

The rendering layer decides how to show them (snackbar, toast, response
body).  ``Notifier`` is the seam; ``LoggingNotifier`` logs every
notification and ``CollectingNotifier`` keeps them for the HTTP response
and for tests.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)

SAVE_SUCCESS_TITLE = "Save lab results"
SAVE_ERROR_TITLE = "Error saving lab results"


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class Notification(BaseModel):
    """A user-visible notification."""

    title: str
    kind: NotificationKind
    subtitle: str = ""


def results_saved(order_number: str) -> Notification:
    """Notification shown after results for *order_number* were saved."""
    return Notification(
        title=SAVE_SUCCESS_TITLE,
        kind=NotificationKind.SUCCESS,
        subtitle=f"Lab results for {order_number} have been successfully updated",
    )


def results_failed(message: str) -> Notification:
    """Notification shown when saving failed; *message* is the underlying failure."""
    return Notification(title=SAVE_ERROR_TITLE, kind=NotificationKind.ERROR, subtitle=message)


class Notifier(Protocol):
    def show(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log."""

    def show(self, notification: Notification) -> None:
        level = logging.INFO if notification.kind is NotificationKind.SUCCESS else logging.ERROR
        logger.log(level, "%s: %s", notification.title, notification.subtitle)


class CollectingNotifier(LoggingNotifier):
    """Logs notifications and keeps them in ``self.notifications``."""

    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    def show(self, notification: Notification) -> None:
        super().show(notification)
        self.notifications.append(notification)
