from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from agent_market.logging_config import get_logger
from agent_market.schemas import Notification

logger = get_logger(__name__)


class NotificationSink(Protocol):
    """Delivery endpoint for agent notifications (webhooks, inboxes, ...)."""

    def send(self, notification: Notification) -> None: ...


class LoggingSink:
    def send(self, notification: Notification) -> None:
        logger.info(
            "notification",
            agent_id=notification.agent_id,
            type=notification.type,
            title=notification.title,
        )


class NullSink:
    def send(self, notification: Notification) -> None:
        return None


def make_notification(
    agent_id: str,
    type: str,
    title: str,
    message: str,
    **data: Any,
) -> Notification:
    return Notification(agent_id=agent_id, type=type, title=title, message=message, data=data)


def dispatch(sink: NotificationSink, notifications: Iterable[Notification]) -> None:
    """Hand committed notifications to the sink; delivery failures never reach the caller."""
    for notification in notifications:
        try:
            sink.send(notification)
        except Exception as exc:
            logger.warning(
                "notification_failed",
                agent_id=notification.agent_id,
                type=notification.type,
                error=str(exc),
            )
