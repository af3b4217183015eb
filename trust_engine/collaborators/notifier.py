"""
Notification Collaborator

The engine only emits notifications; rendering and delivery (push,
in-app, IM) belong to the notification service behind this interface.
Delivery is best effort: a failed notification never changes a
business outcome.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..metrics import metrics
from ..schemas import EntityType

logger = logging.getLogger("trust_engine.notifications")


class Notifier(ABC):
    """Outbound notification channel."""

    @abstractmethod
    async def notify(
        self,
        entity_type: EntityType,
        entity_id: int,
        title: str,
        content: str,
        related_type: Optional[str] = None,
        related_id: Optional[int] = None,
    ) -> None:
        """Deliver a notification to a customer, merchant or rider."""


class LoggingNotifier(Notifier):
    """Writes notifications to the log. Default when no channel is wired."""

    async def notify(self, entity_type, entity_id, title, content, related_type=None, related_id=None):
        logger.info(
            "notify %s %s: %s - %s (%s %s)",
            entity_type.value, entity_id, title, content, related_type, related_id,
        )


async def safe_notify(
    notifier: Optional[Notifier],
    entity_type: EntityType,
    entity_id: int,
    title: str,
    content: str,
    related_type: Optional[str] = None,
    related_id: Optional[int] = None,
) -> bool:
    """
    Send a notification, swallowing delivery failures.

    Returns:
        True when the notifier accepted the message
    """
    if notifier is None:
        return False
    try:
        await notifier.notify(entity_type, entity_id, title, content, related_type, related_id)
        return True
    except Exception as e:
        logger.warning(
            "Notification to %s %s failed (%s): %s",
            entity_type.value, entity_id, title, e,
        )
        metrics.errors_total.labels(error_type="NotificationFailed").inc()
        return False
