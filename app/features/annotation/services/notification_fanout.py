"""
Notification Fanout - tells a highlight's creator that someone answered.
"""

from typing import Any
from uuid import uuid4

from app.config import settings
from app.features.annotation.domain import (
    Notification,
    NotificationType,
    UserIdentity,
    utc_now,
)
from app.features.annotation.repository.notification_repository import NotificationRepository
from app.features.annotation.services.live_feed import LiveFeed, LostHandler, SnapshotConsumer
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DISPLAY_FORMATS: dict[str, dict[str, str]] = {
    NotificationType.VOICE_EXPLANATION.value: {
        "title": "New Voice Explanation",
        "icon": "microphone",
        "action_text": "Listen Now",
    },
}
DEFAULT_DISPLAY_FORMAT = {"title": "New Notification", "icon": "bell", "action_text": "View"}


def format_notification(notification: Notification) -> dict[str, Any]:
    """Notification fields plus the title/icon/action text a client displays."""
    return {
        **notification.to_dict(),
        **DISPLAY_FORMATS.get(notification.type.value, DEFAULT_DISPLAY_FORMAT),
    }


class NotificationFanout:
    def __init__(self, notifications: NotificationRepository | None = None):
        self.notifications = notifications or NotificationRepository()

    async def notify_explanation_attached(
        self, doc_id: str, highlight_id: str, helper: UserIdentity, recipient_id: str
    ) -> Notification | None:
        """
        Create one notification for the highlight's creator.

        Returns:
            The notification, or None when the helper answered their own highlight
        """
        if helper.uid == recipient_id:
            logger.debug(
                "Skipping self notification",
                doc_id=doc_id,
                highlight_id=highlight_id,
                user_id=helper.uid,
            )
            return None

        notification = Notification(
            id=uuid4().hex,
            type=NotificationType.VOICE_EXPLANATION,
            from_user_id=helper.uid,
            from_user_name=helper.name,
            from_user_avatar=helper.photo_url,
            to_user_id=recipient_id,
            highlight_id=highlight_id,
            doc_id=doc_id,
            message=f"{helper.name} recorded a voice explanation for your highlight",
            created_at=utc_now(),
        )
        await self.notifications.create(notification)

        logger.info(
            "Voice explanation notification created",
            doc_id=doc_id,
            highlight_id=highlight_id,
            from_user_id=helper.uid,
            to_user_id=recipient_id,
        )
        return notification

    async def unread(self, user_id: str) -> list[Notification]:
        return await self.notifications.list_unread(user_id, settings.NOTIFICATION_FEED_LIMIT)

    async def subscribe_unread(
        self, user_id: str, on_list: SnapshotConsumer, on_lost: LostHandler | None = None
    ) -> LiveFeed[Notification]:
        """Live unread list for user_id, newest first, capped at NOTIFICATION_FEED_LIMIT."""
        feed: LiveFeed[Notification] = LiveFeed(
            self.notifications.client,
            self.notifications.channel(user_id),
            lambda: self.unread(user_id),
            on_list,
            name=f"notifications:{user_id}",
            on_lost=on_lost,
        )
        return await feed.start()

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        """Mark one of user_id's notifications read; already-read is a no-op that returns False."""
        return await self.notifications.mark_read(user_id, notification_id)

    async def mark_all_read(self, user_id: str) -> int:
        changed = await self.notifications.mark_all_read(user_id)
        logger.info("Notifications marked read", user_id=user_id, count=changed)
        return changed
