"""
Persistence for notifications.

Notifications are partitioned by recipient (one hash per user) with a
global id -> recipient index so a single notification can be addressed by id
alone when it is marked read.
"""

import json

from app.features.annotation.domain import AnnotationError, Notification, utc_now
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

KEY_PREFIX = "annotation:notifications"
RECIPIENT_INDEX_KEY = f"{KEY_PREFIX}:recipients"
CHANGE_SIGNAL = "changed"


class NotificationRepositoryError(AnnotationError):
    """Store-level failure on notification records."""


class NotificationRepository:
    def __init__(self, client: FastRedisClient = fast_redis):
        self.client = client

    @staticmethod
    def inbox_key(user_id: str) -> str:
        return f"{KEY_PREFIX}:{user_id}"

    @staticmethod
    def channel(user_id: str) -> str:
        return f"{KEY_PREFIX}:{user_id}:feed"

    async def create(self, notification: Notification) -> Notification:
        written = await self.client.hash_set(
            self.inbox_key(notification.to_user_id),
            notification.id,
            json.dumps(notification.to_dict()),
        )
        if not written:
            raise NotificationRepositoryError("Failed to write notification")

        await self.client.hash_set(RECIPIENT_INDEX_KEY, notification.id, notification.to_user_id)
        await self._signal_change(notification.to_user_id)
        return notification

    async def list_for_user(self, user_id: str) -> list[Notification]:
        """Every notification for user_id, newest first."""
        raw = await self.client.hash_get_all(self.inbox_key(user_id))
        if raw is None:
            raise NotificationRepositoryError(f"Failed to load notifications for {user_id}")

        notifications = []
        for payload in raw.values():
            try:
                notifications.append(Notification.from_dict(json.loads(payload)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable notification", user_id=user_id, error=str(e))
        notifications.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return notifications

    async def list_unread(self, user_id: str, limit: int) -> list[Notification]:
        notifications = await self.list_for_user(user_id)
        return [item for item in notifications if not item.read][:limit]

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        """
        Mark one of user_id's notifications read.

        Returns:
            bool: True if it changed, False if it was already read

        Raises:
            NotificationRepositoryError: If the notification is unknown, belongs to
                another recipient, or the write failed
        """
        recipient_id = await self.client.hash_get(RECIPIENT_INDEX_KEY, notification_id)
        if recipient_id != user_id:
            if recipient_id is not None:
                logger.warning(
                    "Refused to mark another user's notification read",
                    notification_id=notification_id,
                    user_id=user_id,
                )
            raise NotificationRepositoryError(f"Notification {notification_id} not found")

        changed = await self._mark(user_id, notification_id)
        if changed:
            await self._signal_change(user_id)
        return changed

    async def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification read; returns how many changed."""
        unread = [item for item in await self.list_for_user(user_id) if not item.read]

        changed = 0
        for notification in unread:
            if await self._mark(user_id, notification.id):
                changed += 1

        if changed:
            await self._signal_change(user_id)
        return changed

    async def _mark(self, user_id: str, notification_id: str) -> bool:
        def _mutate(current: str | None) -> str | None:
            if current is None:
                return None
            notification = Notification.from_dict(json.loads(current))
            if notification.read:
                return None
            notification.read = True
            notification.read_at = utc_now()
            return json.dumps(notification.to_dict())

        written = await self.client.update_hash_field(
            self.inbox_key(user_id), notification_id, _mutate
        )
        return written is not None

    async def _signal_change(self, user_id: str) -> None:
        if not await self.client.publish(self.channel(user_id), CHANGE_SIGNAL):
            logger.warning("Notification change signal not delivered", user_id=user_id)
