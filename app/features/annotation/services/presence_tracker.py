"""
Presence Tracker - who is viewing a document and who is recording.

Presence is best-effort: write failures are logged and swallowed, and
consumers drop records whose last heartbeat is older than a few intervals
so a missed leave (closed tab, lost network) eventually disappears.
"""

import asyncio
from datetime import datetime, timedelta

from app.config import settings
from app.features.annotation.domain import IdentityRequiredError, PresenceRecord, UserIdentity, utc_now
from app.features.annotation.repository.document_repository import DocumentRepository
from app.features.annotation.repository.presence_repository import PresenceRepository
from app.features.annotation.services.live_feed import LiveFeed, LostHandler, SnapshotConsumer
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def recording_users(roster: list[PresenceRecord]) -> list[PresenceRecord]:
    return [record for record in roster if record.is_recording]


def fresh_roster(
    roster: list[PresenceRecord], now: datetime, stale_after: timedelta
) -> list[PresenceRecord]:
    """Drop records whose last activity is older than stale_after."""
    return [record for record in roster if not record.is_stale(now, stale_after)]


class HeartbeatTimer:
    """Refreshes one user's presence on a fixed interval until stopped."""

    def __init__(self, tracker: "PresenceTracker", doc_id: str, user_id: str, interval: float):
        self.tracker = tracker
        self.doc_id = doc_id
        self.user_id = user_id
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "HeartbeatTimer":
        if not self.running:
            self._task = asyncio.create_task(self._run())
        return self

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tracker.heartbeat(self.doc_id, self.user_id)


class PresenceTracker:
    def __init__(
        self,
        presence: PresenceRepository | None = None,
        documents: DocumentRepository | None = None,
    ):
        self.presence = presence or PresenceRepository()
        self.documents = documents or DocumentRepository(self.presence.client)

    async def join(self, doc_id: str, user: UserIdentity | None) -> bool:
        """
        Upsert the user's presence record with fresh timestamps.

        Raises:
            IdentityRequiredError: If nobody is signed in
        """
        if user is None:
            raise IdentityRequiredError("Sign in to join a document")

        now = utc_now()
        record = PresenceRecord(
            user_id=user.uid,
            display_name=user.name,
            photo_url=user.photo_url,
            joined_at=now,
            last_activity=now,
            is_recording=False,
        )

        try:
            joined = await self.presence.upsert(doc_id, record)
            if joined and await self.presence.record_collaborator(doc_id, user.uid):
                await self.documents.adjust_counters(doc_id, user.uid, active_collaborators=1)
        except Exception as e:
            logger.error("Presence join failed", doc_id=doc_id, user_id=user.uid, error=str(e))
            return False

        if not joined:
            logger.warning("Presence join not stored", doc_id=doc_id, user_id=user.uid)
        else:
            logger.info("User joined document", doc_id=doc_id, user_id=user.uid)
        return joined

    async def heartbeat(self, doc_id: str, user_id: str) -> bool:
        try:
            refreshed = await self.presence.touch(doc_id, user_id)
        except Exception as e:
            logger.warning("Presence heartbeat failed", doc_id=doc_id, user_id=user_id, error=str(e))
            return False

        if not refreshed:
            logger.debug("Heartbeat skipped, no presence record", doc_id=doc_id, user_id=user_id)
        return refreshed

    async def set_recording(self, doc_id: str, user_id: str, is_recording: bool) -> bool:
        try:
            updated = await self.presence.set_recording(doc_id, user_id, is_recording)
        except Exception as e:
            logger.warning(
                "Recording status update failed",
                doc_id=doc_id,
                user_id=user_id,
                is_recording=is_recording,
                error=str(e),
            )
            return False
        return updated

    async def leave(self, doc_id: str, user_id: str) -> bool:
        """Delete the presence record. Fire-and-forget on unload; never raises."""
        try:
            removed = await self.presence.remove(doc_id, user_id)
        except Exception as e:
            logger.warning("Presence leave failed", doc_id=doc_id, user_id=user_id, error=str(e))
            return False

        logger.info("User left document", doc_id=doc_id, user_id=user_id, removed=removed)
        return removed

    async def roster(self, doc_id: str) -> list[PresenceRecord]:
        records = await self.presence.list_records(doc_id)
        return fresh_roster(records, utc_now(), settings.presence_stale_after())

    async def subscribe(
        self, doc_id: str, on_roster: SnapshotConsumer, on_lost: LostHandler | None = None
    ) -> LiveFeed[PresenceRecord]:
        """Live roster of fresh presence records; close the feed when leaving."""
        feed: LiveFeed[PresenceRecord] = LiveFeed(
            self.presence.client,
            self.presence.channel(doc_id),
            lambda: self.roster(doc_id),
            on_roster,
            name=f"presence:{doc_id}",
            on_lost=on_lost,
        )
        return await feed.start()

    def start_heartbeat(self, doc_id: str, user_id: str) -> HeartbeatTimer:
        return HeartbeatTimer(self, doc_id, user_id, settings.PRESENCE_HEARTBEAT_SECONDS).start()

    async def prune_stale(self, doc_id: str) -> int:
        """Delete stale records for a document; returns how many were removed."""
        records = await self.presence.list_records(doc_id)
        now = utc_now()
        stale = [record for record in records if record.is_stale(now, settings.presence_stale_after())]

        removed = 0
        for record in stale:
            if await self.presence.remove(doc_id, record.user_id):
                removed += 1

        if len(stale) == len(records):
            await self.presence.forget_document_if_empty(doc_id)

        if removed:
            logger.info("Pruned stale presence", doc_id=doc_id, removed=removed)
        return removed

    recording_users = staticmethod(recording_users)
