"""
Persistence for per-document presence rosters.

One hash per document keyed by user id, so a re-join simply overwrites the
previous record. A global set tracks which documents currently hold any
presence so the cleanup job can sweep them.
"""

import json
from collections.abc import Callable

from app.features.annotation.domain import AnnotationError, PresenceRecord, utc_now
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

KEY_PREFIX = "annotation:doc"
DOCUMENTS_KEY = "annotation:presence:documents"
CHANGE_SIGNAL = "changed"


class PresenceRepositoryError(AnnotationError):
    """Store-level failure on presence records."""


class PresenceRepository:
    def __init__(self, client: FastRedisClient = fast_redis):
        self.client = client

    @staticmethod
    def roster_key(doc_id: str) -> str:
        return f"{KEY_PREFIX}:{doc_id}:presence"

    @staticmethod
    def channel(doc_id: str) -> str:
        return f"{KEY_PREFIX}:{doc_id}:presence:feed"

    async def upsert(self, doc_id: str, record: PresenceRecord) -> bool:
        written = await self.client.hash_set(
            self.roster_key(doc_id), record.user_id, json.dumps(record.to_dict())
        )
        if written:
            await self.client.set_add(DOCUMENTS_KEY, doc_id)
            await self._signal_change(doc_id)
        return written

    async def touch(self, doc_id: str, user_id: str) -> bool:
        """Refresh last_activity; a user who already left is not re-created."""

        def _apply(record: PresenceRecord) -> PresenceRecord:
            record.last_activity = utc_now()
            return record

        return await self._update(doc_id, user_id, _apply)

    async def set_recording(self, doc_id: str, user_id: str, is_recording: bool) -> bool:
        def _apply(record: PresenceRecord) -> PresenceRecord:
            record.is_recording = is_recording
            record.last_activity = utc_now()
            return record

        return await self._update(doc_id, user_id, _apply)

    async def remove(self, doc_id: str, user_id: str) -> bool:
        removed = await self.client.hash_delete(self.roster_key(doc_id), user_id)
        if removed:
            await self._signal_change(doc_id)
        return removed

    async def list_records(self, doc_id: str) -> list[PresenceRecord]:
        raw = await self.client.hash_get_all(self.roster_key(doc_id))
        if raw is None:
            raise PresenceRepositoryError(f"Failed to load presence for document {doc_id}")

        records = []
        for payload in raw.values():
            try:
                records.append(PresenceRecord.from_dict(json.loads(payload)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable presence record", doc_id=doc_id, error=str(e))
        records.sort(key=lambda record: record.joined_at)
        return records

    async def record_collaborator(self, doc_id: str, user_id: str) -> bool:
        """Remember that user_id has viewed doc_id; True only on the first visit."""
        return await self.client.set_add(f"{KEY_PREFIX}:{doc_id}:collaborators", user_id)

    async def documents_with_presence(self) -> set[str]:
        return await self.client.set_members(DOCUMENTS_KEY)

    async def forget_document_if_empty(self, doc_id: str) -> bool:
        """
        Drop doc_id from the sweep set only while its roster is empty.

        upsert writes the roster before adding to the set, so re-reading the
        roster after the removal catches a join that raced it; the document is
        then put back.

        Returns:
            True when the document stays forgotten
        """
        raw = await self.client.hash_get_all(self.roster_key(doc_id))
        if raw is None or raw:
            return False

        await self.client.set_remove(DOCUMENTS_KEY, doc_id)

        raw = await self.client.hash_get_all(self.roster_key(doc_id))
        if raw is None or raw:
            await self.client.set_add(DOCUMENTS_KEY, doc_id)
            logger.info("Presence document rejoined during cleanup", doc_id=doc_id)
            return False
        return True

    async def _update(
        self,
        doc_id: str,
        user_id: str,
        change: Callable[[PresenceRecord], PresenceRecord],
    ) -> bool:
        def _mutate(current: str | None) -> str | None:
            if current is None:
                return None
            return json.dumps(change(PresenceRecord.from_dict(json.loads(current))).to_dict())

        written = await self.client.update_hash_field(self.roster_key(doc_id), user_id, _mutate)
        if written is None:
            return False
        await self._signal_change(doc_id)
        return True

    async def _signal_change(self, doc_id: str) -> None:
        if not await self.client.publish(self.channel(doc_id), CHANGE_SIGNAL):
            logger.warning("Presence change signal not delivered", doc_id=doc_id)
