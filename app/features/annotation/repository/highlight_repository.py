"""
Persistence for per-document highlight collections.

Each document owns one Redis hash (highlight id -> JSON record). Every write
publishes a change signal on the document's feed channel so live
subscribers can reload the full snapshot.
"""

import json
from collections.abc import Callable
from uuid import uuid4

from app.config import settings
from app.features.annotation.domain import (
    AnnotationError,
    HelpRequest,
    Highlight,
    HighlightDraft,
    HighlightNotFoundError,
    UserIdentity,
    VoiceExplanation,
    utc_now,
)
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

KEY_PREFIX = "annotation:doc"
CHANGE_SIGNAL = "changed"


class HighlightRepositoryError(AnnotationError):
    """Store-level failure reading or writing highlights."""


class HighlightRepository:
    """Redis-backed highlight collection, one hash per document."""

    def __init__(self, client: FastRedisClient = fast_redis):
        self.client = client

    @staticmethod
    def collection_key(doc_id: str) -> str:
        return f"{KEY_PREFIX}:{doc_id}:highlights"

    @staticmethod
    def sequence_key(doc_id: str) -> str:
        return f"{KEY_PREFIX}:{doc_id}:highlights:seq"

    @staticmethod
    def channel(doc_id: str) -> str:
        return f"{KEY_PREFIX}:{doc_id}:highlights:feed"

    async def list_highlights(self, doc_id: str) -> list[Highlight]:
        """All highlights of a document ordered by created_at ascending."""
        raw = await self.client.hash_get_all(self.collection_key(doc_id))
        if raw is None:
            raise HighlightRepositoryError(f"Failed to load highlights for document {doc_id}")

        highlights = []
        for highlight_id, payload in raw.items():
            try:
                highlights.append(Highlight.from_dict(json.loads(payload)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(
                    "Skipping unreadable highlight record",
                    doc_id=doc_id,
                    highlight_id=highlight_id,
                    error=str(e),
                )
        highlights.sort(key=Highlight.sort_key)
        return highlights

    async def get(self, doc_id: str, highlight_id: str) -> Highlight:
        payload = await self.client.hash_get(self.collection_key(doc_id), highlight_id)
        if payload is None:
            raise HighlightNotFoundError(f"Highlight {highlight_id} not found")
        return Highlight.from_dict(json.loads(payload))

    async def create(self, doc_id: str, draft: HighlightDraft, author: UserIdentity) -> Highlight:
        """
        Persist a new highlight with a store-assigned id and timestamp.

        Raises:
            HighlightRepositoryError: If the record could not be written
        """
        sequence = await self.client.incr_with_ttl(self.sequence_key(doc_id))

        highlight = Highlight(
            id=uuid4().hex,
            text=draft.text,
            page_number=draft.page_number,
            position=draft.position,
            color=draft.color or settings.DEFAULT_HIGHLIGHT_COLOR,
            created_by=author.uid,
            created_by_name=author.name,
            created_by_avatar=author.photo_url,
            created_at=utc_now(),
            help_request=draft.help_request,
            sequence=sequence or 0,
        )

        written = await self.client.hash_set(
            self.collection_key(doc_id), highlight.id, json.dumps(highlight.to_dict())
        )
        if not written:
            raise HighlightRepositoryError("Failed to write highlight")

        logger.info(
            "Highlight created",
            doc_id=doc_id,
            highlight_id=highlight.id,
            page_number=highlight.page_number,
            needs_help=highlight.needs_help,
        )
        await self._signal_change(doc_id)
        return highlight

    async def append_explanation(
        self, doc_id: str, highlight_id: str, explanation: VoiceExplanation
    ) -> tuple[Highlight, bool]:
        """
        Append one explanation and retire the open help request in a single
        optimistic transaction. Concurrent appends are retried, never lost.

        Returns:
            The stored highlight, and False when an explanation with the same
            id was already attached so nothing was appended
        """
        appended = {"value": False}

        def _apply(highlight: Highlight) -> Highlight:
            # Re-evaluated on every optimistic retry; the last run is the one written
            appended["value"] = not highlight.has_explanation(explanation.id)
            return highlight.with_explanation(explanation)

        highlight = await self._update(doc_id, highlight_id, _apply, action="append_explanation")
        return highlight, appended["value"]

    async def set_help_request(
        self, doc_id: str, highlight_id: str, help_request: HelpRequest
    ) -> Highlight:
        def _apply(highlight: Highlight) -> Highlight:
            highlight.help_request = help_request
            return highlight

        return await self._update(doc_id, highlight_id, _apply, action="set_help_request")

    async def like_explanation(
        self, doc_id: str, highlight_id: str, explanation_id: str
    ) -> Highlight:
        def _apply(highlight: Highlight) -> Highlight:
            for explanation in highlight.voice_explanations:
                if explanation.id == explanation_id:
                    explanation.likes += 1
                    explanation.is_helpful = True
                    return highlight
            raise HighlightNotFoundError(
                f"Explanation {explanation_id} not found on highlight {highlight_id}"
            )

        return await self._update(doc_id, highlight_id, _apply, action="like_explanation")

    async def delete(self, doc_id: str, highlight_id: str) -> None:
        removed = await self.client.hash_delete(self.collection_key(doc_id), highlight_id)
        if not removed:
            raise HighlightRepositoryError(f"Failed to delete highlight {highlight_id}")

        logger.info("Highlight deleted", doc_id=doc_id, highlight_id=highlight_id)
        await self._signal_change(doc_id)

    async def _update(
        self,
        doc_id: str,
        highlight_id: str,
        change: Callable[[Highlight], Highlight],
        action: str,
    ) -> Highlight:
        updated: dict[str, Highlight] = {}

        def _mutate(current: str | None) -> str:
            if current is None:
                raise HighlightNotFoundError(f"Highlight {highlight_id} not found")
            highlight = change(Highlight.from_dict(json.loads(current)))
            updated["highlight"] = highlight
            return json.dumps(highlight.to_dict())

        written = await self.client.update_hash_field(
            self.collection_key(doc_id),
            highlight_id,
            _mutate,
            max_attempts=settings.ATTACH_MAX_ATTEMPTS,
        )
        if written is None:
            raise HighlightRepositoryError(f"Failed to {action.replace('_', ' ')} on {highlight_id}")

        logger.info("Highlight updated", doc_id=doc_id, highlight_id=highlight_id, action=action)
        await self._signal_change(doc_id)
        return updated["highlight"]

    async def _signal_change(self, doc_id: str) -> None:
        # The write already succeeded; a lost signal only delays other clients
        if not await self.client.publish(self.channel(doc_id), CHANGE_SIGNAL):
            logger.warning("Highlight change signal not delivered", doc_id=doc_id)
