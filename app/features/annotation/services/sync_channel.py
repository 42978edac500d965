"""
Sync channel between local highlight state and the shared store.

Publishes highlight writes (create, help request, explanation append, like,
delete), keeps the parent document's counters in step as a best-effort side
effect, and opens snapshot feeds of a document's highlights.
"""

from app.features.annotation.domain import (
    HelpRequest,
    Highlight,
    HighlightDraft,
    IdentityRequiredError,
    PermissionDeniedError,
    SyncError,
    UserIdentity,
    VoiceExplanation,
)
from app.features.annotation.repository.document_repository import DocumentRepository
from app.features.annotation.repository.highlight_repository import (
    HighlightRepository,
    HighlightRepositoryError,
)
from app.features.annotation.services.live_feed import LiveFeed, LostHandler, SnapshotConsumer
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SyncChannel:
    """Publishes highlight changes and opens live snapshot subscriptions."""

    def __init__(
        self,
        highlights: HighlightRepository | None = None,
        documents: DocumentRepository | None = None,
    ):
        self.highlights = highlights or HighlightRepository()
        self.documents = documents or DocumentRepository(self.highlights.client)

    async def subscribe(
        self, doc_id: str, on_update: SnapshotConsumer, on_lost: LostHandler | None = None
    ) -> LiveFeed[Highlight]:
        """
        Open a live feed of the document's highlights ordered by created_at.

        The returned feed must be closed when the document scope ends. on_lost
        is called if the channel connection drops.
        """
        feed: LiveFeed[Highlight] = LiveFeed(
            self.highlights.client,
            self.highlights.channel(doc_id),
            lambda: self.highlights.list_highlights(doc_id),
            on_update,
            name=f"highlights:{doc_id}",
            on_lost=on_lost,
        )
        return await feed.start()

    async def publish_create(
        self, doc_id: str, draft: HighlightDraft, author: UserIdentity | None
    ) -> Highlight:
        """
        Persist a new highlight.

        Raises:
            IdentityRequiredError: If no author is signed in
            SyncError: If the highlight could not be written
        """
        if author is None:
            raise IdentityRequiredError("Sign in to save highlights")

        try:
            highlight = await self.highlights.create(doc_id, draft, author)
        except HighlightRepositoryError as e:
            logger.error("Highlight publish failed", doc_id=doc_id, user_id=author.uid, error=str(e))
            raise SyncError(f"Could not save highlight: {e}") from e

        await self.documents.adjust_counters(
            doc_id,
            author.uid,
            total_highlights=1,
            help_requests_open=1 if highlight.needs_help else 0,
        )
        return highlight

    async def publish_attachment(
        self, doc_id: str, highlight_id: str, explanation: VoiceExplanation
    ) -> Highlight:
        """
        Append an explanation and resolve the highlight's help request atomically.

        Returns:
            The highlight as stored after the append

        Raises:
            HighlightNotFoundError: If the highlight was deleted meanwhile
            SyncError: If the append could not be committed
        """
        try:
            highlight, appended = await self.highlights.append_explanation(
                doc_id, highlight_id, explanation
            )
        except HighlightRepositoryError as e:
            logger.error(
                "Explanation publish failed",
                doc_id=doc_id,
                highlight_id=highlight_id,
                error=str(e),
            )
            raise SyncError(f"Could not save voice explanation: {e}") from e

        if not appended:
            logger.info(
                "Explanation already attached",
                doc_id=doc_id,
                highlight_id=highlight_id,
                explanation_id=explanation.id,
            )
            return highlight

        # Only the write that landed the first explanation closes the request
        resolved_now = (
            highlight.help_request is not None
            and highlight.voice_explanations[0].id == explanation.id
        )
        await self.documents.adjust_counters(
            doc_id,
            explanation.recorded_by,
            total_voice_explanations=1,
            help_requests_open=-1 if resolved_now else 0,
        )
        return highlight

    async def publish_help_request(
        self, doc_id: str, highlight_id: str, help_request: HelpRequest
    ) -> Highlight:
        """Attach a help request to an existing highlight."""
        try:
            before = await self.highlights.get(doc_id, highlight_id)
            highlight = await self.highlights.set_help_request(doc_id, highlight_id, help_request)
        except HighlightRepositoryError as e:
            raise SyncError(f"Could not request help: {e}") from e

        opened = highlight.needs_help and not before.needs_help
        await self.documents.adjust_counters(
            doc_id, help_request.requested_by, help_requests_open=1 if opened else 0
        )
        return highlight

    async def publish_like(self, doc_id: str, highlight_id: str, explanation_id: str) -> Highlight:
        try:
            return await self.highlights.like_explanation(doc_id, highlight_id, explanation_id)
        except HighlightRepositoryError as e:
            raise SyncError(f"Could not like explanation: {e}") from e

    async def publish_delete(self, doc_id: str, highlight_id: str, user: UserIdentity | None) -> None:
        """
        Delete a highlight; only its creator may do so.

        Raises:
            IdentityRequiredError: If no user is signed in
            HighlightNotFoundError: If the highlight does not exist
            PermissionDeniedError: If user did not create the highlight
            SyncError: If the delete could not be committed
        """
        if user is None:
            raise IdentityRequiredError("Sign in to delete highlights")

        highlight = await self.highlights.get(doc_id, highlight_id)
        if highlight.created_by != user.uid:
            raise PermissionDeniedError("Only the highlight creator can delete it")

        try:
            await self.highlights.delete(doc_id, highlight_id)
        except HighlightRepositoryError as e:
            raise SyncError(f"Could not delete highlight: {e}") from e

        await self.documents.adjust_counters(
            doc_id,
            user.uid,
            total_highlights=-1,
            help_requests_open=-1 if highlight.needs_help else 0,
        )

    async def open_help_requests(self, doc_id: str) -> list[Highlight]:
        """Highlights still waiting for an explanation, newest first."""
        try:
            highlights = await self.highlights.list_highlights(doc_id)
        except HighlightRepositoryError as e:
            raise SyncError(str(e)) from e
        return [item for item in reversed(highlights) if item.needs_help]

