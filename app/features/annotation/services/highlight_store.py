"""
Highlight Store - the local, authoritative view of one document's highlights.

The committed cache is only ever replaced wholesale by snapshots from the
sync channel feed. The pending slot is kept apart from it and holds at most
one uncommitted highlight at a time.
"""

from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from app.config import settings
from app.features.annotation.domain import (
    PENDING_ID_PREFIX,
    AnnotationError,
    HelpRequest,
    Highlight,
    IdentityRequiredError,
    Position,
    UserIdentity,
    find_overlapping,
    utc_now,
)
from app.features.annotation.services.live_feed import LiveFeed, LostHandler
from app.features.annotation.services.sync_channel import SyncChannel
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

IdentityProvider = Callable[[], UserIdentity | None]


class CommitInProgressError(AnnotationError):
    """The pending highlight is already being committed."""


@dataclass(slots=True)
class SelectionRoute:
    """Where a new text selection should go: an existing mark or a new pending one."""

    existing: Highlight | None = None
    pending: Highlight | None = None


class HighlightStore:
    """
    Per-document highlight state for one signed-in participant.

    Usage:
        store = HighlightStore(doc_id, sync_channel, lambda: current_user)
        await store.open()
        pending = store.create_pending("neural networks", position, 2)
        await store.commit(pending, HelpRequest.new("explain", current_user))
        ...
        await store.close()
    """

    def __init__(self, doc_id: str, sync: SyncChannel, identity: IdentityProvider):
        self.doc_id = doc_id
        self.sync = sync
        self._identity = identity
        self._highlights: list[Highlight] = []
        self._pending: Highlight | None = None
        self._committing: set[str] = set()
        self._feed: LiveFeed[Highlight] | None = None
        self.loading = True

    @property
    def highlights(self) -> list[Highlight]:
        return list(self._highlights)

    @property
    def pending(self) -> Highlight | None:
        return self._pending

    @property
    def live(self) -> bool:
        """False once the highlight feed is closed or has lost its channel."""
        return self._feed is not None and self._feed.active

    async def open(self, on_lost: LostHandler | None = None) -> None:
        """Subscribe to the document; `loading` clears once the first snapshot lands."""
        if self._feed is not None:
            return
        self.loading = True
        self._feed = await self.sync.subscribe(self.doc_id, self._apply_snapshot, on_lost=on_lost)

    async def close(self) -> None:
        if self._feed is None:
            return
        feed, self._feed = self._feed, None
        await feed.close()
        self._pending = None

    def _apply_snapshot(self, highlights: list[Highlight]) -> None:
        self._highlights = sorted(highlights, key=Highlight.sort_key)
        self.loading = False
        logger.debug("Highlight snapshot applied", doc_id=self.doc_id, count=len(highlights))

    def create_pending(self, selected_text: str, position: Position, page_number: int) -> Highlight | None:
        """
        Stage a new highlight locally, replacing any earlier pending one.

        Returns:
            The pending highlight, or None when the selection is blank, the page
            number is invalid, or nobody is signed in
        """
        text = (selected_text or "").strip()
        if not text:
            return None
        if page_number < 1:
            logger.warning("Rejected selection with invalid page", doc_id=self.doc_id, page_number=page_number)
            return None

        user = self._identity()
        if user is None:
            return None

        if self._pending is not None:
            logger.debug("Replacing pending highlight", doc_id=self.doc_id, pending_id=self._pending.id)

        self._pending = Highlight(
            id=f"{PENDING_ID_PREFIX}{uuid4().hex}",
            text=text,
            page_number=page_number,
            position=position,
            color=settings.DEFAULT_HIGHLIGHT_COLOR,
            created_by=user.uid,
            created_by_name=user.name,
            created_by_avatar=user.photo_url,
            created_at=utc_now(),
        )
        return self._pending

    def find_overlapping(self, position: Position, page_number: int) -> Highlight | None:
        """First committed highlight on the page whose box overlaps position."""
        return find_overlapping(self._highlights, position, page_number)

    def route_selection(self, selected_text: str, position: Position, page_number: int) -> SelectionRoute:
        """Send a selection to an overlapping highlight if there is one, else stage it."""
        existing = self.find_overlapping(position, page_number)
        if existing is not None:
            return SelectionRoute(existing=existing)
        return SelectionRoute(pending=self.create_pending(selected_text, position, page_number))

    async def commit(self, pending: Highlight, help_request: HelpRequest | None = None) -> Highlight:
        """
        Persist a pending highlight, optionally with a help request.

        The highlight is locked against a second commit as soon as this is
        called. The pending slot is cleared once the store acknowledges the
        write, or when the write fails; a failed commit is not retried and
        the caller has to select again.

        Raises:
            CommitInProgressError: If this pending highlight is already being committed
            IdentityRequiredError: If nobody is signed in
            SyncError: If the write failed
        """
        if pending.id in self._committing:
            raise CommitInProgressError("This highlight is already being saved")

        user = self._identity()
        if user is None:
            raise IdentityRequiredError("Sign in to save highlights")

        self._committing.add(pending.id)
        try:
            highlight = await self.sync.publish_create(self.doc_id, pending.to_draft(help_request), user)
        except Exception as e:
            logger.error(
                "Highlight commit failed",
                doc_id=self.doc_id,
                pending_id=pending.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            self._committing.discard(pending.id)
            self._clear_pending(pending.id)

        logger.info(
            "Highlight committed",
            doc_id=self.doc_id,
            highlight_id=highlight.id,
            needs_help=highlight.needs_help,
        )
        return highlight

    def cancel_pending(self) -> None:
        self._pending = None

    def highlights_for_page(self, page_number: int) -> list[Highlight]:
        return [item for item in self._highlights if item.page_number == page_number]

    async def request_help(self, highlight_id: str, help_type: str, details: str = "") -> Highlight:
        """Ask for an explanation on a highlight that already exists."""
        user = self._identity()
        if user is None:
            raise IdentityRequiredError("Sign in to request help")
        return await self.sync.publish_help_request(
            self.doc_id, highlight_id, HelpRequest.new(help_type, user, details)
        )

    async def delete(self, highlight_id: str) -> None:
        await self.sync.publish_delete(self.doc_id, highlight_id, self._identity())

    def _clear_pending(self, pending_id: str) -> None:
        # A newer selection made while the commit was in flight stays staged
        if self._pending is not None and self._pending.id == pending_id:
            self._pending = None
