"""
One participant's stay on one document.

Opening a session subscribes the highlight store, joins presence, starts the
heartbeat and opens the roster feed. Closing it undoes all of that exactly
once, in reverse order, whatever state the open left things in. A step that
fails during close is logged and the remaining steps still run.
"""

from collections.abc import Awaitable, Callable

from app.features.annotation.domain import PresenceRecord, UserIdentity
from app.features.annotation.services.highlight_store import HighlightStore
from app.features.annotation.services.live_feed import LiveFeed, LostHandler
from app.features.annotation.services.presence_tracker import HeartbeatTimer, PresenceTracker
from app.features.annotation.services.sync_channel import SyncChannel
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DocumentSession:
    def __init__(
        self,
        doc_id: str,
        user: UserIdentity,
        sync: SyncChannel,
        tracker: PresenceTracker,
        on_roster: Callable[[list[PresenceRecord]], None] | None = None,
        on_feed_lost: LostHandler | None = None,
    ):
        self.doc_id = doc_id
        self.user = user
        self.tracker = tracker
        self.store = HighlightStore(doc_id, sync, lambda: self.user)
        self.roster: list[PresenceRecord] = []
        self._on_roster = on_roster
        self._on_feed_lost = on_feed_lost
        self._roster_feed: LiveFeed[PresenceRecord] | None = None
        self._heartbeat: HeartbeatTimer | None = None
        self._opened = False
        self._closed = False

    async def __aenter__(self) -> "DocumentSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def live(self) -> bool:
        """True while both the highlight and roster feeds are still delivering."""
        return self.store.live and self._roster_feed is not None and self._roster_feed.active

    async def open(self) -> None:
        if self._opened:
            return
        self._opened = True

        try:
            await self.store.open(on_lost=self._feed_lost)
            await self.tracker.join(self.doc_id, self.user)
            self._heartbeat = self.tracker.start_heartbeat(self.doc_id, self.user.uid)
            self._roster_feed = await self.tracker.subscribe(
                self.doc_id, self._apply_roster, on_lost=self._feed_lost
            )
        except Exception:
            await self.close()
            raise

        logger.info("Document session opened", doc_id=self.doc_id, user_id=self.user.uid)

    async def close(self) -> None:
        """Revoke feeds, stop the heartbeat and leave. Later calls are no-ops."""
        if self._closed:
            return
        self._closed = True

        roster_feed, self._roster_feed = self._roster_feed, None
        heartbeat, self._heartbeat = self._heartbeat, None

        steps: list[tuple[str, Callable[[], Awaitable[object]] | None]] = [
            ("roster_feed", roster_feed.close if roster_feed else None),
            ("heartbeat", heartbeat.stop if heartbeat else None),
            ("highlight_feed", self.store.close),
            ("leave", lambda: self.tracker.leave(self.doc_id, self.user.uid)),
        ]
        failed = []
        for name, step in steps:
            if step is None:
                continue
            try:
                await step()
            except Exception as e:
                failed.append(name)
                logger.error(
                    "Document session cleanup step failed",
                    doc_id=self.doc_id,
                    user_id=self.user.uid,
                    step=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info(
            "Document session closed",
            doc_id=self.doc_id,
            user_id=self.user.uid,
            failed_steps=failed,
        )

    def recording_users(self) -> list[PresenceRecord]:
        return self.tracker.recording_users(self.roster)

    def _apply_roster(self, roster: list[PresenceRecord]) -> None:
        self.roster = roster
        if self._on_roster:
            self._on_roster(roster)

    async def _feed_lost(self, error: Exception) -> None:
        logger.warning("Document session feed lost", doc_id=self.doc_id, user_id=self.user.uid, error=str(error))
        if self._on_feed_lost is not None:
            await self._on_feed_lost(error)
