"""
Aggregate counters on the parent document record.

Counter bookkeeping is best-effort: callers never fail a user-facing
operation because a counter could not be bumped, so these helpers report
success as a bool instead of raising.
"""

from app.features.annotation.domain import DocumentStats, utc_now
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

KEY_PREFIX = "annotation:doc"

COUNTER_FIELDS = (
    "total_highlights",
    "total_voice_explanations",
    "help_requests_open",
    "active_collaborators",
)


class DocumentRepository:
    """Redis hash of counters per document."""

    def __init__(self, client: FastRedisClient = fast_redis):
        self.client = client

    @staticmethod
    def stats_key(doc_id: str) -> str:
        return f"{KEY_PREFIX}:{doc_id}:stats"

    async def adjust_counters(self, doc_id: str, actor_id: str, **deltas: int) -> bool:
        """
        Apply counter deltas and stamp last activity.

        Args:
            doc_id: Document whose counters change
            actor_id: User whose action caused the change
            **deltas: Counter name -> signed amount, e.g. total_highlights=1

        Returns:
            bool: True if the counters were updated
        """
        unknown = set(deltas) - set(COUNTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown document counters: {sorted(unknown)}")

        amounts = {name: amount for name, amount in deltas.items() if amount}
        success = await self.client.hash_increment_many(
            self.stats_key(doc_id),
            amounts,
            extra={"last_activity": utc_now().isoformat(), "last_activity_by": actor_id},
        )
        if not success:
            logger.warning(
                "Document counter update failed",
                doc_id=doc_id,
                actor_id=actor_id,
                deltas=amounts,
            )
        return success

    async def get_stats(self, doc_id: str) -> DocumentStats:
        raw = await self.client.hash_get_all(self.stats_key(doc_id))
        return DocumentStats.from_hash(raw or {})
