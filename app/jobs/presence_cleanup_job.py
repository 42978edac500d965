"""
Presence Cleanup Job.
Deletes presence records that stopped heartbeating (closed tabs, crashed
clients) so rosters and recording indicators do not show ghosts.
"""

import asyncio
from datetime import UTC, datetime

from app.config import settings
from app.features.annotation.services.presence_tracker import PresenceTracker
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_PROCESSING_TIME_SECONDS = 120
RETRY_DELAY_SECONDS = 60


class PresenceCleanupJob:
    """Sweeps every document with presence and prunes stale records."""

    def __init__(self, tracker: PresenceTracker | None = None):
        self.tracker = tracker or PresenceTracker()
        self.is_running = False
        self.last_run_time: datetime | None = None

    async def run_once(self) -> dict:
        """
        Run a single sweep.

        Returns:
            Dict: documents_checked, records_removed, and job_error on failure
        """
        if self.is_running:
            logger.warning("Presence cleanup already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        metrics = {"documents_checked": 0, "records_removed": 0, "document_errors": 0}
        self.is_running = True
        try:
            await asyncio.wait_for(self._sweep(metrics), timeout=MAX_PROCESSING_TIME_SECONDS)
            self.last_run_time = datetime.now(UTC)
            logger.info("Presence cleanup completed", **metrics)
        except TimeoutError:
            logger.error("Presence cleanup timed out", timeout_seconds=MAX_PROCESSING_TIME_SECONDS)
            metrics["job_error"] = f"Timed out after {MAX_PROCESSING_TIME_SECONDS} seconds"
        except Exception as e:
            logger.error("Presence cleanup failed", error=str(e), error_type=type(e).__name__)
            metrics["job_error"] = str(e)
        finally:
            self.is_running = False
        return metrics

    async def _sweep(self, metrics: dict) -> None:
        doc_ids = await self.tracker.presence.documents_with_presence()
        for doc_id in sorted(doc_ids):
            metrics["documents_checked"] += 1
            try:
                metrics["records_removed"] += await self.tracker.prune_stale(doc_id)
            except Exception as e:
                # One unreadable roster must not stop the sweep
                metrics["document_errors"] += 1
                logger.error("Presence prune failed", doc_id=doc_id, error=str(e))


async def start_presence_cleanup_scheduler(job: PresenceCleanupJob | None = None) -> None:
    """Run the cleanup sweep forever at PRESENCE_CLEANUP_INTERVAL_SECONDS."""
    job = job or PresenceCleanupJob()
    interval = settings.PRESENCE_CLEANUP_INTERVAL_SECONDS
    logger.info("Starting presence cleanup scheduler", interval_seconds=interval)

    while True:
        try:
            await job.run_once()
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Presence cleanup scheduler stopped")
            raise
        except Exception as e:
            logger.error(
                "Error in presence cleanup scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(RETRY_DELAY_SECONDS)
