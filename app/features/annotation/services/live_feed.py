"""
Snapshot-replace live feeds.

A LiveFeed listens on a change channel and, on every signal, reloads the
entire collection and hands it to the consumer. Consumers never see deltas,
so they can simply replace what they hold.

If the channel connection drops the feed is marked lost and its owner is told
through on_lost; a lost feed never delivers again and still has to be closed.
"""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from app.features.annotation.domain import SyncError
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import ChannelSubscription, FastRedisClient

logger = get_logger(__name__)

T = TypeVar("T")

SnapshotLoader = Callable[[], Awaitable[list[T]]]
SnapshotConsumer = Callable[[list[T]], Any]
LostHandler = Callable[[Exception], Any]


class LiveFeed(Generic[T]):
    """One revocable subscription delivering full snapshots."""

    def __init__(
        self,
        client: FastRedisClient,
        channel: str,
        loader: SnapshotLoader,
        on_update: SnapshotConsumer,
        name: str = "feed",
        on_lost: LostHandler | None = None,
    ):
        self.client = client
        self.channel = channel
        self.name = name
        self._loader = loader
        self._on_update = on_update
        self._on_lost = on_lost
        self._subscription: ChannelSubscription | None = None
        self._generation = 0
        self._started = False
        self._closed = False
        self._lost = False

    @property
    def active(self) -> bool:
        return self._started and not self._closed and not self._lost

    @property
    def lost(self) -> bool:
        return self._lost

    async def start(self) -> "LiveFeed[T]":
        """
        Open the channel and deliver the initial snapshot.

        Raises:
            SyncError: If the channel cannot be opened or the first load fails
        """
        if self._started:
            raise SyncError(f"{self.name} feed already started")
        self._started = True

        self._subscription = await self.client.subscribe(
            self.channel, self._on_signal, on_error=self._on_channel_error
        )
        if self._subscription is None:
            self._closed = True
            raise SyncError(f"Failed to subscribe to {self.name} feed")

        try:
            await self._deliver()
        except Exception as e:
            await self.close()
            raise SyncError(f"Initial {self.name} snapshot failed: {e}") from e

        logger.debug("Live feed started", feed=self.name, channel=self.channel)
        return self

    async def close(self) -> None:
        """Revoke the subscription. Later calls are no-ops."""
        if self._closed:
            return
        self._closed = True

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.close()
            except Exception as e:
                logger.error(
                    "Live feed subscription close failed",
                    feed=self.name,
                    channel=self.channel,
                    error=str(e),
                )
        logger.debug("Live feed closed", feed=self.name, channel=self.channel)

    async def _on_channel_error(self, error: Exception) -> None:
        if self._closed or self._lost:
            return
        self._lost = True
        logger.warning("Live feed lost its channel", feed=self.name, channel=self.channel, error=str(error))

        if self._on_lost is None:
            return
        try:
            result = self._on_lost(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Live feed lost handler failed", feed=self.name, error=str(e))

    async def _on_signal(self, _message: str) -> None:
        await self._deliver()

    async def _deliver(self) -> None:
        if self._closed or self._lost:
            return

        # A newer reload supersedes an older one still in flight
        self._generation += 1
        generation = self._generation

        items = await self._loader()
        if self._closed or self._lost or generation != self._generation:
            return

        result = self._on_update(items)
        if inspect.isawaitable(result):
            await result
