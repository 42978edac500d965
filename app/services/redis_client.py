# app/services/redis_client.py
import asyncio
from collections.abc import Awaitable, Callable

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import WatchError

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]


class ChannelSubscription:
    """Handle for one pub/sub channel listener; closing it stops delivery."""

    def __init__(self, channel: str, pubsub, listener: asyncio.Task):
        self.channel = channel
        self._pubsub = pubsub
        self._listener = listener
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(
                "Channel listener had already failed",
                channel=self.channel,
                error=str(e),
                error_type=type(e).__name__,
            )

        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except Exception as e:
            logger.error("Error closing channel subscription", channel=self.channel, error=str(e))


class FastRedisClient:
    """Pooled async Redis client used as the shared store for every collaboration record"""

    def __init__(self):
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", host=settings.redis_host())

            self.pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def incr_with_ttl(self, key: str, ttl_s: int | None = None) -> int | None:
        """Increment a key and optionally refresh TTL atomically."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                results = await pipe.execute()
            return int(results[0]) if results else None
        except Exception as e:
            logger.error("Redis INCR failed", key=key[:60], error=str(e))
            return None

    # =================================================================
    # HASHES - one JSON record per field
    # =================================================================

    async def hash_set(self, key: str, field: str, value: str) -> bool:
        """Write one hash field."""
        try:
            await self._ensure_initialized()
            await self.client.hset(key, field, value)
            return True
        except Exception as e:
            logger.error("Redis HSET failed", key=key[:60], field=field[:40], error=str(e))
            return False

    async def hash_get(self, key: str, field: str) -> str | None:
        """Read one hash field."""
        try:
            await self._ensure_initialized()
            return await self.client.hget(key, field)
        except Exception as e:
            logger.error("Redis HGET failed", key=key[:60], field=field[:40], error=str(e))
            return None

    async def hash_get_all(self, key: str) -> dict[str, str] | None:
        """
        Read a whole hash.

        Returns:
            The field mapping (empty when the key does not exist), or None when
            Redis could not be reached so callers can tell "empty" from "failed".
        """
        try:
            await self._ensure_initialized()
            result = await self.client.hgetall(key)
            return dict(result) if result else {}
        except Exception as e:
            logger.error("Redis HGETALL failed", key=key[:60], error=str(e))
            return None

    async def hash_delete(self, key: str, field: str) -> bool:
        """Delete one hash field; True only when something was removed."""
        try:
            await self._ensure_initialized()
            removed = await self.client.hdel(key, field)
            return removed > 0
        except Exception as e:
            logger.error("Redis HDEL failed", key=key[:60], field=field[:40], error=str(e))
            return False

    async def hash_increment_many(self, key: str, amounts: dict[str, int], extra: dict[str, str] | None = None) -> bool:
        """Apply several HINCRBY calls (plus optional plain field writes) in one transaction."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                for field, amount in amounts.items():
                    pipe.hincrby(key, field, amount)
                if extra:
                    pipe.hset(key, mapping=extra)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error("Redis HINCRBY failed", key=key[:60], fields=list(amounts), error=str(e))
            return False

    async def update_hash_field(
        self,
        key: str,
        field: str,
        mutate: Callable[[str | None], str | None],
        max_attempts: int = 5,
    ) -> str | None:
        """
        Read-modify-write one hash field under WATCH so concurrent writers never
        overwrite each other's changes.

        Args:
            key: Redis hash key
            field: Field inside the hash
            mutate: Receives the current value (None if absent) and returns the
                new value, or None to abort without writing. Exceptions raised by
                mutate propagate to the caller untouched.
            max_attempts: Optimistic-lock retries before giving up

        Returns:
            The value written, or None when aborted, contended past max_attempts,
            or Redis failed.
        """
        try:
            await self._ensure_initialized()
        except Exception as e:
            logger.error("Redis atomic update failed", key=key[:60], field=field[:40], error=str(e))
            return None

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for attempt in range(1, max_attempts + 1):
                    try:
                        await pipe.watch(key)
                        current = await pipe.hget(key, field)
                        new_value = mutate(current)
                        if new_value is None:
                            await pipe.unwatch()
                            return None
                        pipe.multi()
                        pipe.hset(key, field, new_value)
                        await pipe.execute()
                        return new_value
                    except WatchError:
                        logger.debug(
                            "Concurrent hash update detected, retrying",
                            key=key[:60],
                            field=field[:40],
                            attempt=attempt,
                        )
                        continue

            logger.warning(
                "Hash update gave up after repeated contention",
                key=key[:60],
                field=field[:40],
                attempts=max_attempts,
            )
            return None
        except (redis.RedisError, ConnectionError) as e:
            logger.error("Redis atomic update failed", key=key[:60], field=field[:40], error=str(e))
            return None

    # =================================================================
    # SETS
    # =================================================================

    async def set_add(self, key: str, member: str) -> bool:
        """Add a set member; True when it was not present before."""
        try:
            await self._ensure_initialized()
            added = await self.client.sadd(key, member)
            return added > 0
        except Exception as e:
            logger.error("Redis SADD failed", key=key[:60], error=str(e))
            return False

    async def set_remove(self, key: str, member: str) -> bool:
        try:
            await self._ensure_initialized()
            removed = await self.client.srem(key, member)
            return removed > 0
        except Exception as e:
            logger.error("Redis SREM failed", key=key[:60], error=str(e))
            return False

    async def set_members(self, key: str) -> set[str]:
        try:
            await self._ensure_initialized()
            members = await self.client.smembers(key)
            return set(members) if members else set()
        except Exception as e:
            logger.error("Redis SMEMBERS failed", key=key[:60], error=str(e))
            return set()

    # =================================================================
    # PUB/SUB - live feed change signals
    # =================================================================

    async def publish(self, channel: str, message: str) -> bool:
        """Publish a change signal; True when the message was handed to Redis."""
        try:
            await self._ensure_initialized()
            await self.client.publish(channel, message)
            return True
        except Exception as e:
            logger.error("Redis PUBLISH failed", channel=channel[:60], error=str(e))
            return False

    async def subscribe(
        self,
        channel: str,
        handler: MessageHandler,
        on_error: ErrorHandler | None = None,
    ) -> ChannelSubscription | None:
        """
        Start a background listener that awaits handler for every message.

        Messages on one channel are handled strictly one at a time, in arrival
        order. If the connection drops the listener stops and on_error is
        called with the failure; the subscription still has to be closed.

        Returns:
            A ChannelSubscription to close when the consumer goes away, or None
            if the subscription could not be opened.
        """
        try:
            await self._ensure_initialized()
            pubsub = self.client.pubsub()
            await pubsub.subscribe(channel)
        except Exception as e:
            logger.error("Redis SUBSCRIBE failed", channel=channel[:60], error=str(e))
            return None

        listener = asyncio.create_task(self._listen(pubsub, channel, handler, on_error))
        logger.debug("Channel subscription opened", channel=channel[:60])
        return ChannelSubscription(channel, pubsub, listener)

    async def _listen(
        self,
        pubsub,
        channel: str,
        handler: MessageHandler,
        on_error: ErrorHandler | None = None,
    ) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    await handler(message["data"])
                except Exception as e:
                    logger.error(
                        "Channel handler failed",
                        channel=channel[:60],
                        error=str(e),
                        error_type=type(e).__name__,
                    )
        except Exception as e:
            logger.error(
                "Channel listener stopped",
                channel=channel[:60],
                error=str(e),
                error_type=type(e).__name__,
            )
            if on_error is not None:
                await on_error(e)


# Global instance
fast_redis = FastRedisClient()
