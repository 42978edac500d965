import pytest

from app.auth.verify import auth_dependency
from app.features.annotation.domain import UserIdentity
from app.features.annotation.repository.document_repository import DocumentRepository
from app.features.annotation.repository.highlight_repository import HighlightRepository
from app.features.annotation.repository.notification_repository import NotificationRepository
from app.features.annotation.repository.presence_repository import PresenceRepository
from app.features.annotation.services.notification_fanout import NotificationFanout
from app.features.annotation.services.presence_tracker import PresenceTracker
from app.features.annotation.services.sync_channel import SyncChannel
from app.features.annotation.services.voice_pipeline import CaptureError
from app.services.blob_storage import BlobStorageError

ALICE = UserIdentity(uid="alice", display_name="Alice", email="alice@example.com")
BOB = UserIdentity(uid="bob", display_name="Bob", photo_url="https://img.test/bob.png")


class FakeSubscription:
    def __init__(self, redis: "FakeRedis", channel: str, handler, on_error=None):
        self.channel = channel
        self.handler = handler
        self.on_error = on_error
        self._redis = redis
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._redis.subscribers[self.channel].remove(self)


class FakeRedis:
    """
    In-memory stand-in for FastRedisClient; publish delivers to handlers inline.

    update_hash_field keeps the optimistic-lock contract: callables queued on
    concurrent_writes run between the read and the write, and a value changed
    underneath forces the mutation to be re-applied to the fresh value.
    """

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.counters: dict[str, int] = {}
        self.subscribers: dict[str, list[FakeSubscription]] = {}
        self.published: list[tuple[str, str]] = []
        self.fail_writes = False
        self.fail_reads = False
        self.fail_subscribe = False
        self.concurrent_writes: list = []
        self.update_attempts = 0

    async def ping(self) -> bool:
        return True

    async def incr_with_ttl(self, key: str, ttl_s: int | None = None) -> int | None:
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def hash_set(self, key: str, field: str, value: str) -> bool:
        if self.fail_writes:
            return False
        self.hashes.setdefault(key, {})[field] = value
        return True

    async def hash_get(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hash_get_all(self, key: str) -> dict[str, str] | None:
        if self.fail_reads:
            return None
        return dict(self.hashes.get(key, {}))

    async def hash_delete(self, key: str, field: str) -> bool:
        if self.fail_writes:
            return False
        return self.hashes.get(key, {}).pop(field, None) is not None

    async def hash_increment_many(self, key: str, amounts: dict[str, int], extra=None) -> bool:
        if self.fail_writes:
            return False
        record = self.hashes.setdefault(key, {})
        for field, amount in amounts.items():
            record[field] = str(int(record.get(field, 0)) + amount)
        record.update(extra or {})
        return True

    async def update_hash_field(self, key: str, field: str, mutate, max_attempts: int = 5):
        if self.fail_writes:
            return None
        for _ in range(max_attempts):
            self.update_attempts += 1
            current = self.hashes.get(key, {}).get(field)
            new_value = mutate(current)
            if new_value is None:
                return None
            if self.concurrent_writes:
                self.concurrent_writes.pop(0)()
            if self.hashes.get(key, {}).get(field) != current:
                continue
            self.hashes.setdefault(key, {})[field] = new_value
            return new_value
        return None

    async def set_add(self, key: str, member: str) -> bool:
        members = self.sets.setdefault(key, set())
        if member in members:
            return False
        members.add(member)
        return True

    async def set_remove(self, key: str, member: str) -> bool:
        members = self.sets.get(key, set())
        if member not in members:
            return False
        members.discard(member)
        return True

    async def set_members(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def publish(self, channel: str, message: str) -> bool:
        self.published.append((channel, message))
        for subscription in list(self.subscribers.get(channel, [])):
            await subscription.handler(message)
        return True

    async def subscribe(self, channel: str, handler, on_error=None) -> FakeSubscription | None:
        if self.fail_subscribe:
            return None
        subscription = FakeSubscription(self, channel, handler, on_error)
        self.subscribers.setdefault(channel, []).append(subscription)
        return subscription

    def subscriber_count(self) -> int:
        return sum(len(items) for items in self.subscribers.values())

    async def drop_connection(self, channel: str) -> None:
        """Fail every listener on channel the way a dropped pub/sub connection does."""
        for subscription in list(self.subscribers.get(channel, [])):
            if subscription.on_error is not None:
                await subscription.on_error(ConnectionError("redis connection lost"))


class FakeCaptureDevice:
    mime_type = "audio/webm"

    def __init__(
        self,
        deny: str | None = None,
        chunks: tuple[bytes, ...] = (b"voice-", b"clip"),
        fail_stop: Exception | None = None,
    ):
        self.deny = deny
        self.fail_stop = fail_stop
        self.stop_calls = 0
        self.chunks = chunks
        self.opened = False
        self.closed = False
        self.capturing = False
        self._on_chunk = None

    async def open(self) -> None:
        if self.deny:
            raise CaptureError(self.deny)
        self.opened = True
        self.closed = False

    async def start(self, on_chunk) -> None:
        self.capturing = True
        self._on_chunk = on_chunk

    async def stop(self) -> None:
        self.stop_calls += 1
        if self.fail_stop is not None:
            raise self.fail_stop
        for chunk in self.chunks:
            self._on_chunk(chunk)
        self.capturing = False

    def level(self) -> float:
        return 0.4 if self.capturing else 0.0

    async def close(self) -> None:
        self.closed = True


class FakeBlobStorage:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.uploads: list[tuple[str, bytes, str]] = []

    async def upload(self, path: str, data: bytes, content_type: str, on_progress=None) -> str:
        if self.failures:
            self.failures -= 1
            raise BlobStorageError("storage unavailable")
        if on_progress:
            on_progress(0.5)
            on_progress(1.0)
        self.uploads.append((path, data, content_type))
        return f"https://blobs.test/{path}"


@pytest.fixture
def alice():
    return ALICE


@pytest.fixture
def bob():
    return BOB


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def highlight_repo(fake_redis):
    return HighlightRepository(fake_redis)


@pytest.fixture
def document_repo(fake_redis):
    return DocumentRepository(fake_redis)


@pytest.fixture
def presence_repo(fake_redis):
    return PresenceRepository(fake_redis)


@pytest.fixture
def notification_repo(fake_redis):
    return NotificationRepository(fake_redis)


@pytest.fixture
def sync_channel(highlight_repo, document_repo):
    return SyncChannel(highlight_repo, document_repo)


@pytest.fixture
def tracker(presence_repo, document_repo):
    return PresenceTracker(presence_repo, document_repo)


@pytest.fixture
def fanout(notification_repo):
    return NotificationFanout(notification_repo)


@pytest.fixture
def capture_device():
    return FakeCaptureDevice()


@pytest.fixture
def blob_storage():
    return FakeBlobStorage()


@pytest.fixture
def auth_override():
    def _override():
        return ALICE

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply
