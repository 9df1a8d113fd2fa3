"""Shared test fixtures for AnswerRelay."""
import pytest
from typing import Optional
from unittest.mock import AsyncMock

from channels.base import MessagePlatform, PlatformError, RateLimitedDeliveryClient, ThrottleError
from config.settings import StreamingConfig
from core.dispatcher import WorkerDispatcher
from core.generation import MockAnswerEngine
from job_queue.idempotency import InMemoryIdempotencyGuard
from job_queue.store import InMemoryQueueStore
from models.schemas import Job


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakePlatform(MessagePlatform):
    """Records every outbound call; can be told to throttle or reject."""

    def __init__(self, throttle_times: int = 0, reject_updates: bool = False,
                 reject_posts: bool = False):
        self.posts: list[dict] = []
        self.updates: list[dict] = []
        self.throttle_times = throttle_times
        self.reject_updates = reject_updates
        self.reject_posts = reject_posts
        self.calls = 0

    def _maybe_throttle(self, channel: str):
        self.calls += 1
        if self.throttle_times > 0:
            self.throttle_times -= 1
            raise ThrottleError(channel)

    async def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> str:
        self._maybe_throttle(channel)
        if self.reject_posts:
            raise PlatformError("channel_not_found", channel, code="channel_not_found")
        self.posts.append({"channel": channel, "text": text, "thread_ts": thread_ts})
        return f"{len(self.posts)}.000100"

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        self._maybe_throttle(channel)
        if self.reject_updates:
            raise PlatformError("message_not_found", channel, code="message_not_found")
        self.updates.append({"channel": channel, "ts": ts, "text": text})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def store():
    return InMemoryQueueStore()


@pytest.fixture
def guard():
    return InMemoryIdempotencyGuard(retention_seconds=3600)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def delivery(no_sleep):
    return RateLimitedDeliveryClient(throttle_interval=1.1, max_attempts=3, sleep=no_sleep)


@pytest.fixture
def engine():
    return MockAnswerEngine(answer="X is Y.")


@pytest.fixture
def poster():
    return AsyncMock()


@pytest.fixture
def make_dispatcher(store, guard, delivery, engine, platform, poster):
    """Build a dispatcher, overriding any collaborator by keyword."""
    def _make(**overrides):
        kwargs = dict(
            store=store, guard=guard, delivery=delivery, engine=engine,
            platform=platform, response_poster=poster,
            streaming=StreamingConfig(enabled=False),
        )
        kwargs.update(overrides)
        return WorkerDispatcher(**kwargs)
    return _make


def make_job(**fields) -> Job:
    data = {"questionText": "What is X?", "channelId": "C1", "eventId": "100.1"}
    data.update(fields)
    return Job.model_validate(data)
