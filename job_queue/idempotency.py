"""
Idempotency Guard — suppresses a second visible delivery of the same job.

A job's identity is hash(thread or channel, event id). The first
should_process() call for an identity records it and returns True; later
calls within the retention window return False. release() drops a mark
whose job was handed back to the queue by stuck-job recovery.

Two backends:
  - InMemoryIdempotencyGuard: per-process map plus a periodic sweep.
    Only protects against duplicate triggers reaching the same process.
  - RedisIdempotencyGuard: SET NX with a TTL in the shared store, so
    duplicates are caught across independently scheduled instances.
"""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from redis.exceptions import RedisError

from config.settings import IdempotencyConfig
from job_queue.store import StoreError

logger = structlog.get_logger()


@dataclass
class IdempotencyRecord:
    job_identity: str
    first_seen_at: float


class IdempotencyGuard(ABC):
    """Abstract guard interface."""

    def __init__(self, retention_seconds: float = 3600):
        self.retention_seconds = retention_seconds

    async def connect(self):
        """Establish connection to the backend."""

    async def close(self):
        """Gracefully shut down."""

    @abstractmethod
    async def should_process(self, identity: str) -> bool:
        """True the first time an identity is seen within the retention window."""
        ...

    @abstractmethod
    async def sweep(self) -> int:
        """Evict records older than the retention window. Returns the count evicted."""
        ...

    @abstractmethod
    async def release(self, identity: str) -> bool:
        """
        Forget an identity so its next should_process() returns True.

        Used when a claimed job is handed back to waiting by recovery: the
        mark was taken by an invocation that never finished.
        """
        ...


class InMemoryIdempotencyGuard(IdempotencyGuard):
    """Process-local seen-set with timestamp-based eviction."""

    def __init__(self, retention_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        super().__init__(retention_seconds)
        self._clock = clock
        self._seen: dict[str, IdempotencyRecord] = {}

    async def should_process(self, identity: str) -> bool:
        now = self._clock()
        record = self._seen.get(identity)
        if record and now - record.first_seen_at < self.retention_seconds:
            return False
        self._seen[identity] = IdempotencyRecord(identity, now)
        return True

    async def sweep(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        expired = [k for k, r in self._seen.items() if r.first_seen_at < cutoff]
        for k in expired:
            del self._seen[k]
        if expired:
            logger.debug("idempotency_swept", evicted=len(expired), remaining=len(self._seen))
        return len(expired)

    async def release(self, identity: str) -> bool:
        return self._seen.pop(identity, None) is not None

    def __len__(self) -> int:
        return len(self._seen)


class RedisIdempotencyGuard(IdempotencyGuard):
    """Shared guard: one key per identity, expired by Redis itself."""

    def __init__(self, config: IdempotencyConfig = None, redis_url: str = "redis://localhost:6379",
                 redis_client=None):
        config = config or IdempotencyConfig(backend="redis")
        super().__init__(config.retention_seconds)
        self.key_prefix = config.key_prefix
        self._redis_url = redis_url
        self._redis = redis_client

    async def connect(self):
        if self._redis is not None:
            return
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)

    async def close(self):
        if self._redis:
            await self._redis.aclose()

    async def should_process(self, identity: str) -> bool:
        try:
            created = await self._redis.set(
                f"{self.key_prefix}:{identity}",
                str(time.time()),
                nx=True,
                ex=int(self.retention_seconds),
            )
        except RedisError as e:
            logger.error("idempotency_store_error", identity=identity, error=str(e))
            raise StoreError(f"Idempotency check failed: {e}", "should_process") from e
        return bool(created)

    async def release(self, identity: str) -> bool:
        try:
            removed = await self._redis.delete(f"{self.key_prefix}:{identity}")
        except RedisError as e:
            logger.error("idempotency_store_error", identity=identity, error=str(e))
            raise StoreError(f"Idempotency release failed: {e}", "release") from e
        return bool(removed)

    async def sweep(self) -> int:
        return 0  # keys carry their own TTL


class IdempotencySweeper:
    """Background task that periodically evicts expired idempotency records."""

    def __init__(self, guard: IdempotencyGuard, interval_seconds: float = 900):
        self.guard = guard
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        logger.info("idempotency_sweeper_started", interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.guard.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("idempotency_sweep_error", error=str(e))


def create_idempotency_guard(config: IdempotencyConfig = None,
                             redis_url: str = "redis://localhost:6379") -> IdempotencyGuard:
    """Factory: create the configured guard backend."""
    config = config or IdempotencyConfig()
    if config.backend == "redis":
        return RedisIdempotencyGuard(config, redis_url=redis_url)
    return InMemoryIdempotencyGuard(retention_seconds=config.retention_seconds)
