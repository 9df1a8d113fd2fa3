"""
Queue Store — durable list-based hand-off between ingestion and the worker.

Layout (one Redis list per state, elements are JSON strings):
  queue:<name>:waiting     — Envelopes admitted and not yet claimed
  queue:<name>:processing  — Envelopes claimed by a worker and not yet acked
  queue:<name>:dead        — Dead-Letter Entries (inspection only)

Lifecycle:
  waiting ──claim──▶ processing ──ack_success──▶ (removed)
                               ──ack_failure──▶ dead
                               ──recover_stuck──▶ waiting (tail)

Claims are single-pop (LMOVE) so two workers never receive the same item
from one push, but nothing prevents a redelivered trigger from running a
job twice: delivery is at-least-once. There is no lease timeout; a worker
killed mid-job leaves its item in processing until an operator runs
recover_stuck().
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from redis.exceptions import RedisError

from config.settings import QueueConfig
from models.schemas import (
    DeadLetterEntry, Envelope, Job, JobValidationError, QueueState,
    decode_envelope, utc_now,
)

logger = structlog.get_logger()


class StoreError(Exception):
    """Queue backend read/write failure. Never swallowed."""

    def __init__(self, message: str, operation: str = ""):
        self.operation = operation
        super().__init__(message)


def poison_entry(raw: str, error: str) -> str:
    """Dead-letter form for an item that could not be decoded into a Job."""
    return json.dumps({"raw": raw, "error": error, "timestamp": utc_now().isoformat()})


# ──────────────────────────────────────────────────────────────
#  Abstract interface
# ──────────────────────────────────────────────────────────────

class QueueStore(ABC):
    """Abstract job queue store."""

    async def connect(self):
        """Establish connection to the backend."""

    async def close(self):
        """Gracefully shut down."""

    @abstractmethod
    async def enqueue(self, job: Job) -> int:
        """Append a job to the tail of waiting. Returns the new waiting depth."""
        ...

    @abstractmethod
    async def claim_next(self) -> Optional[Envelope]:
        """Move the head of waiting into processing and return it, or None."""
        ...

    @abstractmethod
    async def ack_success(self, envelope: Envelope) -> None:
        """Drop a claimed envelope; successful jobs are not tracked further."""
        ...

    @abstractmethod
    async def ack_failure(self, envelope: Envelope, error: str) -> None:
        """Move a claimed envelope to dead with the error that stopped it."""
        ...

    @abstractmethod
    async def peek(self, state: QueueState, offset: int = 0, count: int = 1) -> list[str]:
        """Raw serialized items of one list, without mutating it."""
        ...

    @abstractmethod
    async def depth(self, state: QueueState = QueueState.WAITING) -> int:
        ...

    @abstractmethod
    async def recover_stuck(self) -> list[str]:
        """Append every processing item to the tail of waiting. Returns the raw items moved."""
        ...

    @abstractmethod
    async def flush(self) -> None:
        """Clear waiting and processing. Dead letters are kept."""
        ...

    async def depths(self) -> dict[str, int]:
        return {state.value: await self.depth(state) for state in QueueState}

    async def list_waiting(self, offset: int = 0, count: int = 10) -> list[Envelope]:
        envelopes = []
        for raw in await self.peek(QueueState.WAITING, offset, count):
            try:
                envelopes.append(decode_envelope(raw))
            except JobValidationError as e:
                logger.warning("undecodable_waiting_item", error=str(e))
        return envelopes

    def _dead_letter(self, envelope: Envelope, error: str) -> str:
        return DeadLetterEntry(
            stream_id=envelope.stream_id,
            body=envelope.body,
            error=error,
        ).to_json()


# ──────────────────────────────────────────────────────────────
#  Redis implementation
# ──────────────────────────────────────────────────────────────

class RedisQueueStore(QueueStore):
    """Production store backed by three Redis lists."""

    def __init__(self, config: QueueConfig = None, redis_client=None):
        self.config = config or QueueConfig(backend="redis")
        self._redis = redis_client
        self._keys = {state: self.config.key(state.value) for state in QueueState}

    async def connect(self):
        if self._redis is not None:
            return
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self.config.redis_url,
            decode_responses=True,
            max_connections=20,
        )
        async with self._errors("connect"):
            await self._redis.ping()
        logger.info("redis_queue_connected", queue=self.config.queue_name)

    async def close(self):
        if self._redis:
            await self._redis.aclose()

    @asynccontextmanager
    async def _errors(self, operation: str):
        try:
            yield
        except RedisError as e:
            logger.error("queue_store_error", operation=operation, error=str(e))
            raise StoreError(f"Queue {operation} failed: {e}", operation) from e

    def key(self, state: QueueState) -> str:
        return self._keys[state]

    async def enqueue(self, job: Job) -> int:
        envelope = Envelope(body=job)
        async with self._errors("enqueue"):
            depth = await self._redis.rpush(self.key(QueueState.WAITING), envelope.to_json())
        if not depth:
            raise StoreError("Queue enqueue was not acknowledged", "enqueue")
        logger.info("job_enqueued", job_id=job.identity(), depth=depth)
        return depth

    async def claim_next(self) -> Optional[Envelope]:
        waiting = self.key(QueueState.WAITING)
        processing = self.key(QueueState.PROCESSING)
        while True:
            async with self._errors("claim"):
                raw = await self._redis.lmove(waiting, processing, "LEFT", "RIGHT")
            if raw is None:
                return None
            try:
                envelope = decode_envelope(raw)
            except JobValidationError as e:
                # Undecodable items go straight to dead; keep looking for a real job.
                logger.error("poison_item_dead_lettered", error=str(e))
                async with self._errors("claim"):
                    pipe = self._redis.pipeline(transaction=True)
                    pipe.lrem(processing, 1, raw)
                    pipe.rpush(self.key(QueueState.DEAD), poison_entry(raw, str(e)))
                    await pipe.execute()
                continue
            logger.info("job_claimed", job_id=envelope.body.identity())
            return envelope

    async def ack_success(self, envelope: Envelope) -> None:
        async with self._errors("ack_success"):
            await self._redis.lrem(self.key(QueueState.PROCESSING), 1, envelope.raw)

    async def ack_failure(self, envelope: Envelope, error: str) -> None:
        async with self._errors("ack_failure"):
            pipe = self._redis.pipeline(transaction=True)
            pipe.lrem(self.key(QueueState.PROCESSING), 1, envelope.raw)
            pipe.rpush(self.key(QueueState.DEAD), self._dead_letter(envelope, error))
            await pipe.execute()
        logger.warning("job_moved_to_dead", job_id=envelope.body.identity(), error=error)

    async def peek(self, state: QueueState, offset: int = 0, count: int = 1) -> list[str]:
        if count <= 0:
            return []
        async with self._errors("peek"):
            return await self._redis.lrange(self.key(state), offset, offset + count - 1)

    async def depth(self, state: QueueState = QueueState.WAITING) -> int:
        async with self._errors("depth"):
            return await self._redis.llen(self.key(state))

    async def recover_stuck(self) -> list[str]:
        processing = self.key(QueueState.PROCESSING)
        waiting = self.key(QueueState.WAITING)
        moved: list[str] = []
        # One LMOVE per item: each step is atomic and order is preserved.
        # Processing is empty once the drain ends; a DEL here would drop concurrent claims.
        async with self._errors("recover_stuck"):
            while True:
                raw = await self._redis.lmove(processing, waiting, "LEFT", "RIGHT")
                if raw is None:
                    break
                moved.append(raw)
        logger.info("stuck_jobs_recovered", count=len(moved))
        return moved

    async def flush(self) -> None:
        async with self._errors("flush"):
            await self._redis.delete(
                self.key(QueueState.WAITING), self.key(QueueState.PROCESSING),
            )
        logger.warning("queue_flushed", queue=self.config.queue_name)


# ──────────────────────────────────────────────────────────────
#  In-memory implementation (development / tests)
# ──────────────────────────────────────────────────────────────

class InMemoryQueueStore(QueueStore):
    """
    Development/test store with the same list semantics as Redis.
    Items are kept serialized so the wire format is exercised.
    Single-process only.
    """

    def __init__(self):
        self._lists: dict[QueueState, deque[str]] = {state: deque() for state in QueueState}
        self._lock = asyncio.Lock()

    async def enqueue(self, job: Job) -> int:
        async with self._lock:
            self._lists[QueueState.WAITING].append(Envelope(body=job).to_json())
            depth = len(self._lists[QueueState.WAITING])
        logger.info("job_enqueued", job_id=job.identity(), depth=depth)
        return depth

    async def push_raw(self, state: QueueState, raw: str) -> int:
        """Append an already-serialized item, as a foreign producer would."""
        async with self._lock:
            self._lists[state].append(raw)
            return len(self._lists[state])

    async def claim_next(self) -> Optional[Envelope]:
        async with self._lock:
            while self._lists[QueueState.WAITING]:
                raw = self._lists[QueueState.WAITING].popleft()
                try:
                    envelope = decode_envelope(raw)
                except JobValidationError as e:
                    logger.error("poison_item_dead_lettered", error=str(e))
                    self._lists[QueueState.DEAD].append(poison_entry(raw, str(e)))
                    continue
                self._lists[QueueState.PROCESSING].append(raw)
                logger.info("job_claimed", job_id=envelope.body.identity())
                return envelope
        return None

    def _remove_processing(self, raw: str) -> None:
        try:
            self._lists[QueueState.PROCESSING].remove(raw)
        except ValueError:
            pass  # already recovered or flushed

    async def ack_success(self, envelope: Envelope) -> None:
        async with self._lock:
            self._remove_processing(envelope.raw)

    async def ack_failure(self, envelope: Envelope, error: str) -> None:
        async with self._lock:
            self._remove_processing(envelope.raw)
            self._lists[QueueState.DEAD].append(self._dead_letter(envelope, error))
        logger.warning("job_moved_to_dead", job_id=envelope.body.identity(), error=error)

    async def peek(self, state: QueueState, offset: int = 0, count: int = 1) -> list[str]:
        items = list(self._lists[state])
        return items[offset:offset + max(count, 0)]

    async def depth(self, state: QueueState = QueueState.WAITING) -> int:
        return len(self._lists[state])

    async def recover_stuck(self) -> list[str]:
        async with self._lock:
            stuck = self._lists[QueueState.PROCESSING]
            moved = list(stuck)
            self._lists[QueueState.WAITING].extend(moved)
            stuck.clear()
        logger.info("stuck_jobs_recovered", count=len(moved))
        return moved

    async def flush(self) -> None:
        async with self._lock:
            self._lists[QueueState.WAITING].clear()
            self._lists[QueueState.PROCESSING].clear()
        logger.warning("queue_flushed", queue="memory")


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[QueueStore] = None


def create_queue_store(config: QueueConfig = None) -> QueueStore:
    """Factory: create the appropriate store backend."""
    global _instance
    if _instance:
        return _instance

    config = config or QueueConfig()
    if config.backend == "redis":
        _instance = RedisQueueStore(config)
    else:
        _instance = InMemoryQueueStore()

    return _instance


def get_queue_store() -> QueueStore:
    """Return the singleton store instance."""
    global _instance
    if _instance is None:
        _instance = create_queue_store()
    return _instance
