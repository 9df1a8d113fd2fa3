"""
Streaming Update Throttler.

Edits a placeholder message in place while the answer is being generated.
Slack rejects edits to the same message more often than about once a
second, so updates are spaced by ``update_interval`` and the answer is
settled with one final flush once the stream ends.

Chunks are cumulative: each one is the whole answer so far.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import structlog

from channels.base import ChannelError, MessagePlatform, RateLimitedDeliveryClient
from core.messages import ERROR_WARNING, INCOMPLETE_NOTE, THINKING_SENTINEL

logger = structlog.get_logger()


@dataclass
class StreamOutcome:
    completed: bool
    content: str = ""
    updates: int = 0
    error: Optional[BaseException] = None
    notice_delivered: bool = False

    @property
    def partial(self) -> bool:
        """Stream broke off after some content was captured."""
        return not self.completed and bool(self.content)


class StreamingUpdateThrottler:

    def __init__(
        self,
        delivery: RateLimitedDeliveryClient,
        platform: MessagePlatform,
        update_interval: float = 2.0,
        flush_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.delivery = delivery
        self.platform = platform
        self.update_interval = update_interval
        self.flush_interval = flush_interval
        self._clock = clock
        self._sleep = sleep

    async def _update(self, channel: str, ts: str, text: str) -> None:
        await self.delivery.call(
            self.platform.update_message, {"channel": channel, "ts": ts, "text": text},
        )

    async def run_streaming(self, chunks: AsyncIterator[str], channel: str, ts: str) -> StreamOutcome:
        """
        Consume the chunk stream, editing message ``ts`` in ``channel``.

        Mid-stream update failures are logged and streaming continues.
        If the stream itself fails, the captured content is delivered with
        an incomplete-answer note, or the standard warning if nothing was
        captured. A failure of the final flush propagates to the caller.
        """
        last_update = self._clock()
        latest = ""
        sent = ""
        updates = 0

        try:
            async for chunk in chunks:
                if not chunk or chunk.strip() == THINKING_SENTINEL:
                    continue
                latest = chunk
                now = self._clock()
                if now - last_update < self.update_interval:
                    continue
                try:
                    await self._update(channel, ts, chunk)
                except ChannelError as e:
                    logger.warning("stream_update_failed", error=str(e), content_len=len(chunk))
                    continue
                last_update = now
                sent = chunk
                updates += 1
                logger.debug("stream_update_sent", content_len=len(chunk))
        except Exception as e:
            logger.error("stream_failed", error=str(e), captured_len=len(latest), exc_info=True)
            text = latest + INCOMPLETE_NOTE if latest else ERROR_WARNING
            delivered = False
            try:
                await self._update(channel, ts, text)
                delivered = True
            except ChannelError as notice_error:
                logger.error("stream_failure_notice_failed", error=str(notice_error))
            return StreamOutcome(
                completed=False, content=latest, updates=updates, error=e,
                notice_delivered=delivered,
            )

        if latest and latest != sent:
            wait = self.flush_interval - (self._clock() - last_update)
            if wait > 0:
                await self._sleep(wait)
            await self._update(channel, ts, latest)
            updates += 1
            logger.info("stream_final_flush", content_len=len(latest))

        return StreamOutcome(completed=True, content=latest, updates=updates)
