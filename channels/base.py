"""
Delivery base infrastructure for posting answers back to the chat platform.

Provides:
- ChannelError: structured error hierarchy (throttle vs. rejection vs. exhausted)
- MessagePlatform: the two outbound operations the worker needs
- RateLimitedDeliveryClient: fixed-interval retry on throttling, nothing else
"""
from __future__ import annotations

import abc
import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all delivery operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ThrottleError(ChannelError):
    """The platform refused the call because of its per-destination rate limit."""

    def __init__(self, channel: str = "", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {channel or 'destination'}", channel, retryable=True)


class PlatformError(ChannelError):
    """The platform rejected the call for a reason other than throttling."""

    def __init__(self, message: str, channel: str = "", code: str = ""):
        self.code = code
        super().__init__(message, channel, retryable=False)


class DeliveryError(ChannelError):
    """Delivery gave up: attempts exhausted, or no way left to reach the user."""

    def __init__(self, message: str, channel: str = "", attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, channel, retryable=False)


# ══════════════════════════════════════════════════════════════
#  PLATFORM INTERFACE
# ══════════════════════════════════════════════════════════════

class MessagePlatform(abc.ABC):
    """
    Outbound operations against the messaging platform.

    Implementations must raise ThrottleError for rate-limit rejections and
    PlatformError for everything else, so callers never inspect messages.
    """

    @abc.abstractmethod
    async def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> str:
        """Post a new message. Returns the platform's message reference."""
        ...

    @abc.abstractmethod
    async def update_message(self, channel: str, ts: str, text: str) -> None:
        """Replace the text of an existing message."""
        ...

    async def close(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  RATE-LIMITED DELIVERY CLIENT
# ══════════════════════════════════════════════════════════════

class RateLimitedDeliveryClient:
    """
    Wraps every outbound platform call.

    On ThrottleError: sleep a fixed interval (slightly over the platform's
    one-message-per-second-per-channel limit) and try again, up to
    max_attempts calls in total, then raise DeliveryError.
    Any other error propagates immediately.
    """

    def __init__(
        self,
        throttle_interval: float = 1.1,
        max_attempts: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.throttle_interval = throttle_interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.throttled_count = 0

    async def call(
        self,
        operation: Callable[..., Awaitable[Any]],
        params: dict[str, Any],
        max_attempts: Optional[int] = None,
    ) -> Any:
        attempts = max(1, max_attempts or self.max_attempts)
        op_name = getattr(operation, "__name__", "operation")
        last_error: Optional[ThrottleError] = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation(**params)
            except ThrottleError as e:
                last_error = e
                self.throttled_count += 1
                logger.warning("delivery_throttled",
                               operation=op_name,
                               channel=e.channel,
                               attempt=attempt,
                               max_attempts=attempts)
                if attempt < attempts:
                    await self._sleep(self.throttle_interval)

        raise DeliveryError(
            f"{op_name} still throttled after {attempts} attempts",
            channel=last_error.channel if last_error else "",
            attempts=attempts,
        ) from last_error
