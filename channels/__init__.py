"""Outbound delivery to Slack."""
from channels.base import (
    ChannelError,
    ThrottleError,
    PlatformError,
    DeliveryError,
    MessagePlatform,
    RateLimitedDeliveryClient,
)
from channels.slack_adapter import SlackPlatform, ResponseUrlPoster, create_slack_platform

__all__ = [
    "ChannelError", "ThrottleError", "PlatformError", "DeliveryError",
    "MessagePlatform", "RateLimitedDeliveryClient",
    "SlackPlatform", "ResponseUrlPoster", "create_slack_platform",
]
