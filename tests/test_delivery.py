"""
Tests for outbound delivery.

Covers:
  - RateLimitedDeliveryClient: fixed-interval retry on throttling only
  - SlackPlatform: Web API error translation
  - ResponseUrlPoster: payload shape and status handling
"""
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

import httpx
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_slack_response import AsyncSlackResponse

from channels.base import (
    DeliveryError, PlatformError, RateLimitedDeliveryClient, ThrottleError,
)
from channels.slack_adapter import ResponseUrlPoster, SlackPlatform, create_slack_platform
from config.settings import DeliveryConfig

from conftest import FakePlatform


# ══════════════════════════════════════════════════════════════
#  RATE-LIMITED DELIVERY CLIENT
# ══════════════════════════════════════════════════════════════

class TestRateLimitedDeliveryClient:
    @pytest.mark.asyncio
    async def test_success_first_try(self, no_sleep):
        platform = FakePlatform()
        client = RateLimitedDeliveryClient(sleep=no_sleep)
        ts = await client.call(platform.post_message, {"channel": "C1", "text": "hi"})
        assert ts == "1.000100"
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_throttle_with_fixed_interval(self, no_sleep):
        platform = FakePlatform(throttle_times=2)
        client = RateLimitedDeliveryClient(throttle_interval=1.1, max_attempts=3, sleep=no_sleep)

        await client.call(platform.post_message, {"channel": "C1", "text": "hi"})

        assert platform.calls == 3
        assert len(platform.posts) == 1
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.1, 1.1]
        assert client.throttled_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, no_sleep):
        platform = FakePlatform(throttle_times=10)
        client = RateLimitedDeliveryClient(max_attempts=3, sleep=no_sleep)

        with pytest.raises(DeliveryError) as exc:
            await client.call(platform.update_message, {"channel": "C1", "ts": "1.1", "text": "x"})

        assert exc.value.attempts == 3
        assert isinstance(exc.value.__cause__, ThrottleError)
        assert platform.calls == 3
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_per_call_attempt_override(self, no_sleep):
        platform = FakePlatform(throttle_times=10)
        client = RateLimitedDeliveryClient(max_attempts=3, sleep=no_sleep)
        with pytest.raises(DeliveryError):
            await client.call(platform.post_message, {"channel": "C1", "text": "x"}, max_attempts=1)
        assert platform.calls == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_throttle_error_not_retried(self, no_sleep):
        platform = FakePlatform(reject_posts=True)
        client = RateLimitedDeliveryClient(sleep=no_sleep)

        with pytest.raises(PlatformError):
            await client.call(platform.post_message, {"channel": "C404", "text": "x"})

        assert platform.calls == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_arbitrary_exceptions_propagate(self, no_sleep):
        op = AsyncMock(side_effect=KeyError("boom"))
        client = RateLimitedDeliveryClient(sleep=no_sleep)
        with pytest.raises(KeyError):
            await client.call(op, {})
        assert op.await_count == 1


# ══════════════════════════════════════════════════════════════
#  SLACK WEB API
# ══════════════════════════════════════════════════════════════

def slack_error(error: str, status: int = 200, headers: dict = None) -> SlackApiError:
    response = AsyncSlackResponse(
        client=None,
        http_verb="POST",
        api_url="https://slack.com/api/chat.postMessage",
        req_args={},
        data={"ok": False, "error": error},
        headers=headers or {},
        status_code=status,
    )
    return SlackApiError(f"The request to the Slack API failed: {error}", response)


class TestSlackPlatform:
    @pytest.fixture
    def web_client(self):
        client = MagicMock()
        client.chat_postMessage = AsyncMock(return_value={"ok": True, "ts": "1700000000.000200"})
        client.chat_update = AsyncMock(return_value={"ok": True})
        return client

    @pytest.mark.asyncio
    async def test_post_message_without_thread(self, web_client):
        platform = SlackPlatform(client=web_client)
        ts = await platform.post_message("C1", "X is Y.")
        assert ts == "1700000000.000200"
        web_client.chat_postMessage.assert_awaited_once_with(channel="C1", text="X is Y.")

    @pytest.mark.asyncio
    async def test_post_message_in_thread(self, web_client):
        platform = SlackPlatform(client=web_client)
        await platform.post_message("C1", "answer", thread_ts="111.222")
        web_client.chat_postMessage.assert_awaited_once_with(
            channel="C1", text="answer", thread_ts="111.222",
        )

    @pytest.mark.asyncio
    async def test_update_message(self, web_client):
        platform = SlackPlatform(client=web_client)
        await platform.update_message("C1", "333.444", "final")
        web_client.chat_update.assert_awaited_once_with(channel="C1", ts="333.444", text="final")

    @pytest.mark.asyncio
    async def test_ratelimited_code_maps_to_throttle(self, web_client):
        web_client.chat_update.side_effect = slack_error("ratelimited")
        platform = SlackPlatform(client=web_client)
        with pytest.raises(ThrottleError):
            await platform.update_message("C1", "1.1", "x")

    @pytest.mark.asyncio
    async def test_http_429_maps_to_throttle_with_retry_after(self, web_client):
        web_client.chat_postMessage.side_effect = slack_error(
            "ratelimited", status=429, headers={"Retry-After": "3"},
        )
        platform = SlackPlatform(client=web_client)
        with pytest.raises(ThrottleError) as exc:
            await platform.post_message("C1", "x")
        assert exc.value.retry_after == 3.0
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_other_errors_map_to_platform_error(self, web_client):
        web_client.chat_postMessage.side_effect = slack_error("channel_not_found")
        platform = SlackPlatform(client=web_client)
        with pytest.raises(PlatformError) as exc:
            await platform.post_message("C404", "x")
        assert exc.value.code == "channel_not_found"
        assert not exc.value.retryable

    def test_factory_requires_token(self):
        assert create_slack_platform(DeliveryConfig(bot_token="")) is None
        assert isinstance(create_slack_platform(DeliveryConfig(bot_token="xoxb-test")), SlackPlatform)


# ══════════════════════════════════════════════════════════════
#  RESPONSE URL
# ══════════════════════════════════════════════════════════════

def poster_with(handler) -> ResponseUrlPoster:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ResponseUrlPoster(client=client)


class TestResponseUrlPoster:
    @pytest.mark.asyncio
    async def test_posts_text(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        poster = poster_with(handler)
        await poster.post("https://hooks.slack.com/commands/1", "X is Y.")
        assert seen == [{"text": "X is Y."}]
        await poster.close()

    @pytest.mark.asyncio
    async def test_replace_original(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        poster = poster_with(handler)
        await poster.post("https://hooks.slack.com/commands/1", "done", replace_original=True)
        assert seen == [{"text": "done", "replace_original": True}]

    @pytest.mark.asyncio
    async def test_429_is_throttle(self):
        poster = poster_with(lambda request: httpx.Response(429, headers={"Retry-After": "1"}))
        with pytest.raises(ThrottleError):
            await poster.post("https://hooks.slack.com/commands/1", "x")

    @pytest.mark.asyncio
    async def test_404_is_platform_error(self):
        poster = poster_with(lambda request: httpx.Response(404, text="expired_url"))
        with pytest.raises(PlatformError) as exc:
            await poster.post("https://hooks.slack.com/commands/1", "x")
        assert exc.value.code == "404"

    @pytest.mark.asyncio
    async def test_transport_error_is_platform_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        poster = poster_with(handler)
        with pytest.raises(PlatformError):
            await poster.post("https://hooks.slack.com/commands/1", "x")
