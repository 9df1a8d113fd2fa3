"""
Slack delivery adapters.

Provides:
- SlackPlatform: chat.postMessage / chat.update over the Web API
- ResponseUrlPoster: posts to a slash-command response_url when no bot
  token is configured (or as the last-resort error channel)

Both translate platform failures into the typed errors from channels.base;
rate limiting is recognised from the HTTP status / error code, never from
free-text messages.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from channels.base import MessagePlatform, PlatformError, ThrottleError
from config.settings import DeliveryConfig

logger = structlog.get_logger()

RATE_LIMIT_CODES = {"ratelimited", "rate_limited"}


def _retry_after(headers: Any) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class SlackPlatform(MessagePlatform):
    """Bot-token backed Slack Web API client."""

    def __init__(self, token: str = "", client: AsyncWebClient = None):
        self._client = client or AsyncWebClient(token=token)

    def _translate(self, error: SlackApiError, channel: str) -> Exception:
        response = error.response
        code = ""
        status = None
        headers = None
        if response is not None:
            status = getattr(response, "status_code", None)
            headers = getattr(response, "headers", None)
            try:
                code = response.get("error", "") or ""
            except AttributeError:
                code = ""
        if status == 429 or code in RATE_LIMIT_CODES:
            return ThrottleError(channel, retry_after=_retry_after(headers))
        return PlatformError(f"Slack API error: {code or error}", channel, code=code)

    async def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> str:
        params: dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            params["thread_ts"] = thread_ts
        try:
            response = await self._client.chat_postMessage(**params)
        except SlackApiError as e:
            raise self._translate(e, channel) from e
        logger.info("slack_message_posted", channel=channel, threaded=bool(thread_ts))
        return response.get("ts", "")

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        try:
            await self._client.chat_update(channel=channel, ts=ts, text=text)
        except SlackApiError as e:
            raise self._translate(e, channel) from e
        logger.info("slack_message_updated", channel=channel, ts=ts, text_len=len(text))


class ResponseUrlPoster:
    """Posts a message body to a Slack response_url."""

    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient = None):
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def post(self, response_url: str, text: str, replace_original: bool = False) -> None:
        payload: dict[str, Any] = {"text": text}
        if replace_original:
            payload["replace_original"] = True

        client = await self._get_client()
        try:
            response = await client.post(response_url, json=payload)
        except httpx.HTTPError as e:
            raise PlatformError(f"response_url request failed: {e}", "response_url") from e

        if response.status_code == 429:
            raise ThrottleError("response_url", retry_after=_retry_after(response.headers))
        if response.status_code >= 400:
            body = response.text[:200]
            logger.error("response_url_rejected", status=response.status_code, body=body)
            raise PlatformError(
                f"response_url returned {response.status_code}: {body}",
                "response_url",
                code=str(response.status_code),
            )
        logger.info("response_url_posted", status=response.status_code, text_len=len(text))

    async def close(self):
        if self._client:
            await self._client.aclose()


def create_slack_platform(config: DeliveryConfig = None) -> Optional[SlackPlatform]:
    """Factory: a Web API client, or None when no bot token is configured."""
    config = config or DeliveryConfig()
    if not config.bot_token:
        logger.warning("slack_bot_token_missing", fallback="response_url")
        return None
    return SlackPlatform(token=config.bot_token)
