"""
Answer engine clients.

The engine itself (retrieval + LLM) runs elsewhere; this module only talks
to it. Two call shapes are consumed:
  - generate(question) -> full answer text
  - stream(question)   -> async iterator of cumulative answer snapshots

Every failure, including running past the configured timeout, surfaces as
GenerationError.
"""
from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import GenerationConfig

logger = structlog.get_logger()


class GenerationError(Exception):
    """The answer engine failed or did not answer in time."""


class AnswerEngine(abc.ABC):
    """Abstract answer engine."""

    @abc.abstractmethod
    async def generate(self, question: str) -> str:
        ...

    @abc.abstractmethod
    def stream(self, question: str) -> AsyncIterator[str]:
        """
        Yield the answer as it grows. Each item is the full text so far,
        so the last item is the complete answer.
        """
        ...

    async def close(self):
        pass


class HttpAnswerEngine(AnswerEngine):
    """Client for the engine's HTTP API (`/ask-question`, `/ask-question-stream`)."""

    def __init__(self, config: GenerationConfig = None, client: httpx.AsyncClient = None):
        self.config = config or GenerationConfig()
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=5.0),
            )
        return self.client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _ask(self, question: str) -> dict:
        client = await self._get_client()
        response = await client.post("/ask-question", json={"question": question})
        response.raise_for_status()
        return response.json()

    async def generate(self, question: str) -> str:
        try:
            data = await asyncio.wait_for(self._ask(question), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GenerationError(
                f"Answer engine timed out after {self.config.timeout_seconds}s"
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Answer engine request failed: {e}") from e
        except ValueError as e:
            raise GenerationError(f"Answer engine returned invalid JSON: {e}") from e

        answer = data.get("answer") if isinstance(data, dict) else None
        if not answer:
            raise GenerationError("Answer engine returned no answer")
        logger.info("answer_generated", answer_len=len(answer))
        return answer

    async def stream(self, question: str) -> AsyncIterator[str]:
        client = await self._get_client()
        content = ""
        try:
            async with client.stream("POST", "/ask-question-stream",
                                     json={"question": question}) as response:
                response.raise_for_status()
                async for delta in response.aiter_text():
                    if not delta:
                        continue
                    content += delta
                    yield content
        except httpx.HTTPError as e:
            raise GenerationError(f"Answer stream failed: {e}") from e
        logger.info("answer_streamed", answer_len=len(content))

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockAnswerEngine(AnswerEngine):
    """
    Canned engine for development and tests.

    With ``error`` set, generate() raises and stream() raises after
    ``fail_after`` snapshots.
    """

    def __init__(self, answer: str = "This is a mock answer.", error: Exception = None,
                 fail_after: int = 0):
        self.answer = answer
        self.error = error
        self.fail_after = fail_after
        self.questions: list[str] = []

    async def generate(self, question: str) -> str:
        self.questions.append(question)
        if self.error:
            raise self.error
        return self.answer

    async def stream(self, question: str) -> AsyncIterator[str]:
        self.questions.append(question)
        words = self.answer.split(" ")
        for i in range(1, len(words) + 1):
            if self.error and i > self.fail_after:
                raise self.error
            yield " ".join(words[:i])
        if self.error:
            raise self.error


def create_answer_engine(config: GenerationConfig = None) -> AnswerEngine:
    """Factory: create the configured engine client."""
    config = config or GenerationConfig()
    if config.backend == "mock":
        return MockAnswerEngine()
    return HttpAnswerEngine(config)
