"""Tests for the answer engine clients."""
import asyncio
import json
import pytest

import httpx

from config.settings import GenerationConfig
from core.generation import (
    GenerationError, HttpAnswerEngine, MockAnswerEngine, create_answer_engine,
)


def engine_with(handler, timeout: float = 45.0) -> HttpAnswerEngine:
    client = httpx.AsyncClient(base_url="http://engine.test/api",
                               transport=httpx.MockTransport(handler))
    return HttpAnswerEngine(GenerationConfig(base_url="http://engine.test/api",
                                             timeout_seconds=timeout), client=client)


class TestHttpAnswerEngine:
    @pytest.mark.asyncio
    async def test_generate(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"answer": "X is Y."})

        engine = engine_with(handler)
        assert await engine.generate("What is X?") == "X is Y."
        assert seen == [("/api/ask-question", {"question": "What is X?"})]
        await engine.close()

    @pytest.mark.asyncio
    async def test_http_error_is_generation_error(self):
        engine = engine_with(lambda request: httpx.Response(500, json={"error": "boom"}))
        with pytest.raises(GenerationError):
            await engine.generate("Q")

    @pytest.mark.asyncio
    async def test_missing_answer_is_generation_error(self):
        engine = engine_with(lambda request: httpx.Response(200, json={"result": "?"}))
        with pytest.raises(GenerationError):
            await engine.generate("Q")

    @pytest.mark.asyncio
    async def test_timeout_is_generation_error(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"answer": "late"})

        engine = engine_with(handler, timeout=0.05)
        with pytest.raises(GenerationError, match="timed out"):
            await engine.generate("Q")

    @pytest.mark.asyncio
    async def test_stream_yields_cumulative_text(self):
        async def body():
            for part in (b"X ", b"is ", b"Y."):
                yield part

        def handler(request: httpx.Request):
            assert request.url.path == "/api/ask-question-stream"
            return httpx.Response(200, content=body())

        engine = engine_with(handler)
        snapshots = [s async for s in engine.stream("What is X?")]
        assert snapshots[-1] == "X is Y."
        assert all(b.startswith(a) for a, b in zip(snapshots, snapshots[1:]))

    @pytest.mark.asyncio
    async def test_stream_http_error(self):
        engine = engine_with(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(GenerationError):
            async for _ in engine.stream("Q"):
                pass


class TestMockAnswerEngine:
    @pytest.mark.asyncio
    async def test_stream_grows_word_by_word(self):
        engine = MockAnswerEngine(answer="one two three")
        assert [s async for s in engine.stream("Q")] == ["one", "one two", "one two three"]

    @pytest.mark.asyncio
    async def test_stream_fails_after(self):
        engine = MockAnswerEngine(answer="one two three", error=GenerationError("x"), fail_after=2)
        seen = []
        with pytest.raises(GenerationError):
            async for s in engine.stream("Q"):
                seen.append(s)
        assert seen == ["one", "one two"]


def test_factory():
    assert isinstance(create_answer_engine(GenerationConfig(backend="mock")), MockAnswerEngine)
    assert isinstance(create_answer_engine(GenerationConfig(backend="http")), HttpAnswerEngine)
