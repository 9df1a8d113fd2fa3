"""
Worker triggers — ways to start a pull-worker run out of band.

Provides:
- HttpWorkerTrigger: POSTs to the deployed pull-worker endpoint
- InProcessWorkerTrigger: calls the dispatcher directly (dev / tests)
"""
from __future__ import annotations

import abc
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger()

WORKER_PATH = "/api/slack/rag-worker"


@dataclass
class TriggerResult:
    triggered: bool
    response: Optional[dict[str, Any]] = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"workerTriggered": self.triggered}
        if self.response is not None:
            data["workerResponse"] = self.response
        if self.error:
            data["error"] = self.error
        return data


class WorkerTrigger(abc.ABC):

    @abc.abstractmethod
    async def trigger(self, source: str = "manual") -> TriggerResult:
        ...

    async def close(self):
        pass


class HttpWorkerTrigger(WorkerTrigger):
    """Starts a worker run on a (possibly remote) deployment."""

    def __init__(self, base_url: str, secret: str, timeout: float = 30.0,
                 client: httpx.AsyncClient = None):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def trigger(self, source: str = "manual") -> TriggerResult:
        client = await self._get_client()
        url = f"{self.base_url}{WORKER_PATH}"
        try:
            response = await client.post(
                url,
                params={"key": self.secret},
                headers={"Content-Type": "application/json", "X-Trigger-Source": source},
                json={"type": source, "timestamp": int(time.time() * 1000)},
            )
        except httpx.HTTPError as e:
            logger.error("worker_trigger_failed", url=url, error=str(e))
            return TriggerResult(triggered=False, error=str(e))

        if response.status_code >= 400:
            logger.error("worker_trigger_rejected", url=url, status=response.status_code,
                         body=response.text[:200])
            return TriggerResult(triggered=False, error=f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:200]}
        logger.info("worker_triggered", url=url, source=source)
        return TriggerResult(triggered=True, response=body)

    async def close(self):
        if self.client:
            await self.client.aclose()


class InProcessWorkerTrigger(WorkerTrigger):
    """Runs the pull worker in the current process."""

    def __init__(self, dispatcher):
        self.dispatcher = dispatcher

    async def trigger(self, source: str = "manual") -> TriggerResult:
        logger.info("worker_triggered_in_process", source=source)
        result = await self.dispatcher.process_next()
        return TriggerResult(triggered=True, response=result.to_response())
