"""
Diagnostics & Recovery Tools for the job queue.

Provides:
- QueueDiagnostics.inspect(): depths, head-of-queue sample, dead-letter sample
- validate_timestamps(): Slack ``<seconds>.<fraction>`` shape check per field
- recover() / flush(): operator remediation
- inject_test_job(): synthetic job plus an out-of-band worker trigger
- verify_secret(): shared-secret gate for everything above

Nothing here mutates the queue except recover(), flush() and
inject_test_job(); callers must gate all of them behind verify_secret().
"""
from __future__ import annotations

import hmac
import json
import time
from typing import Any, Optional

import structlog

from core.messages import TEST_QUESTION
from core.trigger import WorkerTrigger
from job_queue.idempotency import IdempotencyGuard
from job_queue.store import QueueStore
from models.schemas import Job, JobValidationError, QueueState, decode_envelope

logger = structlog.get_logger()

SAMPLE_TEXT_LIMIT = 50
PREVIEW_TEXT_LIMIT = 30
DEAD_SAMPLE_LIMIT = 3
PREVIEW_LIMIT = 5

OPERATIONS = ("flush_queue", "recover_stuck_jobs")


class UnknownOperationError(ValueError):
    pass


def verify_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison. An unset secret never matches."""
    if not expected or provided is None:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def truncate(text: Optional[str], limit: int) -> str:
    if text is None:
        return "undefined"
    return text[:limit] + ("..." if len(text) > limit else "")


def timestamp_format(value: Optional[str]) -> str:
    if not value:
        return "not_present"
    return "valid" if "." in value else "invalid"


def validate_timestamps(job: Job) -> dict[str, Any]:
    checks = {
        "eventId": timestamp_format(job.event_id),
        "threadId": timestamp_format(job.thread_id),
        "placeholderMessageId": timestamp_format(job.placeholder_message_id),
    }
    return {
        "eventId": job.event_id,
        "threadId": job.thread_id,
        "placeholderMessageId": job.placeholder_message_id,
        "formats": checks,
        "validated": "invalid" not in checks.values(),
    }


class QueueDiagnostics:

    def __init__(self, store: QueueStore, trigger: Optional[WorkerTrigger] = None,
                 guard: Optional[IdempotencyGuard] = None):
        self.store = store
        self.trigger = trigger
        self.guard = guard

    # ── Inspect ───────────────────────────────────────────────

    async def inspect(self) -> dict[str, Any]:
        depths = await self.store.depths()
        return {
            "queueHealth": depths,
            "sampleJob": await self.sample_waiting(),
            "deadLetterJobs": await self.sample_dead(),
        }

    async def sample_waiting(self) -> Optional[dict[str, Any]]:
        items = await self.store.peek(QueueState.WAITING, 0, 1)
        if not items:
            return None
        try:
            job = decode_envelope(items[0]).body
        except JobValidationError as e:
            logger.warning("sample_job_undecodable", error=str(e))
            return {"error": "Failed to parse job", "details": str(e)}

        original = job.to_wire()
        original["questionText"] = truncate(job.question_text, SAMPLE_TEXT_LIMIT)
        return {"original": original, "timestamps": validate_timestamps(job)}

    async def sample_dead(self, limit: int = DEAD_SAMPLE_LIMIT) -> list[dict[str, Any]]:
        samples = []
        for raw in await self.store.peek(QueueState.DEAD, 0, limit):
            try:
                entry = json.loads(raw)
            except ValueError:
                samples.append({"parseError": "Failed to parse dead letter queue item"})
                continue
            body = entry.get("body") if isinstance(entry, dict) else None
            if isinstance(body, dict):
                body = {**body, "questionText": truncate(body.get("questionText"), SAMPLE_TEXT_LIMIT)}
                entry = {**entry, "body": body}
            samples.append(entry)
        return samples

    async def queue_state(self, limit: int = PREVIEW_LIMIT) -> dict[str, Any]:
        size = await self.store.depth(QueueState.WAITING)
        items = []
        for raw in await self.store.peek(QueueState.WAITING, 0, limit):
            try:
                job = decode_envelope(raw).body
            except JobValidationError:
                items.append({"rawItem": truncate(raw, 100)})
                continue
            items.append({
                "userId": job.user_id,
                "channelId": job.channel_id,
                "questionTextPreview": truncate(job.question_text, PREVIEW_TEXT_LIMIT),
                "timestamp": job.event_id,
            })
        return {"queueSize": size, "items": items}

    # ── Remediation ───────────────────────────────────────────

    async def recover(self) -> dict[str, Any]:
        """
        Hand every processing item back to waiting.

        Each recovered job was marked by the idempotency guard when it was
        first claimed, so its mark is released; otherwise the next claim would
        skip it and the job would be acked without ever being answered.
        """
        moved = await self.store.recover_stuck()
        released = 0
        if self.guard is not None:
            for raw in moved:
                try:
                    identity = decode_envelope(raw).body.identity()
                except JobValidationError as e:
                    logger.warning("recovered_item_undecodable", error=str(e))
                    continue
                if await self.guard.release(identity):
                    released += 1
        logger.warning("stuck_jobs_requeued", count=len(moved), marks_released=released)

        result: dict[str, Any] = {
            "operation": "recover_stuck_jobs",
            "status": "success",
            "jobsRecovered": len(moved),
        }
        if not moved:
            result["message"] = "No stuck jobs found"
        return result

    async def flush(self) -> dict[str, Any]:
        await self.store.flush()
        return {"operation": "flush_queue", "status": "success"}

    async def run_operation(self, operation: str) -> dict[str, Any]:
        if operation == "flush_queue":
            return await self.flush()
        if operation == "recover_stuck_jobs":
            return await self.recover()
        raise UnknownOperationError(f"Invalid operation: {operation}")

    # ── Manual injection ──────────────────────────────────────

    async def inject_test_job(self, channel_id: str, trigger: bool = True) -> dict[str, Any]:
        job = Job(
            question_text=TEST_QUESTION,
            channel_id=channel_id,
            user_id="force-worker",
            event_id=f"{time.time():.6f}",
        )
        depth = await self.store.enqueue(job)
        logger.info("test_job_injected", channel_id=channel_id, depth=depth)

        result: dict[str, Any] = {"job": job.to_wire(), "depth": depth}
        if trigger and self.trigger is not None:
            result.update((await self.trigger.trigger(source="force-worker")).to_dict())
        return result
