"""
Worker Dispatcher — runs one question-to-answer job end to end.

Per invocation:
  1. validate the Job (JobValidationError, no side effects)
  2. idempotency check, marking the job as seen before generation starts
  3. pick a dispatch mode (streaming / standard / response_url)
  4. generate and deliver, updating the placeholder in place when there is one
  5. on failure, put a warning in front of the user, then surface the error

The dispatcher keeps no state between invocations; the queue and the
idempotency guard are injected collaborators.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

import structlog
from structlog.contextvars import bound_contextvars

from channels.base import ChannelError, DeliveryError, MessagePlatform, RateLimitedDeliveryClient
from channels.slack_adapter import ResponseUrlPoster
from config.settings import StreamingConfig
from core.generation import AnswerEngine, GenerationError
from core.messages import ERROR_WARNING
from core.streaming import StreamingUpdateThrottler
from job_queue.idempotency import IdempotencyGuard
from job_queue.store import QueueStore, StoreError
from models.schemas import DispatchMode, DispatchResult, DispatchStatus, Job, QueueState

logger = structlog.get_logger()

HEALTH_PROBE_PARAMS = ("diagnostic", "health", "drain")


def is_health_probe(params: Mapping[str, Any]) -> bool:
    """Uptime probes carry ?diagnostic=1, ?health=1 or ?drain=1."""
    return any(str(params.get(name, "")) == "1" for name in HEALTH_PROBE_PARAMS)


def health_result() -> DispatchResult:
    return DispatchResult(
        status=DispatchStatus.HEALTHY,
        mode=DispatchMode.DIAGNOSTIC,
        message="Worker endpoint is functioning correctly",
    )


class WorkerDispatcher:

    def __init__(
        self,
        store: QueueStore,
        guard: IdempotencyGuard,
        delivery: RateLimitedDeliveryClient,
        engine: AnswerEngine,
        platform: Optional[MessagePlatform] = None,
        response_poster: Optional[ResponseUrlPoster] = None,
        streaming: StreamingConfig = None,
        throttler: Optional[StreamingUpdateThrottler] = None,
    ):
        self.store = store
        self.guard = guard
        self.delivery = delivery
        self.engine = engine
        self.platform = platform
        self.response_poster = response_poster
        self.streaming = streaming or StreamingConfig()
        if throttler is None and platform is not None:
            throttler = StreamingUpdateThrottler(
                delivery, platform,
                update_interval=self.streaming.update_interval_seconds,
                flush_interval=self.streaming.flush_interval_seconds,
            )
        self.throttler = throttler

    # ── Entry points ──────────────────────────────────────────

    async def dispatch(self, payload: Any) -> DispatchResult:
        """Direct invocation with an untrusted payload. Raises JobValidationError."""
        job = Job.parse_payload(payload)
        return await self.dispatch_job(job)

    async def dispatch_job(self, job: Job) -> DispatchResult:
        job_id = job.identity()
        with bound_contextvars(job_identity=job_id):
            logger.info("job_received",
                        channel_id=job.channel_id,
                        has_placeholder=bool(job.placeholder_message_id),
                        threaded=bool(job.thread_id),
                        question_len=len(job.question_text))

            mode = self.select_mode(job)
            if job.event_id and not await self.guard.should_process(job_id):
                logger.info("job_skipped_duplicate")
                return DispatchResult(
                    status=DispatchStatus.SKIPPED, mode=mode, job_id=job_id,
                    message="Job already processed",
                )

            with bound_contextvars(dispatch_mode=mode.value):
                try:
                    if mode == DispatchMode.STREAMING:
                        return await self._run_streaming(job, job_id)
                    return await self._run_standard(job, job_id, mode)
                except StoreError:
                    raise
                except Exception as e:
                    logger.error("dispatch_failed", error=str(e),
                                 error_type=type(e).__name__, exc_info=True)
                    return DispatchResult(
                        status=DispatchStatus.ERROR, mode=mode, job_id=job_id, error=str(e),
                    )

    async def process_next(self) -> DispatchResult:
        """Claim one job from the queue, run it and ack the outcome."""
        envelope = await self.store.claim_next()
        if envelope is None:
            logger.info("queue_empty")
            return DispatchResult(
                status=DispatchStatus.NO_JOBS, message="No jobs in queue", remaining=0,
            )

        result = await self.dispatch_job(envelope.body)
        if result.status in (DispatchStatus.ERROR, DispatchStatus.PARTIAL_SUCCESS):
            await self.store.ack_failure(envelope, result.error or result.status.value)
        else:
            await self.store.ack_success(envelope)

        result.remaining = await self.store.depth(QueueState.WAITING)
        logger.info("job_finished", status=result.status.value, remaining=result.remaining)
        return result

    # ── Mode selection ────────────────────────────────────────

    def streaming_allowed(self, job: Job) -> bool:
        return bool(
            job.placeholder_message_id
            and job.channel_id
            and self.platform is not None
            and self.throttler is not None
            and self.streaming.enabled
            and job.use_streaming
        )

    def select_mode(self, job: Job) -> DispatchMode:
        if self.streaming_allowed(job):
            return DispatchMode.STREAMING
        if self.platform is None and job.response_url:
            return DispatchMode.RESPONSE_URL
        return DispatchMode.STANDARD

    # ── Standard mode ─────────────────────────────────────────

    async def _run_standard(self, job: Job, job_id: str, mode: DispatchMode) -> DispatchResult:
        try:
            answer = await self.engine.generate(job.question_text)
            await self._deliver(job, answer, mode)
        except Exception as e:
            await self._fallback(job, e)
            raise
        logger.info("answer_delivered", answer_len=len(answer))
        return DispatchResult(status=DispatchStatus.SUCCESS, mode=mode, job_id=job_id)

    async def _deliver(self, job: Job, text: str, mode: DispatchMode) -> None:
        if mode == DispatchMode.RESPONSE_URL:
            await self._post_response_url(job, text)
            return

        if self.platform is None:
            raise DeliveryError("Slack client not configured and no response_url available")

        # placeholder first: an update needs no channel-level post permission
        if job.placeholder_message_id and job.channel_id:
            await self.delivery.call(self.platform.update_message, {
                "channel": job.channel_id,
                "ts": job.placeholder_message_id,
                "text": text,
            })
        elif job.channel_id:
            await self.delivery.call(self.platform.post_message, {
                "channel": job.channel_id,
                "text": text,
                "thread_ts": job.thread_reference(),
            })
        else:
            await self._post_response_url(job, text)

    async def _post_response_url(self, job: Job, text: str) -> None:
        if not job.response_url or self.response_poster is None:
            raise DeliveryError("No response_url route available for this job")
        await self.delivery.call(self.response_poster.post, {
            "response_url": job.response_url,
            "text": text,
            "replace_original": bool(job.placeholder_message_id),
        })

    # ── Streaming mode ────────────────────────────────────────

    async def _run_streaming(self, job: Job, job_id: str) -> DispatchResult:
        try:
            outcome = await self.throttler.run_streaming(
                self.engine.stream(job.question_text),
                job.channel_id,
                job.placeholder_message_id,
            )
            if outcome.completed and not outcome.content:
                raise GenerationError("Answer stream produced no content")
        except Exception as e:
            await self._fallback(job, e)
            raise

        if outcome.completed:
            logger.info("answer_streamed", updates=outcome.updates, answer_len=len(outcome.content))
            return DispatchResult(status=DispatchStatus.SUCCESS, mode=DispatchMode.STREAMING,
                                  job_id=job_id)

        if not outcome.notice_delivered:
            await self._fallback(job, outcome.error, placeholder_failed=True)

        status = DispatchStatus.PARTIAL_SUCCESS if outcome.partial else DispatchStatus.ERROR
        return DispatchResult(
            status=status,
            mode=DispatchMode.STREAMING,
            job_id=job_id,
            error=str(outcome.error) if outcome.error else None,
        )

    # ── Failure fallback ──────────────────────────────────────

    async def _fallback(self, job: Job, error: BaseException, placeholder_failed: bool = False) -> bool:
        """
        Best-effort warning to the user. Returns True if it was delivered.

        ``placeholder_failed`` skips the in-place update when that edit has
        already been refused, going straight to the response_url route.
        """
        logger.error("job_failed_notifying_user", error=str(error), error_type=type(error).__name__)
        try:
            if (job.placeholder_message_id and job.channel_id and self.platform is not None
                    and not placeholder_failed):
                await self.delivery.call(self.platform.update_message, {
                    "channel": job.channel_id,
                    "ts": job.placeholder_message_id,
                    "text": ERROR_WARNING,
                })
            elif job.response_url and self.response_poster is not None:
                await self.delivery.call(self.response_poster.post, {
                    "response_url": job.response_url,
                    "text": ERROR_WARNING,
                    "replace_original": bool(job.placeholder_message_id),
                })
            else:
                logger.warning("no_fallback_route")
                return False
        except ChannelError as e:
            failure = DeliveryError(f"Fallback delivery failed: {e}", channel=e.channel)
            logger.error("delivery_failed", error=str(failure), original_error=str(error))
            return False
        logger.info("fallback_delivered")
        return True
