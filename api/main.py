"""
FastAPI Application — worker, queue and diagnostics endpoints.

Provides:
- Direct worker invocation (one Job per request)
- Pull worker over the shared queue, with optional chaining
- Queue admission for the ingestion side
- Queue diagnostics, recovery and flush behind the shared secret
- Force-worker surface for end-to-end checks without a live Slack event
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from channels.base import MessagePlatform, RateLimitedDeliveryClient
from channels.slack_adapter import ResponseUrlPoster, create_slack_platform
from config.logging_conf import configure_logging
from config.settings import Settings, get_settings
from core.dispatcher import WorkerDispatcher, health_result, is_health_probe
from core.generation import AnswerEngine, create_answer_engine
from core.trigger import HttpWorkerTrigger, WorkerTrigger
from diagnostics.tools import QueueDiagnostics, UnknownOperationError, verify_secret
from job_queue.idempotency import IdempotencyGuard, IdempotencySweeper, create_idempotency_guard
from job_queue.store import QueueStore, StoreError, create_queue_store
from models.schemas import Job, JobValidationError

logger = structlog.get_logger()

CHAIN_LIMIT = 10


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    store: QueueStore
    guard: IdempotencyGuard
    engine: AnswerEngine
    platform: Optional[MessagePlatform]
    response_poster: ResponseUrlPoster
    dispatcher: WorkerDispatcher
    trigger: WorkerTrigger
    diagnostics: QueueDiagnostics
    sweeper: IdempotencySweeper


def build_services(settings: Settings) -> Services:
    store = create_queue_store(settings.queue)
    guard = create_idempotency_guard(settings.idempotency, redis_url=settings.queue.redis_url)
    delivery = RateLimitedDeliveryClient(
        throttle_interval=settings.delivery.throttle_interval_seconds,
        max_attempts=settings.delivery.max_attempts,
    )
    engine = create_answer_engine(settings.generation)
    platform = create_slack_platform(settings.delivery)
    poster = ResponseUrlPoster(timeout=settings.delivery.response_url_timeout)
    dispatcher = WorkerDispatcher(
        store, guard, delivery, engine,
        platform=platform,
        response_poster=poster,
        streaming=settings.streaming,
    )
    trigger = HttpWorkerTrigger(settings.public_base_url, settings.worker_secret)
    return Services(
        settings=settings,
        store=store,
        guard=guard,
        engine=engine,
        platform=platform,
        response_poster=poster,
        dispatcher=dispatcher,
        trigger=trigger,
        diagnostics=QueueDiagnostics(store, trigger, guard),
        sweeper=IdempotencySweeper(guard, settings.idempotency.sweep_interval_seconds),
    )


_settings_boot = get_settings()
configure_logging(_settings_boot.log_level, _settings_boot.log_format)
services = build_services(_settings_boot)


def get_services() -> Services:
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    await services.store.connect()
    await services.guard.connect()
    await services.sweeper.start_background()

    logger.info("answer_relay_started",
                queue_backend=type(services.store).__name__,
                guard_backend=type(services.guard).__name__,
                slack_client=services.platform is not None,
                streaming_enabled=services.settings.streaming.enabled)
    yield

    await services.sweeper.stop()
    await services.trigger.close()
    await services.response_poster.close()
    await services.engine.close()
    if services.platform:
        await services.platform.close()
    await services.guard.close()
    await services.store.close()
    logger.info("answer_relay_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="AnswerRelay API",
    description="Slack question queue and answer delivery worker",
    version="1.0.0",
    lifespan=lifespan,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.exception_handler(JobValidationError)
async def job_validation_handler(request: Request, exc: JobValidationError):
    logger.warning("job_rejected", path=request.url.path, problems=exc.problems)
    return JSONResponse(
        status_code=400,
        content={"error": "Missing required fields", "problems": exc.problems},
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("store_unavailable", path=request.url.path, operation=exc.operation, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"status": "error", "error": "Queue store unavailable", "operation": exc.operation},
    )


def require_secret(key: Optional[str], svc: Services) -> None:
    if not verify_secret(key, svc.settings.worker_secret):
        logger.warning("unauthorized_request")
        raise HTTPException(401, "Unauthorized")


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(400, "Request body must be valid JSON")


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health(svc: Services = Depends(get_services)):
    return {
        "status": "healthy",
        "timestamp": _now(),
        "queue_backend": type(svc.store).__name__,
        "slack_client": svc.platform is not None,
        "streaming_enabled": svc.settings.streaming.enabled,
    }


# ══════════════════════════════════════════════════════════════
#  WORKERS
# ══════════════════════════════════════════════════════════════

@app.post("/api/slack/worker")
async def direct_worker(request: Request, svc: Services = Depends(get_services)):
    """Process the Job carried in the request body."""
    if is_health_probe(request.query_params):
        return health_result().to_response()

    payload = await _json_body(request)
    result = await svc.dispatcher.dispatch(payload)
    return JSONResponse(result.to_response(), status_code=500 if result.failed else 200)


async def _drain_chain(dispatcher: WorkerDispatcher, limit: int = CHAIN_LIMIT) -> None:
    for _ in range(limit):
        try:
            result = await dispatcher.process_next()
        except StoreError as e:
            logger.error("chained_worker_failed", error=str(e))
            return
        if not result.remaining:
            return
    logger.info("chain_limit_reached", limit=limit)


async def _trigger_worker(trigger: WorkerTrigger, source: str) -> None:
    result = await trigger.trigger(source=source)
    if not result.triggered:
        logger.warning("background_trigger_failed", source=source, error=result.error)


@app.post("/api/slack/rag-worker")
async def pull_worker(
    request: Request,
    background_tasks: BackgroundTasks,
    key: Optional[str] = Query(None),
    chain: Optional[str] = Query(None),
    svc: Services = Depends(get_services),
):
    """Claim and process the next queued job."""
    if is_health_probe(request.query_params):
        return health_result().to_response()
    require_secret(key, svc)

    source = request.headers.get("X-Trigger-Source", "direct")
    logger.info("pull_worker_invoked", source=source)

    result = await svc.dispatcher.process_next()
    body = result.to_response()
    if chain == "1" and result.remaining:
        background_tasks.add_task(_drain_chain, svc.dispatcher)
        body["chained"] = True
    return body


@app.post("/api/slack/enqueue")
async def enqueue_job(
    request: Request,
    background_tasks: BackgroundTasks,
    key: Optional[str] = Query(None),
    trigger: Optional[str] = Query(None),
    svc: Services = Depends(get_services),
):
    """Admit a Job onto the waiting list."""
    require_secret(key, svc)
    job = Job.parse_payload(await _json_body(request))
    depth = await svc.store.enqueue(job)
    if trigger == "1":
        background_tasks.add_task(_trigger_worker, svc.trigger, "enqueue")
    return {"status": "queued", "jobId": job.identity(), "depth": depth}


# ══════════════════════════════════════════════════════════════
#  DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/api/slack/queue-diagnostic")
async def queue_diagnostic(
    key: Optional[str] = Query(None),
    mode: str = Query("standard"),
    svc: Services = Depends(get_services),
):
    require_secret(key, svc)
    report = await svc.diagnostics.inspect()
    return {"status": "success", "timestamp": _now(), **report, "diagnosticMode": mode}


@app.post("/api/slack/queue-diagnostic")
async def queue_operation(
    request: Request,
    key: Optional[str] = Query(None),
    svc: Services = Depends(get_services),
):
    require_secret(key, svc)
    body = await _json_body(request)
    operation = body.get("operation") if isinstance(body, dict) else None
    if not operation:
        return JSONResponse({"error": "Missing operation parameter"}, status_code=400)
    try:
        result = await svc.diagnostics.run_operation(operation)
    except UnknownOperationError:
        return JSONResponse({"error": "Invalid operation"}, status_code=400)
    logger.warning("queue_operation_executed", operation=operation)
    return {"status": "success", "result": result, "timestamp": _now()}


@app.get("/api/slack/force-worker")
async def force_worker(
    key: Optional[str] = Query(None),
    action: str = Query("check"),
    channel: Optional[str] = Query(None),
    svc: Services = Depends(get_services),
):
    require_secret(key, svc)
    queue_state = await svc.diagnostics.queue_state()

    if action == "create-job" and channel:
        injected = await svc.diagnostics.inject_test_job(channel)
        return {"status": "success", "action": "create-job", **injected, "queueState": queue_state}

    if action == "trigger-worker":
        triggered = await svc.trigger.trigger(source="force-worker")
        return {"status": "success", "action": "trigger-worker", **triggered.to_dict(),
                "queueState": queue_state}

    return {
        "status": "success",
        "action": "check",
        "queueState": queue_state,
        "usage": "Use ?action=create-job&channel=CHANNEL_ID to create a test job and trigger the worker",
    }
