"""
Configuration loader for the answer relay.
Reads settings from YAML file with environment variable substitution,
then applies the deployment's environment overrides.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "slack-message-queue"

    def key(self, state: str) -> str:
        return f"queue:{self.queue_name}:{state}"


@dataclass
class IdempotencyConfig:
    backend: str = "memory"             # "memory" is per-process, "redis" is shared
    retention_seconds: int = 3600
    sweep_interval_seconds: int = 900
    key_prefix: str = "idempotency"


@dataclass
class DeliveryConfig:
    bot_token: str = ""
    max_attempts: int = 3
    throttle_interval_seconds: float = 1.1  # Slack allows ~1 msg/sec per channel
    response_url_timeout: float = 10.0


@dataclass
class StreamingConfig:
    enabled: bool = False
    update_interval_seconds: float = 2.0
    flush_interval_seconds: float = 1.0


@dataclass
class GenerationConfig:
    backend: str = "http"               # "http" | "mock"
    base_url: str = "http://localhost:3000/api"
    timeout_seconds: float = 45.0


@dataclass
class Settings:
    app_name: str = "AnswerRelay"
    debug: bool = False
    worker_secret: str = ""
    public_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    log_format: str = "console"         # "console" | "json"
    queue: QueueConfig = field(default_factory=QueueConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(settings: Settings) -> None:
    env = os.environ
    if env.get("SLACK_BOT_TOKEN"):
        settings.delivery.bot_token = env["SLACK_BOT_TOKEN"]
    if env.get("REDIS_URL"):
        settings.queue.redis_url = env["REDIS_URL"]
        settings.queue.backend = "redis"
        settings.idempotency.backend = "redis"
    if env.get("WORKER_SECRET_KEY"):
        settings.worker_secret = env["WORKER_SECRET_KEY"]
    if "ENABLE_STREAMING" in env:
        settings.streaming.enabled = _as_bool(env["ENABLE_STREAMING"])
    if env.get("ANSWER_ENGINE_URL"):
        settings.generation.base_url = env["ANSWER_ENGINE_URL"]
    if env.get("PUBLIC_BASE_URL"):
        settings.public_base_url = env["PUBLIC_BASE_URL"]
    if env.get("LOG_LEVEL"):
        settings.log_level = env["LOG_LEVEL"].upper()
    if env.get("LOG_FORMAT"):
        settings.log_format = env["LOG_FORMAT"]


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then environment overrides."""
    global _settings

    load_dotenv()

    if config_path is None:
        config_path = os.environ.get(
            "ANSWER_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.worker_secret = raw.get("worker_secret", settings.worker_secret)
        settings.public_base_url = raw.get("public_base_url", settings.public_base_url)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.log_format = raw.get("log_format", settings.log_format)

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                backend=q.get("backend", "memory"),
                redis_url=q.get("redis_url", "redis://localhost:6379"),
                queue_name=q.get("queue_name", "slack-message-queue"),
            )

        if "idempotency" in raw:
            idem = raw["idempotency"]
            settings.idempotency = IdempotencyConfig(
                backend=idem.get("backend", "memory"),
                retention_seconds=int(idem.get("retention_seconds", 3600)),
                sweep_interval_seconds=int(idem.get("sweep_interval_seconds", 900)),
                key_prefix=idem.get("key_prefix", "idempotency"),
            )

        if "delivery" in raw:
            d = raw["delivery"]
            settings.delivery = DeliveryConfig(
                bot_token=d.get("bot_token", ""),
                max_attempts=int(d.get("max_attempts", 3)),
                throttle_interval_seconds=float(d.get("throttle_interval_seconds", 1.1)),
                response_url_timeout=float(d.get("response_url_timeout", 10.0)),
            )

        if "streaming" in raw:
            s = raw["streaming"]
            settings.streaming = StreamingConfig(
                enabled=_as_bool(s.get("enabled", False)),
                update_interval_seconds=float(s.get("update_interval_seconds", 2.0)),
                flush_interval_seconds=float(s.get("flush_interval_seconds", 1.0)),
            )

        if "generation" in raw:
            g = raw["generation"]
            settings.generation = GenerationConfig(
                backend=g.get("backend", "http"),
                base_url=g.get("base_url", settings.generation.base_url),
                timeout_seconds=float(g.get("timeout_seconds", 45.0)),
            )

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
