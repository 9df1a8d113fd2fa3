"""
Core data models for the answer relay.
These are the universal types shared across all modules.

Wire format is camelCase JSON (what the ingestion side writes into the
queue); the Python side uses snake_case attributes. Older field names
written by the ingestion side (threadTs, eventTs, stub_ts, ...) are
still accepted on input.
"""
from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator,
    model_validator,
)


class JobValidationError(ValueError):
    """A Job (or a stored item claiming to be one) is malformed or incomplete."""

    def __init__(self, message: str, problems: list[str] = None):
        self.problems = problems or []
        super().__init__(message)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelKind(str, Enum):
    CHANNEL = "channel"
    GROUP = "group"
    IM = "im"
    MPIM = "mpim"

    @property
    def is_direct(self) -> bool:
        return self in (ChannelKind.IM, ChannelKind.MPIM)


class QueueState(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    DEAD = "dead"


class DispatchStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    SKIPPED = "skipped"
    ERROR = "error"
    NO_JOBS = "no_jobs"
    HEALTHY = "healthy"


class DispatchMode(str, Enum):
    STANDARD = "standard"
    STREAMING = "streaming"
    RESPONSE_URL = "response_url"
    DIAGNOSTIC = "diagnostic"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Job: one question-to-answer unit of work
# ──────────────────────────────────────────────────────────────

class Job(BaseModel):
    """A question waiting to be answered in a Slack conversation."""
    model_config = ConfigDict(populate_by_name=True)

    question_text: str = Field(
        validation_alias=AliasChoices("questionText", "question_text"),
        serialization_alias="questionText",
    )
    channel_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("channelId", "channel_id"),
        serialization_alias="channelId",
    )
    response_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("responseUrl", "response_url"),
        serialization_alias="responseUrl",
    )
    thread_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("threadId", "threadTs", "thread_id", "thread_ts"),
        serialization_alias="threadId",
    )
    channel_type: ChannelKind = Field(
        default=ChannelKind.CHANNEL,
        validation_alias=AliasChoices("channelType", "channel_type"),
        serialization_alias="channelType",
    )
    placeholder_message_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "placeholderMessageId", "stub_ts", "stubTs", "placeholder_message_id",
        ),
        serialization_alias="placeholderMessageId",
    )
    event_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("eventId", "eventTs", "event_id", "event_ts"),
        serialization_alias="eventId",
    )
    use_streaming: bool = Field(
        default=False,
        validation_alias=AliasChoices("useStreaming", "use_streaming"),
        serialization_alias="useStreaming",
    )
    user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userId", "user_id"),
        serialization_alias="userId",
    )

    @field_validator("question_text")
    @classmethod
    def _question_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("questionText must be non-empty")
        return v

    @field_validator("channel_type", mode="before")
    @classmethod
    def _default_channel_type(cls, v: Any) -> Any:
        return v or ChannelKind.CHANNEL

    @model_validator(mode="after")
    def _has_delivery_target(self) -> "Job":
        if not self.channel_id and not self.response_url:
            raise ValueError("either channelId or responseUrl is required")
        return self

    # ── Derived values ────────────────────────────────────────

    @property
    def conversation_key(self) -> str:
        return self.thread_id or self.channel_id or self.response_url or ""

    def identity(self) -> str:
        """Stable job identity: hash of (thread or channel, event id)."""
        raw = f"{self.conversation_key}-{self.event_id or ''}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    def thread_reference(self) -> Optional[str]:
        """Thread to reply in; direct conversations are never threaded."""
        if self.thread_id and not self.channel_type.is_direct:
            return self.thread_id
        return None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def parse_payload(cls, payload: Any) -> "Job":
        """Validate an untrusted payload, raising JobValidationError."""
        if not isinstance(payload, dict):
            raise JobValidationError("Job payload must be a JSON object")
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc']) or 'job'}: {err['msg']}"
                for err in e.errors()
            ]
            raise JobValidationError("Missing or invalid job fields", problems) from e


# ──────────────────────────────────────────────────────────────
#  Persisted forms
# ──────────────────────────────────────────────────────────────

class Envelope(BaseModel):
    """A Job plus queue bookkeeping, as stored in the waiting/processing lists."""
    model_config = ConfigDict(populate_by_name=True)

    body: Job
    enqueued_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("enqueuedAt", "enqueued_at"),
        serialization_alias="enqueuedAt",
    )
    stream_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("streamId", "stream_id"),
        serialization_alias="streamId",
    )
    # serialized form as read from the store; needed to remove it again
    _raw: Optional[str] = PrivateAttr(default=None)

    @property
    def raw(self) -> str:
        return self._raw if self._raw is not None else self.to_json()

    def to_json(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["body"] = self.body.to_wire()
        return json.dumps(data)


class DeadLetterEntry(BaseModel):
    """A job that failed processing, kept for inspection only."""
    model_config = ConfigDict(populate_by_name=True)

    stream_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("streamId", "stream_id"),
        serialization_alias="streamId",
    )
    body: Job
    error: str
    timestamp: datetime = Field(default_factory=utc_now)

    def to_json(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["body"] = self.body.to_wire()
        return json.dumps(data)


def decode_envelope(raw: Union[str, bytes, dict[str, Any]]) -> Envelope:
    """
    Decode a stored queue item into the canonical Envelope.

    Accepts either the envelope shape ``{"body": {...}, ...}`` or a bare
    Job object (written directly by older producers). Anything else is
    rejected with JobValidationError.
    """
    text = None
    if isinstance(raw, (str, bytes)):
        text = raw.decode() if isinstance(raw, bytes) else raw
        try:
            raw = json.loads(text)
        except ValueError as e:
            raise JobValidationError(f"Queue item is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise JobValidationError("Queue item must be a JSON object")

    if isinstance(raw.get("body"), dict):
        job = Job.parse_payload(raw["body"])
        try:
            envelope = Envelope.model_validate({**raw, "body": job})
        except ValidationError as e:
            raise JobValidationError("Invalid envelope metadata", [str(e)]) from e
    elif any(k in raw for k in ("questionText", "question_text")):
        envelope = Envelope(body=Job.parse_payload(raw))
    else:
        raise JobValidationError("Queue item is neither an envelope nor a job")

    envelope._raw = text
    return envelope


# ──────────────────────────────────────────────────────────────
#  Dispatch result
# ──────────────────────────────────────────────────────────────

class DispatchResult(BaseModel):
    """Structured outcome of one worker invocation."""
    status: DispatchStatus
    mode: Optional[DispatchMode] = None
    job_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    remaining: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.status == DispatchStatus.ERROR

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
