# symphony/core/envelope.py
"""
Envelope and type model.

A ``Message`` is what producers build (type tag + payload). A
``MessageEnvelope`` wraps it with routing and retry metadata; the
dispatcher is the only thing that mutates an envelope after creation
(status, retry_count), and the ``id`` never changes.
"""
from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from symphony.core.errors import MessageValidationError

MIN_PRIORITY = 0
MAX_PRIORITY = 10
MAX_IDEMPOTENCY_KEY_LENGTH = 255

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return str(uuid.uuid4())


class EnvelopeStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Message:
    """Typed payload produced by business code."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageEnvelope:
    """Unit of work: a message plus routing/retry metadata."""

    id: str
    message: Message
    transport_name: str
    queue: str
    priority: int
    idempotency_key: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    scheduled_at: datetime | None = None
    available_at: datetime | None = None
    status: EnvelopeStatus = EnvelopeStatus.PENDING
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    last_error: str | None = None

    def __post_init__(self) -> None:
        if self.available_at is None:
            self.available_at = self.scheduled_at or self.created_at

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("MessageEnvelope.id is immutable")
        super().__setattr__(name, value)

    @property
    def message_type(self) -> str:
        return self.message.type

    @property
    def is_terminal(self) -> bool:
        return self.status in (EnvelopeStatus.COMPLETED, EnvelopeStatus.FAILED)


@dataclass
class HandlerContext:
    """
    Per-invocation state passed through the middleware pipeline.

    ``deadline`` is a ``time.monotonic()`` timestamp; handlers that run past
    it, or that are still running when ``cancel()`` is called, are aborted
    by the executor.
    """

    envelope: MessageEnvelope
    retry_count: int = 0
    max_retries: int = 0
    deadline: float | None = None
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @classmethod
    def for_envelope(
        cls,
        envelope: MessageEnvelope,
        *,
        max_retries: int = 0,
        timeout: float | None = None,
    ) -> HandlerContext:
        deadline = time.monotonic() + timeout if timeout else None
        return cls(
            envelope=envelope,
            retry_count=envelope.retry_count,
            max_retries=max_retries,
            deadline=deadline,
        )

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    def time_remaining(self) -> float | None:
        """Seconds until the deadline (never negative), or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@dataclass
class DuplicateAttempt:
    """Audit record of a duplicate enqueue. Informational only."""

    idempotency_key: str
    original_message_id: str
    duplicate_message_id: str
    attempted_at: datetime
    status: Literal["rejected", "returned"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "original_message_id": self.original_message_id,
            "duplicate_message_id": self.duplicate_message_id,
            "attempted_at": self.attempted_at.isoformat(),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DuplicateAttempt:
        attempted_at = data["attempted_at"]
        if isinstance(attempted_at, str):
            attempted_at = datetime.fromisoformat(attempted_at)
        return cls(
            idempotency_key=data["idempotency_key"],
            original_message_id=data["original_message_id"],
            duplicate_message_id=data["duplicate_message_id"],
            attempted_at=attempted_at,
            status=data.get("status", "returned"),
        )


@dataclass
class DispatchResult:
    """What a producer gets back from ``Dispatcher.dispatch``."""

    message_id: str
    envelope_id: str
    transport_name: str
    queue: str
    scheduled_at: datetime | None = None
    duplicate: bool = False


@dataclass
class FailedMessage:
    """A row of the failed-message ledger."""

    id: str
    message_id: str
    message_type: str
    transport_name: str
    queue: str
    payload: dict[str, Any]
    error: str
    error_class: str | None
    retry_count: int
    max_retries: int
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    failed_at: datetime = field(default_factory=utcnow)
    replayed_at: datetime | None = None
    replayed_message_id: str | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_message(message: Message) -> Message:
    if not isinstance(message, Message):
        raise MessageValidationError(f"Expected Message, got {type(message).__name__}")
    if not isinstance(message.type, str) or not message.type.strip():
        raise MessageValidationError("Message type must be a non-empty string")
    if not isinstance(message.payload, dict):
        raise MessageValidationError(
            "Message payload must be a dict",
            {"message_type": message.type},
        )
    if not isinstance(message.metadata, dict):
        raise MessageValidationError(
            "Message metadata must be a dict",
            {"message_type": message.type},
        )
    return message


def validate_priority(priority: int) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise MessageValidationError(f"Priority must be an integer, got {priority!r}")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise MessageValidationError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}"
        )
    return priority


def validate_idempotency_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise MessageValidationError("Idempotency key must be a non-empty string")
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise MessageValidationError(
            f"Idempotency key longer than {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
        )
    return key


def validate_name(name: str, kind: str = "transport") -> str:
    """Validate a transport or queue name."""
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise MessageValidationError(f"Invalid {kind} name: {name!r}")
    return name
