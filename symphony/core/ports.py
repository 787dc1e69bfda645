# symphony/core/ports.py
"""
Storage ports.

The dispatcher, worker and scheduler depend only on these protocols.
Implementations: the asyncpg repositories in ``symphony.infra`` and
``InMemoryEnvelopeStore`` for tests and development.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from symphony.core.envelope import DuplicateAttempt, FailedMessage, MessageEnvelope

if TYPE_CHECKING:
    from symphony.core.scheduler import Schedule


@dataclass(frozen=True)
class InsertResult:
    """Outcome of an envelope insert: ``duplicate`` when a uniqueness conflict hit."""

    id: str
    duplicate: bool = False


@dataclass(frozen=True)
class StoredEnvelopeRef:
    id: str
    created_at: datetime
    metadata: dict


@dataclass
class QueueStats:
    """Envelope table aggregates over a time range (created_at >= since)."""

    status_counts: dict[str, int] = field(default_factory=dict)
    priority_distribution: dict[int, int] = field(default_factory=dict)
    type_distribution: dict[str, int] = field(default_factory=dict)
    transport_distribution: dict[str, int] = field(default_factory=dict)
    average_processing_ms: float = 0.0

    def to_dict(self, *, failed_messages: int = 0, scheduled_messages: int = 0) -> dict[str, Any]:
        completed = self.status_counts.get("completed", 0)
        failed = self.status_counts.get("failed", 0)
        finished = completed + failed
        return {
            "status_counts": {
                status: self.status_counts.get(status, 0)
                for status in ("pending", "processing", "completed", "failed")
            },
            "priority_distribution": dict(sorted(self.priority_distribution.items())),
            "type_distribution": dict(self.type_distribution),
            "transport_distribution": dict(self.transport_distribution),
            "average_processing_ms": round(self.average_processing_ms, 2),
            "total_processed": finished,
            "total_succeeded": completed,
            "failed_messages": failed_messages,
            "scheduled_messages": scheduled_messages,
            "success_rate": completed / finished if finished else 0.0,
        }


class EnvelopeStore(Protocol):
    """
    Durable envelope table. Status transitions are conditional on the
    expected prior state and return False when the claim was lost.
    """

    async def insert(self, envelope: MessageEnvelope, *, dedup_window_ms: int) -> InsertResult:
        """
        Persist a pending envelope.

        A uniqueness conflict on (idempotency_key, transport_name, dedup bucket)
        returns the existing row's id with ``duplicate=True``.
        """
        ...

    async def find_recent_by_idempotency_key(
        self, idempotency_key: str, transport_name: str, since: datetime
    ) -> str | None: ...

    async def list_by_idempotency_key(self, idempotency_key: str, since: datetime) -> list[StoredEnvelopeRef]: ...

    async def record_duplicate_attempt(self, attempt: DuplicateAttempt) -> None: ...

    async def claim_batch(
        self,
        transport_name: str,
        batch_size: int,
        *,
        worker_id: str,
        lock_seconds: float,
        queue: str | None = None,
    ) -> list[MessageEnvelope]: ...

    async def complete(self, message_id: str, *, worker_id: str) -> bool: ...

    async def reschedule(
        self,
        message_id: str,
        *,
        worker_id: str,
        retry_count: int,
        delay_ms: int,
        error: str,
    ) -> bool: ...

    async def move_to_failed(
        self,
        envelope: MessageEnvelope,
        *,
        worker_id: str,
        error: BaseException,
        max_retries: int,
    ) -> bool: ...

    async def release_expired_locks(self, transport_name: str) -> int: ...

    async def get(self, message_id: str) -> MessageEnvelope | None: ...

    async def count_by_status(self, transport_name: str | None = None) -> dict[str, int]: ...

    async def queue_depth(self, transport_name: str, queue: str | None = None) -> int: ...

    async def cleanup_completed(self, ttl_days: int = 7) -> int: ...

    async def collect_stats(self, transport_name: str | None = None, *, since: datetime) -> QueueStats: ...


class FailedMessageStore(Protocol):
    """Read side of the failed-message ledger (operator inspection/replay)."""

    async def list_failed(self, transport_name: str | None = None, *, limit: int = 50, offset: int = 0) -> list[FailedMessage]: ...

    async def get_failed(self, failed_id: str) -> FailedMessage | None: ...

    async def count_failed(self, transport_name: str | None = None, *, since: datetime | None = None) -> int: ...

    async def mark_replayed(self, failed_id: str, new_message_id: str) -> bool:
        """Claim the entry for a replay; False when it is missing or already claimed."""
        ...

    async def clear_replayed(self, failed_id: str, new_message_id: str) -> bool:
        """Undo ``mark_replayed`` for a replay whose dispatch failed."""
        ...


class ScheduleStore(Protocol):
    """
    messenger_schedules table. A due schedule is claimed with a short lease
    so concurrent scheduler runs never fire the same occurrence twice.
    """

    async def insert_schedule(self, schedule: Schedule) -> str: ...

    async def get_schedule(self, schedule_id: str) -> Schedule | None: ...

    async def cancel_schedule(self, schedule_id: str) -> bool: ...

    async def list_due_schedules(self, now: datetime, limit: int = 100) -> list[Schedule]: ...

    async def claim_due_schedules(self, now: datetime, limit: int, *, lease_seconds: float) -> list[Schedule]: ...

    async def advance_schedule(
        self,
        schedule_id: str,
        *,
        expected_run_at: datetime,
        next_run_at: datetime | None,
        last_run_at: datetime | None,
        run_count: int,
        last_error: str | None = None,
    ) -> bool:
        """
        Record a fired (or failed) occurrence and release the lease.

        Conditional on ``next_run_at = expected_run_at``; a ``next_run_at``
        of None disables the schedule.
        """
        ...

    async def count_schedules(self, *, enabled_only: bool = True) -> int: ...
