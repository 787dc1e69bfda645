# symphony/infra/memory_store.py
"""
In-memory envelope store, failed ledger and schedule table for tests and
development.

Mirrors the Postgres repositories: the same unique dedup bucket, the same
claim ordering and availability rule, and the same conditional status
transitions. State lives in this process only.

Example:
    store = InMemoryEnvelopeStore()
    transport = QueuedTransport("supabase", store, Deduplicator(store))
"""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from symphony.core.deduplication import dedup_bucket
from symphony.core.envelope import (
    DuplicateAttempt,
    EnvelopeStatus,
    FailedMessage,
    MessageEnvelope,
    utcnow,
)
from symphony.core.ports import InsertResult, QueueStats, StoredEnvelopeRef
from symphony.core.scheduler import Schedule


@dataclass
class _Row:
    envelope: MessageEnvelope
    dedup_bucket: int | None = None
    locked_by: str | None = None
    lock_expires_at: datetime | None = None
    processed_at: datetime | None = None

    def unlock(self) -> None:
        self.locked_by = None
        self.lock_expires_at = None


class InMemoryEnvelopeStore:
    """EnvelopeStore, FailedMessageStore and ScheduleStore backed by dicts."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._rows: dict[str, _Row] = {}
        self._dedup_index: dict[tuple[str, str, int], str] = {}
        self._failed: dict[str, FailedMessage] = {}
        self._schedules: dict[str, Schedule] = {}
        self._schedule_leases: dict[str, datetime] = {}

    # -- EnvelopeStore ----------------------------------------------------

    async def insert(self, envelope: MessageEnvelope, *, dedup_window_ms: int) -> InsertResult:
        if envelope.id in self._rows:
            return InsertResult(id=envelope.id, duplicate=True)

        bucket = None
        if envelope.idempotency_key:
            bucket = dedup_bucket(envelope.created_at, dedup_window_ms)
            key = (envelope.idempotency_key, envelope.transport_name, bucket)
            existing = self._dedup_index.get(key)
            if existing is not None:
                return InsertResult(id=existing, duplicate=True)
            self._dedup_index[key] = envelope.id

        stored = copy.deepcopy(envelope)
        stored.status = EnvelopeStatus.PENDING
        self._rows[envelope.id] = _Row(envelope=stored, dedup_bucket=bucket)
        return InsertResult(id=envelope.id)

    async def find_recent_by_idempotency_key(
        self, idempotency_key: str, transport_name: str, since: datetime
    ) -> str | None:
        matches = [
            row.envelope for row in self._rows.values()
            if row.envelope.idempotency_key == idempotency_key
            and row.envelope.transport_name == transport_name
            and row.envelope.created_at >= since
        ]
        if not matches:
            return None
        return max(matches, key=lambda e: e.created_at).id

    async def list_by_idempotency_key(self, idempotency_key: str, since: datetime) -> list[StoredEnvelopeRef]:
        refs = [
            StoredEnvelopeRef(
                id=row.envelope.id,
                created_at=row.envelope.created_at,
                metadata=copy.deepcopy(row.envelope.metadata),
            )
            for row in self._rows.values()
            if row.envelope.idempotency_key == idempotency_key and row.envelope.created_at >= since
        ]
        refs.sort(key=lambda r: r.created_at, reverse=True)
        return refs

    async def record_duplicate_attempt(self, attempt: DuplicateAttempt) -> None:
        row = self._rows.get(attempt.original_message_id)
        if row is None:
            return
        row.envelope.metadata.setdefault("duplicate_attempts", []).append(attempt.to_dict())

    async def claim_batch(
        self,
        transport_name: str,
        batch_size: int,
        *,
        worker_id: str,
        lock_seconds: float,
        queue: str | None = None,
    ) -> list[MessageEnvelope]:
        now = self._clock()
        due = [
            row for row in self._rows.values()
            if row.envelope.transport_name == transport_name
            and row.envelope.status == EnvelopeStatus.PENDING
            and row.envelope.available_at <= now
            and (queue is None or row.envelope.queue == queue)
        ]
        due.sort(key=lambda r: (-r.envelope.priority, r.envelope.available_at))

        claimed: list[MessageEnvelope] = []
        for row in due[:batch_size]:
            row.envelope.status = EnvelopeStatus.PROCESSING
            row.locked_by = worker_id
            row.lock_expires_at = now + timedelta(seconds=lock_seconds)
            claimed.append(copy.deepcopy(row.envelope))
        return claimed

    def _held(self, message_id: str, worker_id: str) -> _Row | None:
        row = self._rows.get(message_id)
        if row is None or row.envelope.status != EnvelopeStatus.PROCESSING or row.locked_by != worker_id:
            return None
        return row

    async def complete(self, message_id: str, *, worker_id: str) -> bool:
        row = self._held(message_id, worker_id)
        if row is None:
            return False
        row.envelope.status = EnvelopeStatus.COMPLETED
        row.processed_at = self._clock()
        row.unlock()
        return True

    async def reschedule(
        self,
        message_id: str,
        *,
        worker_id: str,
        retry_count: int,
        delay_ms: int,
        error: str,
    ) -> bool:
        row = self._held(message_id, worker_id)
        if row is None:
            return False
        row.envelope.status = EnvelopeStatus.PENDING
        row.envelope.retry_count = retry_count
        row.envelope.available_at = self._clock() + timedelta(milliseconds=delay_ms)
        row.envelope.last_error = error
        row.unlock()
        return True

    async def move_to_failed(
        self,
        envelope: MessageEnvelope,
        *,
        worker_id: str,
        error: BaseException,
        max_retries: int,
    ) -> bool:
        row = self._held(envelope.id, worker_id)
        if row is None:
            return False

        stored = row.envelope
        error_text = str(error) or error.__class__.__name__
        stored.status = EnvelopeStatus.FAILED
        stored.last_error = error_text
        row.processed_at = self._clock()
        row.unlock()

        failed_id = str(uuid.uuid4())
        self._failed[failed_id] = FailedMessage(
            id=failed_id,
            message_id=stored.id,
            message_type=stored.message.type,
            transport_name=stored.transport_name,
            queue=stored.queue,
            payload=copy.deepcopy(stored.message.payload),
            error=error_text,
            error_class=(error.__cause__ or error).__class__.__name__,
            retry_count=stored.retry_count,
            max_retries=max_retries,
            metadata=copy.deepcopy(stored.metadata),
            idempotency_key=stored.idempotency_key,
            failed_at=self._clock(),
        )
        return True

    async def release_expired_locks(self, transport_name: str) -> int:
        now = self._clock()
        released = 0
        for row in self._rows.values():
            if (
                row.envelope.transport_name == transport_name
                and row.envelope.status == EnvelopeStatus.PROCESSING
                and row.lock_expires_at is not None
                and row.lock_expires_at < now
            ):
                row.envelope.status = EnvelopeStatus.PENDING
                row.unlock()
                released += 1
        return released

    async def get(self, message_id: str) -> MessageEnvelope | None:
        row = self._rows.get(message_id)
        return copy.deepcopy(row.envelope) if row is not None else None

    async def count_by_status(self, transport_name: str | None = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for row in self._rows.values():
            if transport_name and row.envelope.transport_name != transport_name:
                continue
            status = row.envelope.status.value
            counts[status] = counts.get(status, 0) + 1
        return counts

    async def queue_depth(self, transport_name: str, queue: str | None = None) -> int:
        return sum(
            1 for row in self._rows.values()
            if row.envelope.transport_name == transport_name
            and row.envelope.status == EnvelopeStatus.PENDING
            and (queue is None or row.envelope.queue == queue)
        )

    async def cleanup_completed(self, ttl_days: int = 7) -> int:
        cutoff = self._clock() - timedelta(days=ttl_days)
        expired = [
            message_id for message_id, row in self._rows.items()
            if row.envelope.status == EnvelopeStatus.COMPLETED
            and row.processed_at is not None
            and row.processed_at < cutoff
        ]
        for message_id in expired:
            row = self._rows.pop(message_id)
            if row.dedup_bucket is not None:
                key = (row.envelope.idempotency_key, row.envelope.transport_name, row.dedup_bucket)
                self._dedup_index.pop(key, None)
        return len(expired)

    async def collect_stats(self, transport_name: str | None = None, *, since: datetime) -> QueueStats:
        stats = QueueStats()
        processing_ms: list[float] = []
        for row in self._rows.values():
            envelope = row.envelope
            if envelope.created_at < since:
                continue
            stats.transport_distribution[envelope.transport_name] = (
                stats.transport_distribution.get(envelope.transport_name, 0) + 1
            )
            if transport_name and envelope.transport_name != transport_name:
                continue
            stats.status_counts[envelope.status.value] = stats.status_counts.get(envelope.status.value, 0) + 1
            stats.priority_distribution[envelope.priority] = stats.priority_distribution.get(envelope.priority, 0) + 1
            stats.type_distribution[envelope.message.type] = stats.type_distribution.get(envelope.message.type, 0) + 1
            if envelope.status == EnvelopeStatus.COMPLETED and row.processed_at is not None:
                processing_ms.append((row.processed_at - envelope.created_at).total_seconds() * 1000)
        if processing_ms:
            stats.average_processing_ms = sum(processing_ms) / len(processing_ms)
        return stats

    # -- FailedMessageStore -------------------------------------------------

    async def list_failed(
        self,
        transport_name: str | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FailedMessage]:
        items = [
            f for f in self._failed.values()
            if transport_name is None or f.transport_name == transport_name
        ]
        items.sort(key=lambda f: f.failed_at, reverse=True)
        return items[offset:offset + limit]

    async def get_failed(self, failed_id: str) -> FailedMessage | None:
        return self._failed.get(failed_id)

    async def count_failed(self, transport_name: str | None = None, *, since: datetime | None = None) -> int:
        return sum(
            1 for f in self._failed.values()
            if (transport_name is None or f.transport_name == transport_name)
            and (since is None or f.failed_at >= since)
        )

    async def mark_replayed(self, failed_id: str, new_message_id: str) -> bool:
        failed = self._failed.get(failed_id)
        if failed is None or failed.replayed_at is not None:
            return False
        failed.replayed_at = self._clock()
        failed.replayed_message_id = new_message_id
        return True

    async def clear_replayed(self, failed_id: str, new_message_id: str) -> bool:
        failed = self._failed.get(failed_id)
        if failed is None or failed.replayed_message_id != new_message_id:
            return False
        failed.replayed_at = None
        failed.replayed_message_id = None
        return True

    # -- ScheduleStore ------------------------------------------------------

    async def insert_schedule(self, schedule: Schedule) -> str:
        self._schedules[schedule.id] = copy.deepcopy(schedule)
        return schedule.id

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        schedule = self._schedules.get(schedule_id)
        return copy.deepcopy(schedule) if schedule is not None else None

    async def cancel_schedule(self, schedule_id: str) -> bool:
        schedule = self._schedules.get(schedule_id)
        if schedule is None or not schedule.enabled:
            return False
        schedule.enabled = False
        self._schedule_leases.pop(schedule_id, None)
        return True

    def _due(self, now: datetime) -> list[Schedule]:
        due = [
            s for s in self._schedules.values()
            if s.enabled and s.next_run_at is not None and s.next_run_at <= now
        ]
        due.sort(key=lambda s: s.next_run_at)
        return due

    async def list_due_schedules(self, now: datetime, limit: int = 100) -> list[Schedule]:
        return [copy.deepcopy(s) for s in self._due(now)[:limit]]

    async def claim_due_schedules(self, now: datetime, limit: int, *, lease_seconds: float) -> list[Schedule]:
        clock_now = self._clock()
        claimed: list[Schedule] = []
        for schedule in self._due(now):
            if len(claimed) >= limit:
                break
            lease = self._schedule_leases.get(schedule.id)
            if lease is not None and lease > clock_now:
                continue
            self._schedule_leases[schedule.id] = clock_now + timedelta(seconds=lease_seconds)
            claimed.append(copy.deepcopy(schedule))
        return claimed

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
        schedule = self._schedules.get(schedule_id)
        if schedule is None or not schedule.enabled or schedule.next_run_at != expected_run_at:
            return False
        schedule.next_run_at = next_run_at
        schedule.enabled = next_run_at is not None
        schedule.last_run_at = last_run_at
        schedule.run_count = run_count
        schedule.last_error = last_error
        if next_run_at == expected_run_at:
            # failed occurrence: keep the lease so it is retried after it lapses
            return True
        self._schedule_leases.pop(schedule_id, None)
        return True

    async def count_schedules(self, *, enabled_only: bool = True) -> int:
        return sum(1 for s in self._schedules.values() if s.enabled or not enabled_only)
