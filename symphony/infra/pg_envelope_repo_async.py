# symphony/infra/pg_envelope_repo_async.py
"""
Async PostgreSQL envelope repository (asyncpg).

Claiming uses FOR UPDATE SKIP LOCKED so concurrent workers never take the
same row, and only rows whose ``available_at`` has passed are claimable
(delayed and backed-off envelopes wait in place). Every later transition
is conditional on ``status = 'processing' AND locked_by = <worker>``; a
worker whose lock expired and was released finds zero rows updated and
reports the claim as lost.
"""
from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime

from symphony.core.deduplication import dedup_bucket
from symphony.core.envelope import DuplicateAttempt, EnvelopeStatus, Message, MessageEnvelope
from symphony.core.errors import TransportError
from symphony.core.ports import InsertResult, QueueStats, StoredEnvelopeRef
from symphony.infra.db_resilience_async import safe_db_conn
from symphony.infra.logging_config import get_logger
from symphony.infra.metrics import inc_counter

logger = get_logger(__name__)


def _json(value) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _affected(status: str | None) -> int:
    """Row count from an asyncpg command tag like 'UPDATE 3'."""
    return int(status.split()[-1]) if status else 0


def _row_to_envelope(row) -> MessageEnvelope:
    """Convert an asyncpg Record to a MessageEnvelope."""
    body = _json(row["body"])
    return MessageEnvelope(
        id=str(row["id"]),
        message=Message(
            type=body.get("type", row["message_type"]),
            payload=body.get("payload", {}),
            metadata=body.get("metadata", {}),
        ),
        transport_name=row["transport_name"],
        queue=row["queue_name"],
        priority=row["priority"],
        idempotency_key=row["idempotency_key"],
        created_at=row["created_at"],
        scheduled_at=row["scheduled_at"],
        available_at=row["available_at"],
        status=EnvelopeStatus(row["status"]),
        retry_count=row["retry_count"],
        metadata=_json(row["metadata"]),
        headers=_json(row["headers"]),
        last_error=row["last_error"],
    )


def _body(envelope: MessageEnvelope) -> str:
    return json.dumps({
        "type": envelope.message.type,
        "payload": envelope.message.payload,
        "metadata": envelope.message.metadata,
    }, default=str)


def _error_trace(error: BaseException) -> str | None:
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))[:10000]


class AsyncPostgresEnvelopeRepository:
    """messenger_messages table + writes to the failed ledger."""

    async def insert(self, envelope: MessageEnvelope, *, dedup_window_ms: int) -> InsertResult:
        bucket = (
            dedup_bucket(envelope.created_at, dedup_window_ms)
            if envelope.idempotency_key else None
        )
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO messenger_messages (
                  id, transport_name, queue_name, message_type, body, headers,
                  priority, status, idempotency_key, dedup_bucket, retry_count,
                  metadata, created_at, scheduled_at, available_at
                )
                VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, 'pending', $8, $9, $10,
                        $11::jsonb, $12, $13, $14)
                ON CONFLICT DO NOTHING
                RETURNING id
                """,
                envelope.id,
                envelope.transport_name,
                envelope.queue,
                envelope.message.type,
                _body(envelope),
                json.dumps(envelope.headers),
                envelope.priority,
                envelope.idempotency_key,
                bucket,
                envelope.retry_count,
                json.dumps(envelope.metadata, default=str),
                envelope.created_at,
                envelope.scheduled_at,
                envelope.available_at,
            )
            if row is not None:
                return InsertResult(id=str(row["id"]))

            # Conflict: either this exact envelope was already stored, or the
            # dedup bucket is taken by an earlier envelope with the same key.
            existing = await conn.fetchval(
                "SELECT id FROM messenger_messages WHERE id = $1",
                envelope.id,
            )
            if existing is None and bucket is not None:
                existing = await conn.fetchval(
                    """
                    SELECT id FROM messenger_messages
                    WHERE idempotency_key = $1
                      AND transport_name = $2
                      AND dedup_bucket = $3
                    """,
                    envelope.idempotency_key,
                    envelope.transport_name,
                    bucket,
                )
            if existing is None:
                raise TransportError(
                    "Insert conflicted but no existing envelope was found",
                    {"message_id": envelope.id, "transport": envelope.transport_name},
                )
            return InsertResult(id=str(existing), duplicate=True)

    async def find_recent_by_idempotency_key(
        self, idempotency_key: str, transport_name: str, since: datetime
    ) -> str | None:
        async with safe_db_conn() as conn:
            existing = await conn.fetchval(
                """
                SELECT id FROM messenger_messages
                WHERE idempotency_key = $1
                  AND transport_name = $2
                  AND created_at >= $3
                ORDER BY created_at DESC
                LIMIT 1
                """,
                idempotency_key,
                transport_name,
                since,
            )
            return str(existing) if existing is not None else None

    async def list_by_idempotency_key(self, idempotency_key: str, since: datetime) -> list[StoredEnvelopeRef]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT id, created_at, metadata FROM messenger_messages
                WHERE idempotency_key = $1 AND created_at >= $2
                ORDER BY created_at DESC
                """,
                idempotency_key,
                since,
            )
            return [
                StoredEnvelopeRef(id=str(r["id"]), created_at=r["created_at"], metadata=_json(r["metadata"]))
                for r in rows
            ]

    async def record_duplicate_attempt(self, attempt: DuplicateAttempt) -> None:
        """Append the attempt to the original envelope's metadata."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE messenger_messages
                SET metadata = jsonb_set(
                  metadata,
                  '{duplicate_attempts}',
                  COALESCE(metadata -> 'duplicate_attempts', '[]'::jsonb) || $2::jsonb
                )
                WHERE id = $1
                """,
                attempt.original_message_id,
                json.dumps([attempt.to_dict()]),
            )

    async def claim_batch(
        self,
        transport_name: str,
        batch_size: int,
        *,
        worker_id: str,
        lock_seconds: float,
        queue: str | None = None,
    ) -> list[MessageEnvelope]:
        """
        Atomically claim up to batch_size due envelopes, highest priority first.

        Returns:
            Claimed envelopes (status changed to 'processing', locked by worker_id)
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM messenger_messages
                    WHERE transport_name = $1
                      AND status = 'pending'
                      AND available_at <= now()
                      AND ($3::text IS NULL OR queue_name = $3)
                    ORDER BY priority DESC, available_at
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE messenger_messages m
                SET status = 'processing',
                    locked_at = now(),
                    locked_by = $4,
                    lock_expires_at = now() + make_interval(secs => $5)
                FROM claimed
                WHERE m.id = claimed.id
                RETURNING m.*
                """,
                transport_name,
                batch_size,
                queue,
                worker_id,
                float(lock_seconds),
            )
            envelopes = [_row_to_envelope(row) for row in rows]
            envelopes.sort(key=lambda e: (-e.priority, e.available_at))
            if envelopes:
                logger.debug(
                    f"Claimed {len(envelopes)} envelope(s) on '{transport_name}'",
                    extra={"transport": transport_name, "worker_id": worker_id},
                )
            return envelopes

    async def complete(self, message_id: str, *, worker_id: str) -> bool:
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE messenger_messages
                SET status = 'completed',
                    processed_at = now(),
                    locked_at = NULL, locked_by = NULL, lock_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND locked_by = $2
                """,
                message_id,
                worker_id,
            )
            return _affected(status) == 1

    async def reschedule(
        self,
        message_id: str,
        *,
        worker_id: str,
        retry_count: int,
        delay_ms: int,
        error: str,
    ) -> bool:
        """Return the envelope to 'pending', available again after the backoff delay."""
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE messenger_messages
                SET status = 'pending',
                    retry_count = $3,
                    available_at = now() + make_interval(secs => $4),
                    last_error = $5,
                    locked_at = NULL, locked_by = NULL, lock_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND locked_by = $2
                """,
                message_id,
                worker_id,
                retry_count,
                delay_ms / 1000.0,
                error[:2000],
            )
            return _affected(status) == 1

    async def move_to_failed(
        self,
        envelope: MessageEnvelope,
        *,
        worker_id: str,
        error: BaseException,
        max_retries: int,
    ) -> bool:
        """Mark the envelope failed and write its ledger row in one transaction."""
        error_text = (str(error) or error.__class__.__name__)[:2000]
        error_class = (error.__cause__ or error).__class__.__name__

        async with safe_db_conn(autocommit=False) as conn:
            row = await conn.fetchrow(
                """
                UPDATE messenger_messages
                SET status = 'failed',
                    processed_at = now(),
                    last_error = $3,
                    error_class = $4,
                    locked_at = NULL, locked_by = NULL, lock_expires_at = NULL
                WHERE id = $1 AND status = 'processing' AND locked_by = $2
                RETURNING *
                """,
                envelope.id,
                worker_id,
                error_text,
                error_class,
            )
            if row is None:
                return False

            await conn.execute(
                """
                INSERT INTO messenger_failed_messages (
                  id, message_id, transport_name, queue_name, message_type, body, headers,
                  error, error_class, error_trace, retry_count, max_retries, metadata,
                  idempotency_key
                )
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11, $12,
                        $13::jsonb, $14)
                """,
                str(uuid.uuid4()),
                row["id"],
                row["transport_name"],
                row["queue_name"],
                row["message_type"],
                json.dumps(_json(row["body"])),
                json.dumps(_json(row["headers"])),
                error_text,
                error_class,
                _error_trace(error),
                row["retry_count"],
                max_retries,
                json.dumps(_json(row["metadata"]), default=str),
                row["idempotency_key"],
            )
            inc_counter("failed_ledger_writes_total", transport=row["transport_name"])
            return True

    async def release_expired_locks(self, transport_name: str) -> int:
        """
        Safety net: return envelopes whose claim lease expired to 'pending'.

        Handles worker crashes where an envelope was claimed but never finished.
        """
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE messenger_messages
                SET status = 'pending',
                    locked_at = NULL, locked_by = NULL, lock_expires_at = NULL
                WHERE transport_name = $1
                  AND status = 'processing'
                  AND lock_expires_at < now()
                """,
                transport_name,
            )
            count = _affected(status)
            if count > 0:
                logger.warning(
                    f"Released {count} expired lock(s) on '{transport_name}'",
                    extra={"transport": transport_name},
                )
            return count

    async def get(self, message_id: str) -> MessageEnvelope | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM messenger_messages WHERE id = $1", message_id)
            return _row_to_envelope(row) if row is not None else None

    async def count_by_status(self, transport_name: str | None = None) -> dict[str, int]:
        """Return {status: count} for operator visibility."""
        async with safe_db_conn() as conn:
            if transport_name:
                rows = await conn.fetch(
                    """
                    SELECT status, count(*)::int AS cnt FROM messenger_messages
                    WHERE transport_name = $1 GROUP BY status
                    """,
                    transport_name,
                )
            else:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int AS cnt FROM messenger_messages GROUP BY status",
                )
            return {row["status"]: row["cnt"] for row in rows}

    async def queue_depth(self, transport_name: str, queue: str | None = None) -> int:
        async with safe_db_conn() as conn:
            depth = await conn.fetchval(
                """
                SELECT count(*)::int FROM messenger_messages
                WHERE transport_name = $1
                  AND status = 'pending'
                  AND ($2::text IS NULL OR queue_name = $2)
                """,
                transport_name,
                queue,
            )
            return depth or 0

    async def cleanup_completed(self, ttl_days: int = 7) -> int:
        """Delete completed envelopes older than TTL. Returns count deleted."""
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                DELETE FROM messenger_messages
                WHERE status = 'completed'
                  AND processed_at < now() - make_interval(days => $1)
                """,
                ttl_days,
            )
            count = _affected(status)
            if count > 0:
                logger.info(f"Cleaned up {count} completed envelopes older than {ttl_days} days")
            return count

    async def collect_stats(self, transport_name: str | None = None, *, since: datetime) -> QueueStats:
        """Aggregates over envelopes created since ``since``; the transport split always covers every transport."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT status, priority, message_type, count(*)::int AS cnt,
                       avg(extract(epoch FROM processed_at - created_at) * 1000)
                           FILTER (WHERE status = 'completed' AND processed_at IS NOT NULL) AS avg_ms,
                       count(*) FILTER (WHERE status = 'completed' AND processed_at IS NOT NULL)::int AS timed
                FROM messenger_messages
                WHERE created_at >= $1 AND ($2::text IS NULL OR transport_name = $2)
                GROUP BY status, priority, message_type
                """,
                since,
                transport_name,
            )
            transport_rows = await conn.fetch(
                """
                SELECT transport_name, count(*)::int AS cnt FROM messenger_messages
                WHERE created_at >= $1 GROUP BY transport_name
                """,
                since,
            )

        stats = QueueStats(transport_distribution={row["transport_name"]: row["cnt"] for row in transport_rows})
        total_ms = 0.0
        timed = 0
        for row in rows:
            cnt = row["cnt"]
            stats.status_counts[row["status"]] = stats.status_counts.get(row["status"], 0) + cnt
            stats.priority_distribution[row["priority"]] = stats.priority_distribution.get(row["priority"], 0) + cnt
            stats.type_distribution[row["message_type"]] = stats.type_distribution.get(row["message_type"], 0) + cnt
            if row["timed"]:
                total_ms += float(row["avg_ms"]) * row["timed"]
                timed += row["timed"]
        if timed:
            stats.average_processing_ms = total_ms / timed
        return stats


# Global singleton
_envelope_repo: AsyncPostgresEnvelopeRepository | None = None


def get_envelope_repo() -> AsyncPostgresEnvelopeRepository:
    global _envelope_repo
    if _envelope_repo is None:
        _envelope_repo = AsyncPostgresEnvelopeRepository()
    return _envelope_repo
