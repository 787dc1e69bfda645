# symphony/infra/pg_schedule_repo_async.py
"""
Async PostgreSQL schedule repository (asyncpg).

Due schedules are claimed with FOR UPDATE SKIP LOCKED plus a lease
(``locked_until``), so overlapping scheduler runs never fire the same
occurrence. ``advance_schedule`` is conditional on the claimed
``next_run_at``; a cancelled schedule reports False.
"""
from __future__ import annotations

import json
from datetime import datetime

from symphony.core.envelope import Message
from symphony.core.scheduler import Schedule, ScheduleConfig
from symphony.infra.db_resilience_async import safe_db_conn
from symphony.infra.logging_config import get_logger

logger = get_logger(__name__)


def _json(value) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_schedule(row) -> Schedule:
    """Convert an asyncpg Record to a Schedule."""
    body = _json(row["body"])
    return Schedule(
        id=str(row["id"]),
        message=Message(
            type=body.get("type", row["message_type"]),
            payload=body.get("payload", {}),
            metadata=body.get("metadata", {}),
        ),
        config=ScheduleConfig.from_dict(_json(row["schedule_config"])),
        next_run_at=row["next_run_at"],
        transport_name=row["transport_name"],
        queue=row["queue_name"],
        priority=row["priority"],
        enabled=row["enabled"],
        run_count=row["run_count"],
        last_run_at=row["last_run_at"],
        last_error=row["last_error"],
        created_at=row["created_at"],
    )


class AsyncPostgresScheduleRepository:
    """messenger_schedules table."""

    async def insert_schedule(self, schedule: Schedule) -> str:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO messenger_schedules (
                    id, message_type, body, schedule_type, schedule_config,
                    transport_name, queue_name, priority, enabled, next_run_at, created_at
                )
                VALUES ($1, $2, $3::jsonb, $4, $5::jsonb, $6, $7, $8, $9, $10, $11)
                """,
                schedule.id,
                schedule.message.type,
                json.dumps({
                    "type": schedule.message.type,
                    "payload": schedule.message.payload,
                    "metadata": schedule.message.metadata,
                }, default=str),
                schedule.config.type.value,
                json.dumps(schedule.config.to_dict()),
                schedule.transport_name,
                schedule.queue,
                schedule.priority,
                schedule.enabled,
                schedule.next_run_at,
                schedule.created_at,
            )
            return schedule.id

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM messenger_schedules WHERE id = $1", schedule_id)
            return _row_to_schedule(row) if row is not None else None

    async def cancel_schedule(self, schedule_id: str) -> bool:
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE messenger_schedules
                SET enabled = false, locked_until = NULL, updated_at = now()
                WHERE id = $1 AND enabled
                """,
                schedule_id,
            )
            return status.split()[-1] == "1" if status else False

    async def list_due_schedules(self, now: datetime, limit: int = 100) -> list[Schedule]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM messenger_schedules
                WHERE enabled AND next_run_at <= $1
                ORDER BY next_run_at
                LIMIT $2
                """,
                now,
                limit,
            )
            return [_row_to_schedule(row) for row in rows]

    async def claim_due_schedules(self, now: datetime, limit: int, *, lease_seconds: float) -> list[Schedule]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                UPDATE messenger_schedules
                SET locked_until = now() + make_interval(secs => $3), updated_at = now()
                WHERE id IN (
                    SELECT id FROM messenger_schedules
                    WHERE enabled
                      AND next_run_at <= $1
                      AND (locked_until IS NULL OR locked_until < now())
                    ORDER BY next_run_at
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                now,
                limit,
                float(lease_seconds),
            )
            schedules = [_row_to_schedule(row) for row in rows]
            schedules.sort(key=lambda s: s.next_run_at)
            return schedules

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
        # A failed occurrence keeps next_run_at and its lease; it fires again once the lease lapses.
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE messenger_schedules
                SET next_run_at = $3,
                    enabled = $3::timestamptz IS NOT NULL,
                    last_run_at = $4,
                    run_count = $5,
                    last_error = $6,
                    locked_until = CASE WHEN $3::timestamptz = $2 THEN locked_until END,
                    updated_at = now()
                WHERE id = $1 AND enabled AND next_run_at = $2
                """,
                schedule_id,
                expected_run_at,
                next_run_at,
                last_run_at,
                run_count,
                last_error,
            )
            advanced = status.split()[-1] == "1" if status else False
            if not advanced:
                logger.warning(f"Schedule {schedule_id[:8]} was not advanced (cancelled or already advanced)")
            return advanced

    async def count_schedules(self, *, enabled_only: bool = True) -> int:
        async with safe_db_conn() as conn:
            count = await conn.fetchval(
                "SELECT count(*)::int FROM messenger_schedules WHERE enabled OR NOT $1",
                enabled_only,
            )
            return count or 0


_schedule_repo: AsyncPostgresScheduleRepository | None = None


def get_schedule_repo() -> AsyncPostgresScheduleRepository:
    global _schedule_repo
    if _schedule_repo is None:
        _schedule_repo = AsyncPostgresScheduleRepository()
    return _schedule_repo
