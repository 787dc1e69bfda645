# symphony/infra/pg_failed_message_repo_async.py
"""Failed-message ledger reads for operator inspection and replay."""
from __future__ import annotations

import json
from datetime import datetime

from symphony.core.envelope import FailedMessage
from symphony.infra.db_resilience_async import safe_db_conn
from symphony.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_failed(row) -> FailedMessage:
    body = row["body"]
    if isinstance(body, str):
        body = json.loads(body)
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    replayed_message_id = row["replayed_message_id"]
    return FailedMessage(
        id=str(row["id"]),
        message_id=str(row["message_id"]),
        message_type=row["message_type"],
        transport_name=row["transport_name"],
        queue=row["queue_name"],
        payload=body.get("payload", {}),
        error=row["error"],
        error_class=row["error_class"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        metadata=metadata or {},
        idempotency_key=row["idempotency_key"],
        failed_at=row["failed_at"],
        replayed_at=row["replayed_at"],
        replayed_message_id=str(replayed_message_id) if replayed_message_id is not None else None,
    )


class AsyncPostgresFailedMessageRepository:
    """messenger_failed_messages table."""

    async def list_failed(
        self,
        transport_name: str | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FailedMessage]:
        """Newest first, optionally for one transport."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM messenger_failed_messages
                WHERE ($1::text IS NULL OR transport_name = $1)
                ORDER BY failed_at DESC
                LIMIT $2 OFFSET $3
                """,
                transport_name,
                limit,
                offset,
            )
            return [_row_to_failed(row) for row in rows]

    async def get_failed(self, failed_id: str) -> FailedMessage | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM messenger_failed_messages WHERE id = $1", failed_id)
            return _row_to_failed(row) if row is not None else None

    async def count_failed(self, transport_name: str | None = None, *, since: datetime | None = None) -> int:
        async with safe_db_conn() as conn:
            count = await conn.fetchval(
                """
                SELECT count(*)::int FROM messenger_failed_messages
                WHERE ($1::text IS NULL OR transport_name = $1)
                  AND ($2::timestamptz IS NULL OR failed_at >= $2)
                """,
                transport_name,
                since,
            )
            return count or 0

    async def mark_replayed(self, failed_id: str, new_message_id: str) -> bool:
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE messenger_failed_messages
                SET replayed_at = now(), replayed_message_id = $2
                WHERE id = $1 AND replayed_at IS NULL
                """,
                failed_id,
                new_message_id,
            )
            replayed = status.split()[-1] == "1" if status else False
            if not replayed:
                logger.warning(f"Failed message {failed_id[:8]} was not marked replayed (missing or already replayed)")
            return replayed

    async def clear_replayed(self, failed_id: str, new_message_id: str) -> bool:
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE messenger_failed_messages
                SET replayed_at = NULL, replayed_message_id = NULL
                WHERE id = $1 AND replayed_message_id = $2
                """,
                failed_id,
                new_message_id,
            )
            return status.split()[-1] == "1" if status else False


_failed_repo: AsyncPostgresFailedMessageRepository | None = None


def get_failed_message_repo() -> AsyncPostgresFailedMessageRepository:
    global _failed_repo
    if _failed_repo is None:
        _failed_repo = AsyncPostgresFailedMessageRepository()
    return _failed_repo
