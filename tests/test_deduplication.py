# tests/test_deduplication.py
"""Idempotency-key deduplication"""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import make_envelope
from symphony.core.deduplication import Deduplicator, dedup_bucket
from symphony.core.errors import DuplicateMessageError, TransportError
from symphony.infra.metrics import get_metrics_collector
from symphony.transport.database import QueuedTransport


class TestDedupBucket:
    def test_bucket_is_floor_of_epoch_ms(self):
        at = datetime(1970, 1, 1, 0, 0, 2, 500_000, tzinfo=timezone.utc)  # 2500ms
        assert dedup_bucket(at, 1000) == 2
        assert dedup_bucket(at, 3000) == 0

    def test_naive_datetimes_are_utc(self):
        naive = datetime(2026, 3, 1, 12, 0)
        assert dedup_bucket(naive, 60_000) == dedup_bucket(naive.replace(tzinfo=timezone.utc), 60_000)


class TestDeduplicator:
    def test_window_must_be_positive(self, store):
        with pytest.raises(ValueError):
            Deduplicator(store, window_ms=0)

    @pytest.mark.asyncio
    async def test_no_key_skips_lookup(self):
        store = AsyncMock()
        dedup = Deduplicator(store)
        assert await dedup.check_duplicate(make_envelope()) is None
        store.find_recent_by_idempotency_key.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_inside_window_returns_original(self, store, clock):
        dedup = Deduplicator(store, window_ms=60_000, clock=clock)
        transport = QueuedTransport("supabase", store, dedup)

        first = make_envelope(idempotency_key="campaign-42-step-3", created_at=clock())
        assert await transport.send(first) == first.id

        clock.advance(30_000)
        second = make_envelope(idempotency_key="campaign-42-step-3", created_at=clock())
        assert await transport.send(second) == first.id

        await dedup.drain()
        assert await store.get(second.id) is None
        assert await store.queue_depth("supabase") == 1
        assert get_metrics_collector().get_counter(
            "duplicates_detected_total", {"transport": "supabase"}
        ) == 1

    @pytest.mark.asyncio
    async def test_key_reusable_after_window(self, store, clock):
        dedup = Deduplicator(store, window_ms=1000, clock=clock)
        transport = QueuedTransport("supabase", store, dedup)

        first = make_envelope(idempotency_key="daily-digest", created_at=clock())
        await transport.send(first)

        clock.advance(2000)
        second = make_envelope(idempotency_key="daily-digest", created_at=clock())
        assert await transport.send(second) == second.id
        assert await store.queue_depth("supabase") == 2

    @pytest.mark.asyncio
    async def test_same_key_on_other_transport_is_not_a_duplicate(self, store, clock):
        dedup = Deduplicator(store, clock=clock)
        a = QueuedTransport("supabase", store, dedup)
        b = QueuedTransport("bulk", store, dedup)

        first = make_envelope(idempotency_key="k", created_at=clock())
        other = make_envelope(idempotency_key="k", transport_name="bulk", created_at=clock())
        assert await a.send(first) == first.id
        assert await b.send(other) == other.id

    @pytest.mark.asyncio
    async def test_reject_mode_raises(self, store, clock):
        dedup = Deduplicator(store, reject_duplicates=True, clock=clock)
        transport = QueuedTransport("supabase", store, dedup)
        first = make_envelope(idempotency_key="k", created_at=clock())
        await transport.send(first)

        with pytest.raises(DuplicateMessageError) as exc_info:
            await transport.send(make_envelope(idempotency_key="k", created_at=clock()))
        assert exc_info.value.existing_id == first.id
        assert exc_info.value.retryable is False
        await dedup.drain()

    @pytest.mark.asyncio
    async def test_lookup_failure_propagates(self):
        store = AsyncMock()
        store.find_recent_by_idempotency_key.side_effect = ConnectionError("db gone")
        dedup = Deduplicator(store)

        with pytest.raises(TransportError, match="db gone"):
            await dedup.check_duplicate(make_envelope(idempotency_key="k"))
        assert get_metrics_collector().get_counter(
            "store_errors_total", {"operation": "dedup_lookup"}
        ) == 1

    @pytest.mark.asyncio
    async def test_insert_race_resolves_through_storage_uniqueness(self, store, clock):
        """A concurrent producer wins between the lookup and the insert."""
        dedup = Deduplicator(store, clock=clock)
        transport = QueuedTransport("supabase", store, dedup)
        winner = make_envelope(idempotency_key="k", created_at=clock())
        loser = make_envelope(idempotency_key="k", created_at=clock())

        lookup = AsyncMock(return_value=None)
        store.find_recent_by_idempotency_key = lookup  # fast path misses
        await transport.send(winner)
        assert await transport.send(loser) == winner.id
        await dedup.drain()
        assert await store.queue_depth("supabase") == 1

    @pytest.mark.asyncio
    async def test_resending_same_envelope_is_idempotent(self, store, clock):
        transport = QueuedTransport("supabase", store, Deduplicator(store, clock=clock))
        envelope = make_envelope(idempotency_key="k", created_at=clock())
        assert await transport.send(envelope) == envelope.id
        assert await transport.send(envelope) == envelope.id
        assert get_metrics_collector().get_counter(
            "duplicates_detected_total", {"transport": "supabase"}
        ) == 0


class TestDuplicateAttempts:
    @pytest.mark.asyncio
    async def test_attempts_recorded_on_original(self, store, clock):
        dedup = Deduplicator(store, clock=clock)
        transport = QueuedTransport("supabase", store, dedup)
        first = make_envelope(idempotency_key="k", created_at=clock())
        await transport.send(first)

        dup_ids = []
        for _ in range(2):
            clock.advance(1000)
            dup = make_envelope(idempotency_key="k", created_at=clock())
            dup_ids.append(dup.id)
            await transport.send(dup)
        await dedup.drain()

        attempts = await dedup.get_duplicate_attempts("k")
        assert [a.duplicate_message_id for a in attempts] == list(reversed(dup_ids))
        assert all(a.original_message_id == first.id for a in attempts)
        assert all(a.status == "returned" for a in attempts)

        stored = await store.get(first.id)
        assert len(stored.metadata["duplicate_attempts"]) == 2

    @pytest.mark.asyncio
    async def test_tracking_disabled(self, store, clock):
        dedup = Deduplicator(store, track_attempts=False, clock=clock)
        transport = QueuedTransport("supabase", store, dedup)
        first = make_envelope(idempotency_key="k", created_at=clock())
        await transport.send(first)
        await transport.send(make_envelope(idempotency_key="k", created_at=clock()))
        await dedup.drain()
        assert await dedup.get_duplicate_attempts("k") == []

    @pytest.mark.asyncio
    async def test_tracking_failure_is_logged_not_raised(self, clock, caplog):
        store = AsyncMock()
        store.find_recent_by_idempotency_key.return_value = "original-id"
        store.record_duplicate_attempt.side_effect = RuntimeError("metadata write failed")
        dedup = Deduplicator(store, clock=clock)

        assert await dedup.check_duplicate(make_envelope(idempotency_key="k")) == "original-id"
        await dedup.drain()
        assert "Failed to track duplicate attempt" in caplog.text

    @pytest.mark.asyncio
    async def test_attempt_listing_failure_is_transport_error(self):
        store = AsyncMock()
        store.list_by_idempotency_key.side_effect = ConnectionError("db gone")
        with pytest.raises(TransportError):
            await Deduplicator(store).get_duplicate_attempts("k")

    @pytest.mark.asyncio
    async def test_entry_exactly_window_old_is_still_a_duplicate(self, store, clock):
        dedup = Deduplicator(store, window_ms=10_000, clock=clock)
        transport = QueuedTransport("supabase", store, dedup)
        first = make_envelope(idempotency_key="k", created_at=clock())
        await transport.send(first)

        clock.advance(10_000)
        assert await dedup.check_duplicate(make_envelope(idempotency_key="k", created_at=clock())) == first.id
        await dedup.drain()
