# tests/test_transports.py
"""Sync and queued transports"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import make_envelope
from symphony.core.envelope import EnvelopeStatus
from symphony.core.errors import NonRetryableError, TransportError
from symphony.core.router import TransportKind
from symphony.infra.metrics import get_metrics_collector
from symphony.transport.database import QueuedTransport, default_worker_id
from symphony.transport.sync import SyncTransport


class TestSyncTransport:
    @pytest.mark.asyncio
    async def test_runs_handler_inline(self, registry, executor):
        seen = []

        async def handle(message, context):
            seen.append(message.payload)

        registry.register("send_email", handle)
        transport = SyncTransport(executor)
        envelope = make_envelope(transport_name="sync")

        assert transport.kind == TransportKind.SYNC
        assert await transport.send(envelope) == envelope.id
        assert envelope.status == EnvelopeStatus.COMPLETED
        assert seen == [{"to": "a@example.com"}]
        assert await transport.receive(10) == []
        assert await transport.get_queue_depth() == 0

    @pytest.mark.asyncio
    async def test_failure_raises_transport_error_with_retryable(self, registry, executor):
        async def handle(message, context):
            raise ConnectionError("smtp down")

        registry.register("send_email", handle)
        envelope = make_envelope(transport_name="sync")

        with pytest.raises(TransportError) as exc_info:
            await SyncTransport(executor).send(envelope)
        assert exc_info.value.retryable is True
        assert envelope.status == EnvelopeStatus.FAILED
        assert "smtp down" in envelope.last_error

    @pytest.mark.asyncio
    async def test_missing_handler_is_not_retryable(self, executor):
        with pytest.raises(TransportError) as exc_info:
            await SyncTransport(executor).send(make_envelope(transport_name="sync"))
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_fan_out_runs_every_handler(self, registry, executor):
        calls = []

        async def audit(message, context):
            calls.append("audit")

        async def crm(message, context):
            raise NonRetryableError("crm rejected contact")

        registry.register("contact_updated", audit)
        registry.register("contact_updated", crm)

        with pytest.raises(TransportError) as exc_info:
            await SyncTransport(executor).send(make_envelope("contact_updated", transport_name="sync"))
        assert calls == ["audit"]
        assert exc_info.value.retryable is False
        assert exc_info.value.details["failed_handlers"] == ["crm"]

    @pytest.mark.asyncio
    async def test_wrong_transport_rejected(self, executor):
        with pytest.raises(TransportError, match="addressed to"):
            await SyncTransport(executor).send(make_envelope(transport_name="supabase"))


class TestQueuedTransport:
    def test_worker_id_format(self):
        assert default_worker_id().startswith("worker-")
        assert default_worker_id() != default_worker_id()

    @pytest.mark.asyncio
    async def test_lifecycle_complete(self, store):
        transport = QueuedTransport("supabase", store, worker_id="w1")
        envelope = make_envelope()
        await transport.send(envelope)
        assert await transport.get_queue_depth() == 1

        claimed = await transport.receive(10)
        assert [e.id for e in claimed] == [envelope.id]
        assert claimed[0].status == EnvelopeStatus.PROCESSING
        assert await transport.receive(10) == []

        assert await transport.acknowledge(claimed[0])
        assert (await store.get(envelope.id)).status == EnvelopeStatus.COMPLETED
        assert await transport.get_queue_depth() == 0

    @pytest.mark.asyncio
    async def test_retry_reschedules_with_backoff(self, store, clock):
        transport = QueuedTransport("supabase", store, worker_id="w1")
        await transport.send(make_envelope())
        [claimed] = await transport.receive(1)

        assert await transport.retry(claimed, 1000, RuntimeError("smtp down"))
        assert claimed.retry_count == 1
        assert await transport.receive(1) == []  # not yet available

        clock.advance(1000)
        [again] = await transport.receive(1)
        assert again.id == claimed.id
        assert again.retry_count == 1
        assert again.last_error == "smtp down"

    @pytest.mark.asyncio
    async def test_reject_moves_to_failed_ledger(self, store):
        transport = QueuedTransport("supabase", store, worker_id="w1")
        envelope = make_envelope(idempotency_key="k")
        await transport.send(envelope)
        [claimed] = await transport.receive(1)

        assert await transport.reject(claimed, NonRetryableError("bad address"), 3)
        assert (await store.get(envelope.id)).status == EnvelopeStatus.FAILED
        [failed] = await store.list_failed("supabase")
        assert failed.message_id == envelope.id
        assert failed.error == "bad address"
        assert failed.error_class == "NonRetryableError"
        assert failed.max_retries == 3
        assert failed.idempotency_key == "k"

    @pytest.mark.asyncio
    async def test_lost_claim_reports_false(self, store):
        mine = QueuedTransport("supabase", store, worker_id="w1")
        theirs = QueuedTransport("supabase", store, worker_id="w2")
        await mine.send(make_envelope())
        [claimed] = await mine.receive(1)

        assert await theirs.acknowledge(claimed) is False
        assert await theirs.retry(claimed, 10, RuntimeError("x")) is False
        assert await theirs.reject(claimed, RuntimeError("x"), 3) is False
        assert get_metrics_collector().get_counter("lost_claims_total", {"transport": "supabase"}) == 3
        assert await mine.acknowledge(claimed) is True

    @pytest.mark.asyncio
    async def test_expired_locks_are_released(self, store, clock):
        transport = QueuedTransport("supabase", store, worker_id="w1", lock_seconds=30)
        await transport.send(make_envelope())
        [claimed] = await transport.receive(1)

        clock.advance(seconds=31)
        assert await transport.release_expired_locks() == 1
        other = QueuedTransport("supabase", store, worker_id="w2")
        [reclaimed] = await other.receive(1)
        assert reclaimed.id == claimed.id
        assert await transport.acknowledge(claimed) is False

    @pytest.mark.asyncio
    async def test_queue_filter(self, store):
        transport = QueuedTransport("supabase", store, worker_id="w1", queue="emails")
        await transport.send(make_envelope(queue="emails"))
        await transport.send(make_envelope(queue="sms"))
        claimed = await transport.receive(10)
        assert [e.queue for e in claimed] == ["emails"]
        assert await transport.get_queue_depth("sms") == 1

    @pytest.mark.asyncio
    async def test_store_failures_become_transport_errors(self):
        store = AsyncMock()
        store.insert.side_effect = OSError("disk full")
        transport = QueuedTransport("supabase", store)

        with pytest.raises(TransportError, match="disk full") as exc_info:
            await transport.send(make_envelope())
        assert isinstance(exc_info.value.__cause__, OSError)
        assert get_metrics_collector().get_counter("store_errors_total", {"operation": "insert"}) == 1

    @pytest.mark.asyncio
    async def test_wrong_transport_rejected(self, store):
        with pytest.raises(TransportError):
            await QueuedTransport("supabase", store).send(make_envelope(transport_name="bulk"))
