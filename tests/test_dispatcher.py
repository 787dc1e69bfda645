# tests/test_dispatcher.py
"""
Producer API end to end over the in-memory store:
- envelope creation and routing
- duplicate enqueue returning the original id
- batch and multi-transport dispatch
- failed-ledger replay
"""
from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import make_config
from symphony.bootstrap import build_dispatcher, build_transports
from symphony.core.dispatcher import Dispatcher
from symphony.core.envelope import Message
from symphony.core.errors import (
    ConfigurationError,
    DuplicateMessageError,
    MessageValidationError,
    TransportError,
)
from symphony.infra.metrics import get_metrics_collector
from symphony.infra.worker import MessageWorker
from symphony.transport.database import QueuedTransport
from symphony.transport.sync import SyncTransport


@pytest.fixture
def dispatcher(config, executor, store):
    return build_dispatcher(config, executor, store, worker_id="w1")


class TestBootstrap:
    def test_builds_enabled_transports(self, config, executor, store):
        transports = {t.name: t for t in build_transports(config, executor, store)}
        assert isinstance(transports["sync"], SyncTransport)
        assert isinstance(transports["supabase"], QueuedTransport)

    def test_disabled_transport_is_skipped(self, executor, store):
        config = make_config({"SYMPHONY_TRANSPORT_SYNC_ENABLED": "false"})
        assert "sync" not in {t.name for t in build_transports(config, executor, store)}

    def test_queued_transports_share_a_deduplicator(self, executor, store):
        config = make_config({"SYMPHONY_TRANSPORT_BULK_KIND": "queued"})
        queued = [t for t in build_transports(config, executor, store) if isinstance(t, QueuedTransport)]
        assert len(queued) == 2
        assert queued[0].deduplicator is queued[1].deduplicator


class TestCreateEnvelope:
    def test_defaults_from_transport(self, dispatcher):
        envelope = dispatcher.create_envelope(Message("send_email", {"to": "x"}))
        assert envelope.transport_name == "supabase"
        assert envelope.queue == "default"
        assert envelope.priority == 3  # test profile
        assert envelope.headers["x-message-type"] == "send_email"
        assert envelope.headers["x-message-id"] == envelope.id
        assert "x-dispatched-at" in envelope.headers

    def test_explicit_options(self, dispatcher):
        envelope = dispatcher.create_envelope(
            Message("send_email", metadata={"source": "crm"}),
            transport_name="sync",
            priority=9,
            queue="urgent",
            metadata={"tenant": "t1"},
            headers={"x-trace": "abc"},
        )
        assert envelope.transport_name == "sync"
        assert envelope.priority == 9
        assert envelope.queue == "urgent"
        assert envelope.metadata == {"source": "crm", "tenant": "t1"}
        assert envelope.headers["x-trace"] == "abc"

    def test_naive_scheduled_at_is_utc(self, dispatcher):
        naive = datetime(2030, 1, 1, 12, 0)
        envelope = dispatcher.create_envelope(Message("digest"), scheduled_at=naive)
        assert envelope.scheduled_at.tzinfo == timezone.utc
        assert envelope.available_at == envelope.scheduled_at

    @pytest.mark.parametrize("message,options", [
        (Message(""), {}),
        (Message("send_email"), {"priority": 11}),
        (Message("send_email"), {"idempotency_key": "k" * 256}),
        (Message("send_email"), {"queue": "has space"}),
    ])
    def test_validation_errors(self, dispatcher, message, options):
        with pytest.raises(MessageValidationError):
            dispatcher.create_envelope(message, **options)

    def test_unknown_transport(self, dispatcher):
        with pytest.raises(ConfigurationError):
            dispatcher.create_envelope(Message("send_email"), transport_name="kafka")

    def test_routing_table_wins(self, executor, store):
        config = make_config(symphony_routing=json.dumps({"ping": "sync"}))
        dispatcher = build_dispatcher(config, executor, store)
        assert dispatcher.create_envelope(Message("ping")).transport_name == "sync"


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_duplicate_enqueue_returns_original_and_handler_runs_once(
        self, dispatcher, registry, executor, config, store
    ):
        calls = []

        async def handle(message, context):
            calls.append(message.payload["campaign_id"])

        registry.register("send_campaign_step", handle)
        message = Message("send_campaign_step", {"campaign_id": "c-42"})

        first = await dispatcher.enqueue(message, idempotency_key="campaign-42-step-3")
        second = await dispatcher.enqueue(message, idempotency_key="campaign-42-step-3")
        assert first == second
        await dispatcher.get_transport("supabase").deduplicator.drain()

        worker = MessageWorker(dispatcher.get_transport("supabase"), executor, config.retry_resolver())
        assert await worker.run_once() == 1
        assert await worker.run_once() == 0
        assert calls == ["c-42"]

        stored = await store.get(first)
        assert len(stored.metadata["duplicate_attempts"]) == 1
        assert get_metrics_collector().get_counter(
            "messages_dispatched_total", {"transport": "supabase", "message_type": "send_campaign_step"}
        ) == 1

    @pytest.mark.asyncio
    async def test_dispatch_result_flags_duplicate(self, dispatcher):
        first = await dispatcher.dispatch(Message("send_email"), idempotency_key="k")
        second = await dispatcher.dispatch(Message("send_email"), idempotency_key="k")
        assert first.duplicate is False
        assert second.duplicate is True
        assert second.message_id == first.message_id
        assert second.envelope_id != first.envelope_id

    @pytest.mark.asyncio
    async def test_reject_duplicates(self, executor, store):
        config = make_config(symphony_deduplication_reject=True)
        dispatcher = build_dispatcher(config, executor, store)
        original = await dispatcher.enqueue(Message("send_email"), idempotency_key="k")
        with pytest.raises(DuplicateMessageError) as exc_info:
            await dispatcher.enqueue(Message("send_email"), idempotency_key="k")
        assert exc_info.value.existing_id == original
        await dispatcher.get_transport("supabase").deduplicator.drain()

    @pytest.mark.asyncio
    async def test_scheduled_message_is_not_claimable_yet(self, dispatcher, store, clock):
        later = clock() + timedelta(minutes=10)
        await dispatcher.enqueue(Message("digest"), scheduled_at=later)
        transport = dispatcher.get_transport("supabase")
        assert await transport.receive(10) == []
        clock.advance(seconds=600)
        assert len(await transport.receive(10)) == 1

    @pytest.mark.asyncio
    async def test_sync_transport_runs_inline(self, dispatcher, registry):
        seen = []

        async def handle(message, context):
            seen.append(context.envelope.transport_name)

        registry.register("ping", handle)
        await dispatcher.enqueue(Message("ping"), transport_name="sync")
        assert seen == ["sync"]

    @pytest.mark.asyncio
    async def test_unregistered_transport(self, config):
        dispatcher = Dispatcher(config)
        with pytest.raises(ConfigurationError, match="not registered"):
            await dispatcher.enqueue(Message("send_email"))

    @pytest.mark.asyncio
    async def test_foreign_errors_become_transport_errors(self, config):
        transport = AsyncMock()
        transport.name = "supabase"
        transport.send.side_effect = RuntimeError("socket closed")
        dispatcher = Dispatcher(config)
        dispatcher._transports["supabase"] = transport

        with pytest.raises(TransportError, match="socket closed") as exc_info:
            await dispatcher.enqueue(Message("send_email"))
        assert exc_info.value.details["transport"] == "supabase"
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestBatchDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_batch(self, dispatcher, store):
        results = await dispatcher.dispatch_batch([Message("a"), Message("b"), Message("c")])
        assert all(r.success for r in results)
        assert await store.queue_depth("supabase") == 3

    @pytest.mark.asyncio
    async def test_empty_batch(self, dispatcher):
        assert await dispatcher.dispatch_batch([]) == []

    @pytest.mark.asyncio
    async def test_shared_idempotency_key_rejected(self, dispatcher):
        with pytest.raises(MessageValidationError):
            await dispatcher.dispatch_batch([Message("a"), Message("b")], idempotency_key="k")

    @pytest.mark.asyncio
    async def test_dispatch_to_transports_skips_failures(self, dispatcher, registry):
        async def handle(message, context):
            raise RuntimeError("inline failure")

        registry.register("audit", handle)
        results = await dispatcher.dispatch_to_transports(
            Message("audit"), ["supabase", "sync", "kafka"], transport_name="ignored"
        )
        assert [r.transport_name for r in results] == ["supabase"]


class TestReplay:
    async def _fail_one(self, dispatcher, registry, executor, config, store):
        async def handle(message, context):
            raise ValueError("invalid address")

        registry.register("send_email", handle)
        await dispatcher.enqueue(Message("send_email", {"to": "bad"}), idempotency_key="welcome-1")
        worker = MessageWorker(dispatcher.get_transport("supabase"), executor, config.retry_resolver())
        await worker.run_once()
        [failed] = await store.list_failed()
        return failed

    @pytest.mark.asyncio
    async def test_replay_creates_new_envelope(self, dispatcher, registry, executor, store):
        no_retry = make_config(symphony_retry_configs=json.dumps({"send_email": {"maxRetries": 0, "delay": 0}}))
        failed = await self._fail_one(dispatcher, registry, executor, no_retry, store)

        result = await dispatcher.replay_failed(failed.id, store)

        assert result.message_id != failed.message_id
        replayed = await store.get(result.message_id)
        assert replayed.message.payload == {"to": "bad"}
        assert replayed.idempotency_key is None
        assert replayed.metadata["replayed_from"] == failed.id
        assert replayed.metadata["original_message_id"] == failed.message_id
        assert (await store.get_failed(failed.id)).replayed_message_id == result.message_id

        with pytest.raises(MessageValidationError, match="already replayed"):
            await dispatcher.replay_failed(failed.id, store)

    @pytest.mark.asyncio
    async def test_replay_missing(self, dispatcher, store):
        with pytest.raises(MessageValidationError, match="not found"):
            await dispatcher.replay_failed("nope", store)

    @pytest.mark.asyncio
    async def test_concurrent_replays_dispatch_once(self, dispatcher, registry, executor, store):
        no_retry = make_config(symphony_retry_configs=json.dumps({"send_email": {"maxRetries": 0, "delay": 0}}))
        failed = await self._fail_one(dispatcher, registry, executor, no_retry, store)
        read_failed = store.get_failed

        async def stale_read(failed_id):
            # both replays see the entry before either claims it
            snapshot = copy.deepcopy(await read_failed(failed_id))
            await asyncio.sleep(0)
            return snapshot

        store.get_failed = stale_read
        outcomes = await asyncio.gather(
            dispatcher.replay_failed(failed.id, store),
            dispatcher.replay_failed(failed.id, store),
            return_exceptions=True,
        )

        errors = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(errors) == 1
        assert isinstance(errors[0], MessageValidationError)
        assert "already replayed" in str(errors[0])
        assert await store.queue_depth("supabase") == 1

    @pytest.mark.asyncio
    async def test_lost_replay_claim_sends_nothing(self, dispatcher, registry, executor, store):
        no_retry = make_config(symphony_retry_configs=json.dumps({"send_email": {"maxRetries": 0, "delay": 0}}))
        failed = await self._fail_one(dispatcher, registry, executor, no_retry, store)
        store.mark_replayed = AsyncMock(return_value=False)

        with pytest.raises(MessageValidationError, match="already replayed"):
            await dispatcher.replay_failed(failed.id, store)
        assert await store.queue_depth("supabase") == 0

    @pytest.mark.asyncio
    async def test_failed_replay_releases_claim(self, dispatcher, registry, executor, store):
        no_retry = make_config(symphony_retry_configs=json.dumps({"send_email": {"maxRetries": 0, "delay": 0}}))
        failed = await self._fail_one(dispatcher, registry, executor, no_retry, store)
        transport = dispatcher.get_transport("supabase")
        transport.send = AsyncMock(side_effect=TransportError("database unavailable"))

        with pytest.raises(TransportError):
            await dispatcher.replay_failed(failed.id, store)
        entry = await store.get_failed(failed.id)
        assert entry.replayed_at is None
        assert entry.replayed_message_id is None

        del transport.send
        result = await dispatcher.replay_failed(failed.id, store)
        assert (await store.get_failed(failed.id)).replayed_message_id == result.message_id
