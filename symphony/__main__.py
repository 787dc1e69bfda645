#!/usr/bin/env python3
# symphony/__main__.py
"""
Symphony operator commands.

Usage:
    # Run a worker for the default transport until SIGINT/SIGTERM
    python -m symphony worker

    # Worker on one transport and queue, exiting after 500 messages
    python -m symphony worker --transport supabase --queue emails --message-limit 500

    # Apply pending SQL migrations
    python -m symphony migrate

    # Print the resolved configuration (and any warnings)
    python -m symphony config

    # Inspect and replay the failed-message ledger
    python -m symphony failed --transport supabase --limit 20
    python -m symphony replay 5b1c0e9a-...

    # Queue statistics for the last 6 hours, and retention cleanup
    python -m symphony stats --hours 6
    python -m symphony cleanup --ttl-days 14

    # Dispatch due schedules once (cron-driven) or keep polling
    python -m symphony scheduler --batch-size 100
    python -m symphony scheduler --loop

Environment:
    APP_ENV, DATABASE_URL / PG*, SYMPHONY_* (see symphony/config.py)
    SYMPHONY_HANDLER_MODULES: modules exposing register(registry)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import uuid
from datetime import datetime, timedelta

from symphony.bootstrap import build_deduplicator, build_dispatcher, build_transports
from symphony.config import Settings, get_settings, load_config, warn_on_risky_config
from symphony.core.dispatcher import Dispatcher
from symphony.core.envelope import utcnow
from symphony.core.errors import SymphonyError
from symphony.core.executor import HandlerExecutor
from symphony.core.registry import HandlerRegistry, parse_handler_modules, register_handler_modules
from symphony.core.router import TransportKind
from symphony.core.scheduler import Scheduler
from symphony.infra import migrate
from symphony.infra.db_async import close_pool, init_pool
from symphony.infra.logging_config import get_logger, setup_logging
from symphony.infra.pg_envelope_repo_async import get_envelope_repo
from symphony.infra.pg_failed_message_repo_async import get_failed_message_repo
from symphony.infra.pg_schedule_repo_async import get_schedule_repo
from symphony.infra.worker import MessageWorker
from symphony.transport.base import Transport
from symphony.transport.database import QueuedTransport

logger = get_logger(__name__)


def _executor(settings: Settings) -> HandlerExecutor:
    registry = HandlerRegistry()
    register_handler_modules(registry, parse_handler_modules(settings.symphony_handler_modules))
    return HandlerExecutor(registry)


async def run_worker(args: argparse.Namespace, settings: Settings) -> int:
    config = load_config(settings)
    for warning in warn_on_risky_config(config):
        logger.warning(f"Config: {warning}")

    name = args.transport or config.default_transport
    transport_config = config.transports.get(name)
    if transport_config is None or transport_config.kind != TransportKind.QUEUED:
        logger.error(f"Transport '{name}' is not a configured queued transport")
        return 2
    if not transport_config.enabled:
        logger.error(f"Transport '{name}' is disabled")
        return 2

    await init_pool(settings)
    try:
        store = get_envelope_repo()
        transport = QueuedTransport(
            name,
            store,
            build_deduplicator(config, store),
            lock_seconds=settings.symphony_worker_lock_seconds,
            queue=args.queue,
        )
        worker = MessageWorker(
            transport,
            _executor(settings),
            config.retry_resolver(),
            poll_interval=settings.symphony_worker_poll_interval,
            batch_size=settings.symphony_worker_batch_size,
            handler_timeout=settings.symphony_worker_handler_timeout,
            message_limit=args.message_limit or settings.symphony_worker_message_limit,
            time_limit=args.time_limit or settings.symphony_worker_time_limit,
            failure_limit=args.failure_limit or settings.symphony_worker_failure_limit,
            stale_check_every=settings.symphony_worker_stale_check_every,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.ensure_future(worker.stop(s.name.lower())))

        await worker.start()
        await worker.wait()
        await transport.deduplicator.drain()

        stats = await worker.get_stats()
        logger.info(
            f"Worker finished: processed={stats.processed}, succeeded={stats.succeeded}, "
            f"retried={stats.retried}, failed={stats.failed}, reason={stats.shutdown_reason}"
        )
        return 0
    finally:
        await close_pool()


async def show_failed(args: argparse.Namespace, settings: Settings) -> int:
    await init_pool(settings)
    try:
        repo = get_failed_message_repo()
        items = await repo.list_failed(args.transport, limit=args.limit, offset=args.offset)
        total = await repo.count_failed(args.transport)
    finally:
        await close_pool()

    print(f"{len(items)} of {total} failed message(s)")
    for item in items:
        replayed = f" replayed->{item.replayed_message_id}" if item.replayed_message_id else ""
        print(
            f"{item.id}  {item.failed_at.isoformat()}  {item.transport_name}/{item.queue}  "
            f"{item.message_type}  retries={item.retry_count}/{item.max_retries}  "
            f"{item.error_class or '-'}: {item.error[:120]}{replayed}"
        )
    return 0


async def replay(args: argparse.Namespace, settings: Settings) -> int:
    try:
        uuid.UUID(args.failed_id)
    except ValueError:
        logger.error(f"Replay failed: '{args.failed_id}' is not a failed message id")
        return 1

    config = load_config(settings)
    await init_pool(settings)
    try:
        dispatcher = build_dispatcher(config, _executor(settings), get_envelope_repo())
        result = await dispatcher.replay_failed(args.failed_id, get_failed_message_repo())
    except SymphonyError as exc:
        logger.error(f"Replay failed: {exc.message}")
        return 1
    finally:
        await close_pool()

    print(result.message_id)
    return 0


async def collect_report(envelopes, failed, schedules, *, transport_name: str | None, since: datetime) -> dict:
    """Status, priority and type breakdowns plus ledger and schedule counts."""
    stats = await envelopes.collect_stats(transport_name, since=since)
    report = stats.to_dict(
        failed_messages=await failed.count_failed(transport_name, since=since),
        scheduled_messages=await schedules.count_schedules(),
    )
    report["transport"] = transport_name
    report["since"] = since.isoformat()
    return report


async def show_stats(args: argparse.Namespace, settings: Settings) -> int:
    since = utcnow() - timedelta(hours=args.hours)
    await init_pool(settings)
    try:
        report = await collect_report(
            get_envelope_repo(),
            get_failed_message_repo(),
            get_schedule_repo(),
            transport_name=args.transport,
            since=since,
        )
    finally:
        await close_pool()

    print(json.dumps(report, indent=2, default=str))
    return 0


async def run_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    ttl_days = args.ttl_days if args.ttl_days is not None else settings.symphony_completed_ttl_days
    if ttl_days < 1:
        logger.error(f"Retention must be at least one day, got {ttl_days}")
        return 2

    config = load_config(settings)
    queued = [name for name, t in config.transports.items() if t.kind == TransportKind.QUEUED]
    await init_pool(settings)
    try:
        repo = get_envelope_repo()
        deleted = await repo.cleanup_completed(ttl_days=ttl_days)
        released = {name: await repo.release_expired_locks(name) for name in queued}
    finally:
        await close_pool()

    print(json.dumps({"deleted_completed": deleted, "ttl_days": ttl_days, "released_locks": released}))
    return 0


async def run_scheduler(args: argparse.Namespace, settings: Settings) -> int:
    config = load_config(settings)
    batch_size = args.batch_size or settings.symphony_scheduler_batch_size

    transports: list[Transport] = []
    await init_pool(settings)
    try:
        transports = build_transports(config, _executor(settings), get_envelope_repo())
        scheduler = Scheduler(
            Dispatcher(config, transports=transports),
            get_schedule_repo(),
            lease_seconds=settings.symphony_scheduler_lease_seconds,
        )
        if not args.loop:
            fired = await scheduler.process_due_messages(batch_size)
            print(json.dumps({"processed": fired, "batch_size": batch_size}))
            return 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        logger.info(f"Scheduler started: batch={batch_size}, poll={settings.symphony_scheduler_poll_interval}s")
        while not stop.is_set():
            try:
                await scheduler.process_due_messages(batch_size)
            except Exception as exc:
                logger.error(f"Scheduler pass failed: {exc}", exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.symphony_scheduler_poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")
        return 0
    finally:
        for transport in transports:
            deduplicator = getattr(transport, "deduplicator", None)
            if deduplicator is not None:
                await deduplicator.drain()
        await close_pool()


def show_config(args: argparse.Namespace, settings: Settings) -> int:
    config = load_config(settings)
    print(json.dumps(config.to_dict(), indent=2, default=str))
    for warning in warn_on_risky_config(config):
        print(f"warning: {warning}", file=sys.stderr)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="symphony",
        description="Symphony message dispatcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run a worker until interrupted or a limit is reached")
    worker.add_argument("--transport", help="Queued transport to consume (default: SYMPHONY_DEFAULT_TRANSPORT)")
    worker.add_argument("--queue", help="Only consume this queue")
    worker.add_argument("--message-limit", type=int, help="Stop after N messages")
    worker.add_argument("--time-limit", type=float, help="Stop after N seconds")
    worker.add_argument("--failure-limit", type=int, help="Stop after N messages moved to the failed ledger")

    sub.add_parser("migrate", help="Apply pending SQL migrations")
    sub.add_parser("config", help="Print the resolved dispatcher configuration as JSON")

    failed = sub.add_parser("failed", help="List the failed-message ledger")
    failed.add_argument("--transport", help="Only this transport")
    failed.add_argument("--limit", type=int, default=50)
    failed.add_argument("--offset", type=int, default=0)

    replay_cmd = sub.add_parser("replay", help="Re-dispatch a failed message as a new envelope")
    replay_cmd.add_argument("failed_id", help="Failed ledger entry id")

    stats = sub.add_parser("stats", help="Print queue statistics as JSON")
    stats.add_argument("--transport", help="Only this transport")
    stats.add_argument("--hours", type=float, default=24, help="Time range (default: last 24 hours)")

    cleanup = sub.add_parser("cleanup", help="Delete old completed envelopes and release expired locks")
    cleanup.add_argument("--ttl-days", type=int, help="Retention (default: SYMPHONY_COMPLETED_TTL_DAYS)")

    scheduler = sub.add_parser("scheduler", help="Dispatch due schedules")
    scheduler.add_argument("--batch-size", type=int, help="Schedules per pass (default: SYMPHONY_SCHEDULER_BATCH_SIZE)")
    scheduler.add_argument("--loop", action="store_true", help="Keep running a pass every SYMPHONY_SCHEDULER_POLL_INTERVAL seconds")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except SymphonyError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 2
    setup_logging(level=settings.log_level, use_json=settings.log_json)

    try:
        if args.command == "config":
            return show_config(args, settings)
        if args.command == "migrate":
            return asyncio.run(migrate.main())
        if args.command == "worker":
            return asyncio.run(run_worker(args, settings))
        if args.command == "failed":
            return asyncio.run(show_failed(args, settings))
        if args.command == "replay":
            return asyncio.run(replay(args, settings))
        if args.command == "stats":
            return asyncio.run(show_stats(args, settings))
        if args.command == "cleanup":
            return asyncio.run(run_cleanup(args, settings))
        if args.command == "scheduler":
            return asyncio.run(run_scheduler(args, settings))
    except SymphonyError as exc:
        logger.error(f"{args.command} failed: {exc.message}")
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
