# symphony/core/scheduler.py
"""
Recurring and delayed dispatch.

A schedule pairs a message with one rule:
    once      fire at ``scheduled_at``
    cron      five-field cron expression, evaluated in the schedule's timezone
    interval  every ``interval_ms`` milliseconds (first run at ``scheduled_at``
              when given, otherwise one interval from now)

``Scheduler.process_due_messages`` is called periodically
(``python -m symphony scheduler``). Every occurrence is dispatched with the
idempotency key ``schedule:<id>:<run time>``, so an occurrence fired again
after a crash resolves to the envelope it already produced.

Usage:
    scheduler = Scheduler(dispatcher, store)
    schedule_id = await scheduler.schedule(
        Message("send_digest", {"list": "weekly"}),
        ScheduleConfig.cron("0 9 * * 1", timezone_name="Europe/Berlin"),
    )
    fired = await scheduler.process_due_messages(batch_size=100)
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from symphony.core.envelope import Message, utcnow, validate_message, validate_name, validate_priority
from symphony.core.errors import MessageValidationError, SymphonyError
from symphony.infra.logging_config import get_logger
from symphony.infra.metrics import DispatcherMetrics

if TYPE_CHECKING:
    from symphony.core.dispatcher import Dispatcher
    from symphony.core.ports import ScheduleStore

logger = get_logger(__name__)

CRON_SEARCH_YEARS = 5

_CRON_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),  # 0 and 7 are both Sunday
)


class ScheduleType(str, Enum):
    ONCE = "once"
    CRON = "cron"
    INTERVAL = "interval"


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------

def _parse_cron_field(part: str, name: str, low: int, high: int) -> frozenset[int]:
    """``*``, ``5``, ``1-5``, ``1,3,5``, ``*/15``, ``10-40/10``."""
    values: set[int] = set()
    for segment in part.split(","):
        base, _, step_text = segment.partition("/")
        try:
            step = int(step_text) if step_text else 1
            if base == "*":
                start, end = low, high
            elif "-" in base:
                start_text, end_text = base.split("-", 1)
                start, end = int(start_text), int(end_text)
            else:
                start = int(base)
                end = high if step_text else start
        except ValueError as exc:
            raise MessageValidationError(f"Invalid cron {name} field: {part!r}") from exc

        if step <= 0 or start < low or end > high or start > end:
            raise MessageValidationError(f"Cron {name} field must be within {low}-{high}: {part!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]  # 0 = Sunday
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> CronExpression:
        """
        Parse ``minute hour day month weekday``.

        Raises:
            MessageValidationError: wrong field count, bad syntax or out-of-range values
        """
        if not isinstance(expression, str):
            raise MessageValidationError(f"Cron expression must be a string, got {expression!r}")
        parts = expression.split()
        if len(parts) != 5:
            raise MessageValidationError(f"Invalid cron expression {expression!r}: expected 5 fields")

        minutes, hours, days, months, weekdays = (
            _parse_cron_field(part, name, low, high)
            for part, (name, low, high) in zip(parts, _CRON_FIELDS)
        )
        return cls(
            expression=" ".join(parts),
            minutes=minutes,
            hours=hours,
            days=days,
            months=months,
            weekdays=frozenset(d % 7 for d in weekdays),
            day_restricted=not parts[2].startswith("*"),
            weekday_restricted=not parts[4].startswith("*"),
        )

    def _day_matches(self, moment: datetime) -> bool:
        in_month = moment.day in self.days
        in_week = moment.isoweekday() % 7 in self.weekdays
        # Classic cron: when both day fields are restricted, either may match.
        if self.day_restricted and self.weekday_restricted:
            return in_month or in_week
        return in_month and in_week

    def next_after(self, after: datetime, tz: tzinfo = timezone.utc) -> datetime:
        """First matching minute strictly after ``after``, in UTC."""
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        local = after.astimezone(tz).replace(tzinfo=None, second=0, microsecond=0) + timedelta(minutes=1)
        limit = local + timedelta(days=366 * CRON_SEARCH_YEARS)

        while local < limit:
            if local.month not in self.months:
                local = (local.replace(day=1, hour=0, minute=0) + timedelta(days=32)).replace(day=1)
            elif not self._day_matches(local):
                local = local.replace(hour=0, minute=0) + timedelta(days=1)
            elif local.hour not in self.hours:
                local = local.replace(minute=0) + timedelta(hours=1)
            elif local.minute not in self.minutes:
                local += timedelta(minutes=1)
            else:
                return local.replace(tzinfo=tz).astimezone(timezone.utc)

        raise MessageValidationError(f"Cron expression {self.expression!r} never fires")


def next_cron_run(expression: str, after: datetime | None = None, timezone_name: str = "UTC") -> datetime:
    """Next run time of ``expression`` after ``after`` (default: now)."""
    return CronExpression.parse(expression).next_after(after or utcnow(), get_zone(timezone_name))


def get_zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise MessageValidationError(f"Unknown timezone: {name!r}") from exc


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class ScheduleConfig:
    type: ScheduleType
    scheduled_at: datetime | None = None
    expression: str | None = None
    interval_ms: int | None = None
    timezone_name: str = "UTC"
    max_runs: int | None = None

    @classmethod
    def once(cls, scheduled_at: datetime) -> ScheduleConfig:
        return cls(ScheduleType.ONCE, scheduled_at=scheduled_at)

    @classmethod
    def cron(cls, expression: str, *, timezone_name: str = "UTC", max_runs: int | None = None) -> ScheduleConfig:
        return cls(ScheduleType.CRON, expression=expression, timezone_name=timezone_name, max_runs=max_runs)

    @classmethod
    def interval(
        cls,
        interval_ms: int,
        *,
        start_at: datetime | None = None,
        max_runs: int | None = None,
    ) -> ScheduleConfig:
        return cls(ScheduleType.INTERVAL, scheduled_at=start_at, interval_ms=interval_ms, max_runs=max_runs)

    def validated(self) -> ScheduleConfig:
        """Check the rule's required fields; naive datetimes are taken as UTC."""
        kind = ScheduleType(self.type)
        if self.max_runs is not None and self.max_runs <= 0:
            raise MessageValidationError("max_runs must be positive")
        get_zone(self.timezone_name)

        if kind == ScheduleType.ONCE and self.scheduled_at is None:
            raise MessageValidationError("A 'once' schedule needs scheduled_at")
        if kind == ScheduleType.CRON:
            CronExpression.parse(self.expression)
        if kind == ScheduleType.INTERVAL:
            if isinstance(self.interval_ms, bool) or not isinstance(self.interval_ms, int) or self.interval_ms <= 0:
                raise MessageValidationError(f"interval_ms must be a positive integer, got {self.interval_ms!r}")

        scheduled_at = _as_utc(self.scheduled_at) if self.scheduled_at is not None else None
        return replace(self, type=kind, scheduled_at=scheduled_at)

    def first_run(self, now: datetime) -> datetime:
        if self.type == ScheduleType.ONCE:
            return self.scheduled_at
        if self.type == ScheduleType.CRON:
            return CronExpression.parse(self.expression).next_after(now, get_zone(self.timezone_name))
        if self.scheduled_at is not None:
            return self.scheduled_at
        return now + timedelta(milliseconds=self.interval_ms)

    def next_run(self, run_at: datetime, now: datetime) -> datetime | None:
        """Occurrence after ``run_at``; missed occurrences before ``now`` are skipped."""
        if self.type == ScheduleType.ONCE:
            return None
        if self.type == ScheduleType.CRON:
            return CronExpression.parse(self.expression).next_after(max(run_at, now), get_zone(self.timezone_name))

        step = timedelta(milliseconds=self.interval_ms)
        upcoming = run_at + step
        if upcoming <= now:
            upcoming += step * ((now - upcoming) // step + 1)
        return upcoming

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "expression": self.expression,
            "interval_ms": self.interval_ms,
            "timezone": self.timezone_name,
            "max_runs": self.max_runs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleConfig:
        scheduled_at = data.get("scheduled_at")
        return cls(
            type=ScheduleType(data["type"]),
            scheduled_at=datetime.fromisoformat(scheduled_at) if scheduled_at else None,
            expression=data.get("expression"),
            interval_ms=data.get("interval_ms"),
            timezone_name=data.get("timezone") or "UTC",
            max_runs=data.get("max_runs"),
        )


@dataclass
class Schedule:
    id: str
    message: Message
    config: ScheduleConfig
    next_run_at: datetime | None
    transport_name: str | None = None
    queue: str | None = None
    priority: int | None = None
    enabled: bool = True
    run_count: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def occurrence_key(self) -> str:
        return f"schedule:{self.id}:{self.next_run_at.isoformat()}"


class Scheduler:
    def __init__(
        self,
        dispatcher: Dispatcher,
        store: ScheduleStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: float = 60.0,
    ):
        self._dispatcher = dispatcher
        self._store = store
        self._clock = clock
        self._lease_seconds = lease_seconds

    async def schedule(
        self,
        message: Message,
        config: ScheduleConfig,
        *,
        transport_name: str | None = None,
        queue: str | None = None,
        priority: int | None = None,
    ) -> str:
        """
        Store a schedule and return its id.

        Raises:
            MessageValidationError: malformed message, rule, timezone or options
        """
        validate_message(message)
        config = config.validated()
        if transport_name is not None:
            validate_name(transport_name)
        if queue is not None:
            validate_name(queue, "queue")
        if priority is not None:
            validate_priority(priority)

        now = self._clock()
        schedule = Schedule(
            id=str(uuid.uuid4()),
            message=message,
            config=config,
            next_run_at=config.first_run(now),
            transport_name=transport_name,
            queue=queue,
            priority=priority,
            created_at=now,
        )
        await self._store.insert_schedule(schedule)
        logger.info(
            f"Schedule created: id={schedule.id[:8]}, type={message.type}, "
            f"rule={config.type.value}, next_run={schedule.next_run_at.isoformat()}",
            extra={"message_type": message.type},
        )
        return schedule.id

    async def cancel(self, schedule_id: str) -> bool:
        cancelled = await self._store.cancel_schedule(schedule_id)
        if cancelled:
            logger.info(f"Schedule cancelled: id={schedule_id[:8]}")
        return cancelled

    async def get_due_schedules(self, limit: int = 100) -> list[Schedule]:
        return await self._store.list_due_schedules(self._clock(), limit)

    async def process_due_messages(self, batch_size: int = 100) -> int:
        """Dispatch every due occurrence (up to ``batch_size``); returns how many fired."""
        now = self._clock()
        claimed = await self._store.claim_due_schedules(now, batch_size, lease_seconds=self._lease_seconds)
        fired = 0
        for schedule in claimed:
            if await self._fire(schedule, now):
                fired += 1
        if claimed:
            logger.info(f"Scheduler pass: due={len(claimed)}, fired={fired}")
        return fired

    async def _fire(self, schedule: Schedule, now: datetime) -> bool:
        run_at = schedule.next_run_at
        message_type = schedule.message.type
        try:
            result = await self._dispatcher.dispatch(
                schedule.message,
                idempotency_key=schedule.occurrence_key(),
                transport_name=schedule.transport_name,
                queue=schedule.queue,
                priority=schedule.priority,
                metadata={"schedule_id": schedule.id, "scheduled_for": run_at.isoformat()},
            )
        except SymphonyError as exc:
            DispatcherMetrics.schedule_failed(message_type)
            logger.error(
                f"Scheduled dispatch failed: schedule={schedule.id[:8]}, type={message_type}, error={exc.message}",
                extra={"message_type": message_type},
            )
            # Keep the occurrence due; it fires again once the lease lapses.
            await self._store.advance_schedule(
                schedule.id,
                expected_run_at=run_at,
                next_run_at=run_at,
                last_run_at=schedule.last_run_at,
                run_count=schedule.run_count,
                last_error=exc.message,
            )
            return False

        run_count = schedule.run_count + 1
        next_run_at = schedule.config.next_run(run_at, now)
        if schedule.config.max_runs is not None and run_count >= schedule.config.max_runs:
            next_run_at = None

        advanced = await self._store.advance_schedule(
            schedule.id,
            expected_run_at=run_at,
            next_run_at=next_run_at,
            last_run_at=now,
            run_count=run_count,
        )
        if not advanced:
            logger.warning(f"Schedule {schedule.id[:8]} changed while firing (cancelled or lease lost)")

        DispatcherMetrics.schedule_fired(message_type)
        logger.info(
            f"Schedule fired: id={schedule.id[:8]}, type={message_type}, message={result.message_id[:8]}, "
            f"duplicate={result.duplicate}, next_run={next_run_at.isoformat() if next_run_at else None}",
            extra={"message_id": result.message_id, "message_type": message_type},
        )
        return True
