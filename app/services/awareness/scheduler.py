"""Campaign delivery planner.

Turns a delivery intent (immediate, scheduled or recurring, optionally
batched) into a :class:`DispatchPlan`. Planning is pure: identical inputs
always yield equal plans, and nothing is sent from here. The delivery
collaborator consumes plan entries.
"""

from __future__ import annotations

import calendar
import math
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from itertools import islice
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.models.awareness.enums import RecurrencePattern, ScheduleKind
from app.services.awareness.errors import InvalidSchedule
from app.services.awareness.types import as_utc

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
MIN_BATCH_DELAY_SECONDS = 1
MAX_BATCH_DELAY_SECONDS = 3600

_WEEKDAY_LABELS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


@dataclass(frozen=True)
class Immediate:
    kind = ScheduleKind.immediate


@dataclass(frozen=True)
class Scheduled:
    at: datetime
    timezone: str = "UTC"

    kind = ScheduleKind.scheduled


@dataclass(frozen=True)
class Recurring:
    """Recurring delivery.

    ``days_of_week`` uses 0 = Sunday .. 6 = Saturday and only applies to the
    weekly pattern. ``time_of_day`` defaults to the launch wall time and
    ``day_of_month`` (monthly) to the launch day.
    """

    pattern: RecurrencePattern
    days_of_week: frozenset[int] = frozenset()
    end_date: date | None = None
    timezone: str = "UTC"
    time_of_day: time | None = None
    day_of_month: int | None = None

    kind = ScheduleKind.recurring

    def __post_init__(self) -> None:
        object.__setattr__(self, "pattern", RecurrencePattern(self.pattern))
        object.__setattr__(self, "days_of_week", frozenset(int(day) for day in self.days_of_week))


ScheduleConfig = Immediate | Scheduled | Recurring


@dataclass(frozen=True)
class BatchConfig:
    batch_size: int
    batch_delay_seconds: int

    def __post_init__(self) -> None:
        if not MIN_BATCH_SIZE <= self.batch_size <= MAX_BATCH_SIZE:
            raise InvalidSchedule(
                "invalid_batch_size",
                f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}",
            )
        if not MIN_BATCH_DELAY_SECONDS <= self.batch_delay_seconds <= MAX_BATCH_DELAY_SECONDS:
            raise InvalidSchedule(
                "invalid_batch_delay",
                f"batch_delay_seconds must be between {MIN_BATCH_DELAY_SECONDS} and {MAX_BATCH_DELAY_SECONDS}",
            )


@dataclass(frozen=True)
class DispatchEntry:
    occurrence: int
    batch_index: int
    dispatch_at: datetime
    recipients: tuple[str, ...]

    def to_row(self) -> dict[str, Any]:
        return {
            "occurrence": self.occurrence,
            "batch_index": self.batch_index,
            "dispatch_at": self.dispatch_at.isoformat(),
            "recipient_count": len(self.recipients),
            "recipients": " ".join(self.recipients),
        }


@dataclass(frozen=True)
class DispatchPlan:
    kind: ScheduleKind
    planned_at: datetime
    batches: tuple[tuple[str, ...], ...]
    batch_delay_seconds: int = 0
    start_at: datetime | None = None
    recurrence: Recurring | None = None

    @property
    def is_finite(self) -> bool:
        return self.recurrence is None or self.recurrence.end_date is not None

    @property
    def batch_count(self) -> int:
        return len(self.batches)

    @property
    def recipient_count(self) -> int:
        return sum(len(batch) for batch in self.batches)

    def occurrences(self) -> Iterator[datetime]:
        """Fresh iterator over occurrence instants; call again to restart."""
        if self.recurrence is None:
            if self.start_at is not None:
                yield self.start_at
            return
        yield from _recurring_instants(self.recurrence, self.planned_at)

    @property
    def first_dispatch_at(self) -> datetime | None:
        return next(self.occurrences(), None)

    def entries(self, limit: int | None = None) -> Iterator[DispatchEntry]:
        generated = self._entries()
        if limit is not None:
            generated = islice(generated, limit)
        return generated

    def _entries(self) -> Iterator[DispatchEntry]:
        if not self.batches:
            return
        delay = timedelta(seconds=self.batch_delay_seconds)
        for occurrence, instant in enumerate(self.occurrences()):
            for index, batch in enumerate(self.batches):
                yield DispatchEntry(
                    occurrence=occurrence,
                    batch_index=index,
                    dispatch_at=instant + delay * index,
                    recipients=batch,
                )

    def entries_between(self, after: datetime | None, until: datetime) -> list[DispatchEntry]:
        """Entries with ``after < dispatch_at <= until``, in dispatch order."""
        after = as_utc(after)
        until = as_utc(until)
        due: list[DispatchEntry] = []
        for entry in self._entries():
            if entry.batch_index == 0 and entry.dispatch_at > until:
                break
            if entry.dispatch_at <= until and (after is None or entry.dispatch_at > after):
                due.append(entry)
        due.sort(key=lambda entry: (entry.dispatch_at, entry.occurrence, entry.batch_index))
        return due

    def last_dispatch_at(self) -> datetime | None:
        """Instant of the final entry of a finite plan."""
        if not self.is_finite:
            return None
        last = None
        for entry in self._entries():
            if last is None or entry.dispatch_at > last:
                last = entry.dispatch_at
        return last

    def to_rows(self, limit: int | None = 100) -> list[dict[str, Any]]:
        return [entry.to_row() for entry in self.entries(limit)]


def resolve_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidSchedule("unknown_timezone", f"Unknown timezone: {name}") from exc


def partition_recipients(recipients: Iterable[str], batch: BatchConfig | None) -> tuple[tuple[str, ...], ...]:
    """Split recipients into batches, ordered by id so membership is stable."""
    ordered = tuple(sorted({str(recipient) for recipient in recipients}))
    if not ordered:
        return ()
    if batch is None:
        return (ordered,)
    count = math.ceil(len(ordered) / batch.batch_size)
    return tuple(ordered[i * batch.batch_size : (i + 1) * batch.batch_size] for i in range(count))


def resolve_scheduled_instant(config: Scheduled, now: datetime) -> datetime:
    zone = resolve_zone(config.timezone)
    at = config.at
    if at.tzinfo is None:
        at = at.replace(tzinfo=zone)
    instant = at.astimezone(UTC)
    if instant <= as_utc(now):
        raise InvalidSchedule("schedule_not_in_future", "Scheduled time must be in the future")
    return instant


def _js_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def _matches(config: Recurring, day: date, anchor_day: int) -> bool:
    if config.pattern == RecurrencePattern.daily:
        return True
    if config.pattern == RecurrencePattern.weekly:
        return _js_weekday(day) in config.days_of_week
    last_day = calendar.monthrange(day.year, day.month)[1]
    return day.day == min(anchor_day, last_day)


def _recurring_instants(config: Recurring, now: datetime) -> Iterator[datetime]:
    zone = resolve_zone(config.timezone)
    local_now = as_utc(now).astimezone(zone)
    time_of_day = config.time_of_day or local_now.time().replace(tzinfo=None)
    anchor_day = config.day_of_month or local_now.day
    day = local_now.date()
    while config.end_date is None or day <= config.end_date:
        if _matches(config, day, anchor_day):
            instant = datetime.combine(day, time_of_day, tzinfo=zone).astimezone(UTC)
            if instant > now:
                yield instant
        day += timedelta(days=1)


def validate_recurring(config: Recurring, now: datetime) -> None:
    zone = resolve_zone(config.timezone)
    if config.pattern == RecurrencePattern.weekly and not config.days_of_week:
        raise InvalidSchedule("missing_days_of_week", "Weekly recurrence requires at least one day of week")
    if any(day < 0 or day > 6 for day in config.days_of_week):
        raise InvalidSchedule("invalid_days_of_week", "days_of_week values must be between 0 and 6")
    if config.day_of_month is not None and not 1 <= config.day_of_month <= 31:
        raise InvalidSchedule("invalid_day_of_month", "day_of_month must be between 1 and 31")
    if config.end_date is not None and config.end_date < as_utc(now).astimezone(zone).date():
        raise InvalidSchedule("end_date_in_past", "Recurrence end date is in the past")


def plan(
    config: ScheduleConfig,
    batch: BatchConfig | None,
    recipients: Iterable[str],
    now: datetime,
) -> DispatchPlan:
    now = as_utc(now)
    batches = partition_recipients(recipients, batch)
    delay = batch.batch_delay_seconds if batch else 0

    if isinstance(config, Immediate):
        return DispatchPlan(
            kind=ScheduleKind.immediate,
            planned_at=now,
            batches=batches,
            batch_delay_seconds=delay,
            start_at=now,
        )
    if isinstance(config, Scheduled):
        return DispatchPlan(
            kind=ScheduleKind.scheduled,
            planned_at=now,
            batches=batches,
            batch_delay_seconds=delay,
            start_at=resolve_scheduled_instant(config, now),
        )
    if isinstance(config, Recurring):
        validate_recurring(config, now)
        dispatch_plan = DispatchPlan(
            kind=ScheduleKind.recurring,
            planned_at=now,
            batches=batches,
            batch_delay_seconds=delay,
            recurrence=config,
        )
        if dispatch_plan.first_dispatch_at is None:
            raise InvalidSchedule("empty_recurrence", "Recurrence produces no dispatch before its end date")
        return dispatch_plan
    raise InvalidSchedule("unknown_schedule", f"Unsupported schedule config: {type(config).__name__}")


# ---------------------------------------------------------------------------
# JSON round-trip for the campaign row
# ---------------------------------------------------------------------------


def schedule_to_dict(config: ScheduleConfig) -> dict[str, Any]:
    if isinstance(config, Immediate):
        return {"type": ScheduleKind.immediate.value}
    if isinstance(config, Scheduled):
        return {"type": ScheduleKind.scheduled.value, "at": config.at.isoformat(), "timezone": config.timezone}
    return {
        "type": ScheduleKind.recurring.value,
        "pattern": config.pattern.value,
        "days_of_week": sorted(config.days_of_week),
        "end_date": config.end_date.isoformat() if config.end_date else None,
        "timezone": config.timezone,
        "time_of_day": config.time_of_day.isoformat() if config.time_of_day else None,
        "day_of_month": config.day_of_month,
    }


def schedule_from_dict(data: dict[str, Any] | None) -> ScheduleConfig:
    data = data or {"type": ScheduleKind.immediate.value}
    try:
        kind = ScheduleKind(data.get("type", ScheduleKind.immediate.value))
        if kind == ScheduleKind.immediate:
            return Immediate()
        if kind == ScheduleKind.scheduled:
            return Scheduled(at=datetime.fromisoformat(data["at"]), timezone=data.get("timezone") or "UTC")
        return Recurring(
            pattern=RecurrencePattern(data["pattern"]),
            days_of_week=frozenset(data.get("days_of_week") or ()),
            end_date=date.fromisoformat(data["end_date"]) if data.get("end_date") else None,
            timezone=data.get("timezone") or "UTC",
            time_of_day=time.fromisoformat(data["time_of_day"]) if data.get("time_of_day") else None,
            day_of_month=data.get("day_of_month"),
        )
    except (KeyError, ValueError, TypeError) as exc:
        raise InvalidSchedule("malformed_schedule", f"Malformed schedule config: {exc}") from exc


def batch_to_dict(batch: BatchConfig | None) -> dict[str, int] | None:
    if batch is None:
        return None
    return {"batch_size": batch.batch_size, "batch_delay_seconds": batch.batch_delay_seconds}


def batch_from_dict(data: dict[str, Any] | None) -> BatchConfig | None:
    if not data:
        return None
    return BatchConfig(batch_size=int(data["batch_size"]), batch_delay_seconds=int(data["batch_delay_seconds"]))


def describe_schedule(config: ScheduleConfig, batch: BatchConfig | None = None) -> str:
    if isinstance(config, Immediate):
        summary = "Send immediately"
    elif isinstance(config, Scheduled):
        summary = f"Send at {config.at.isoformat()} ({config.timezone})"
    else:
        summary = config.pattern.value.capitalize()
        if config.pattern == RecurrencePattern.weekly:
            summary += " on " + ", ".join(_WEEKDAY_LABELS[day] for day in sorted(config.days_of_week))
        summary += f" until {config.end_date.isoformat()}" if config.end_date else " until cancelled"
    if batch is not None:
        summary += f"; batches of {batch.batch_size} every {batch.batch_delay_seconds}s"
    return summary
