"""Calendar-day bucketing shared by every time-series view."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, date, datetime, timedelta, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar

from app.services.awareness.types import as_utc

T = TypeVar("T")

Classifier = Callable[[T], Iterable[str]]
Deriver = Callable[[dict[str, Any]], dict[str, Any]]


def round_half_up(value: float, places: int = 1) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def ratio(numerator: float, denominator: float, places: int = 1) -> float:
    """Percentage ``numerator / denominator * 100``; a zero denominator yields 0."""
    if not denominator:
        return 0.0
    return round_half_up(numerator / denominator * 100, places)


def local_date(value: datetime, tz: tzinfo = UTC) -> date:
    return as_utc(value).astimezone(tz).date()


def iter_days(start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def bucket_by_day(
    events: Iterable[T],
    start: datetime,
    end: datetime,
    classify: Classifier,
    *,
    timestamp_of: Callable[[T], datetime] = lambda event: event.timestamp,
    derive: Deriver | None = None,
    counters: Sequence[str] = (),
    tz: tzinfo = UTC,
) -> list[dict[str, Any]]:
    """Return one row per calendar day in ``[start, end]``, zero days included.

    ``classify`` maps an event to the counter names it increments (possibly
    none). Every counter that appears anywhere in the range, plus any name in
    ``counters``, is present on every row. ``derive`` receives the finished
    counter row and returns extra fields (rates) to merge into it.
    """
    first_day = local_date(start, tz)
    last_day = local_date(end, tz)
    if first_day > last_day:
        return []

    per_day: dict[date, Counter] = {day: Counter() for day in iter_days(first_day, last_day)}
    names: list[str] = list(dict.fromkeys(counters))
    for event in events:
        day = local_date(timestamp_of(event), tz)
        bucket = per_day.get(day)
        if bucket is None:
            continue
        for name in classify(event):
            bucket[name] += 1
            if name not in names:
                names.append(name)

    rows: list[dict[str, Any]] = []
    for day, bucket in per_day.items():
        row: dict[str, Any] = {"date": day.isoformat()}
        for name in names:
            row[name] = bucket.get(name, 0)
        if derive is not None:
            row.update(derive(row))
        rows.append(row)
    return rows
