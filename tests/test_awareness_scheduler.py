"""Tests for the campaign delivery planner."""

from datetime import UTC, date, datetime, time, timedelta

import pytest

from app.models.awareness.enums import RecurrencePattern, ScheduleKind
from app.services.awareness.errors import InvalidSchedule
from app.services.awareness.scheduler import (
    BatchConfig,
    Immediate,
    Recurring,
    Scheduled,
    describe_schedule,
    partition_recipients,
    plan,
    schedule_from_dict,
    schedule_to_dict,
)

# Monday
NOW = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)
RECIPIENTS = ["u5", "u3", "u1", "u4", "u2"]


def test_immediate_plan_fires_now_in_one_batch():
    result = plan(Immediate(), None, RECIPIENTS, NOW)

    assert result.kind == ScheduleKind.immediate
    assert result.first_dispatch_at == NOW
    assert result.batches == (("u1", "u2", "u3", "u4", "u5"),)
    assert result.is_finite


def test_batches_are_sorted_and_spaced_by_delay():
    result = plan(Immediate(), BatchConfig(batch_size=2, batch_delay_seconds=60), RECIPIENTS, NOW)

    entries = list(result.entries())
    assert [entry.recipients for entry in entries] == [("u1", "u2"), ("u3", "u4"), ("u5",)]
    assert [entry.dispatch_at for entry in entries] == [
        NOW,
        NOW + timedelta(seconds=60),
        NOW + timedelta(seconds=120),
    ]
    assert result.recipient_count == 5


def test_partition_drops_duplicates():
    assert partition_recipients(["b", "a", "b"], None) == (("a", "b"),)
    assert partition_recipients([], BatchConfig(batch_size=10, batch_delay_seconds=5)) == ()


@pytest.mark.parametrize(
    "size, delay",
    [(0, 60), (1001, 60), (10, 0), (10, 3601)],
)
def test_batch_bounds_are_enforced(size, delay):
    with pytest.raises(InvalidSchedule):
        BatchConfig(batch_size=size, batch_delay_seconds=delay)


def test_scheduled_plan_uses_timezone_for_naive_instant():
    config = Scheduled(at=datetime(2024, 3, 10, 9, 0), timezone="America/New_York")
    result = plan(config, None, RECIPIENTS, NOW)

    assert result.first_dispatch_at == datetime(2024, 3, 10, 13, 0, tzinfo=UTC)


def test_scheduled_in_the_past_is_rejected():
    with pytest.raises(InvalidSchedule) as exc:
        plan(Scheduled(at=NOW - timedelta(minutes=1)), None, RECIPIENTS, NOW)
    assert exc.value.code == "schedule_not_in_future"


def test_unknown_timezone_is_rejected():
    with pytest.raises(InvalidSchedule) as exc:
        plan(Scheduled(at=NOW + timedelta(days=1), timezone="Mars/Olympus"), None, RECIPIENTS, NOW)
    assert exc.value.code == "unknown_timezone"


def test_weekly_recurrence_over_two_weeks_yields_six_instants():
    config = Recurring(
        pattern=RecurrencePattern.weekly,
        days_of_week=frozenset({1, 3, 5}),
        end_date=(NOW + timedelta(days=14)).date(),
    )
    result = plan(config, None, RECIPIENTS, NOW)

    instants = list(result.occurrences())
    assert len(instants) == 6
    assert [instant.date() for instant in instants] == [
        date(2024, 3, 6),
        date(2024, 3, 8),
        date(2024, 3, 11),
        date(2024, 3, 13),
        date(2024, 3, 15),
        date(2024, 3, 18),
    ]
    assert all(instant.time() == time(9, 0) for instant in instants)


def test_planning_is_deterministic():
    config = Recurring(pattern=RecurrencePattern.daily, end_date=date(2024, 3, 20), time_of_day=time(8, 30))
    batch = BatchConfig(batch_size=2, batch_delay_seconds=30)

    first = plan(config, batch, RECIPIENTS, NOW)
    second = plan(config, batch, list(reversed(RECIPIENTS)), NOW)

    assert first == second
    assert first.to_rows(None) == second.to_rows(None)


def test_weekly_without_days_is_rejected():
    with pytest.raises(InvalidSchedule) as exc:
        plan(Recurring(pattern=RecurrencePattern.weekly), None, RECIPIENTS, NOW)
    assert exc.value.code == "missing_days_of_week"


def test_end_date_in_the_past_is_rejected():
    config = Recurring(pattern=RecurrencePattern.daily, end_date=date(2024, 3, 1))
    with pytest.raises(InvalidSchedule):
        plan(config, None, RECIPIENTS, NOW)


def test_monthly_recurrence_clamps_to_short_months():
    config = Recurring(
        pattern=RecurrencePattern.monthly,
        day_of_month=31,
        end_date=date(2024, 6, 30),
        time_of_day=time(12, 0),
    )
    result = plan(config, None, RECIPIENTS, NOW)

    assert [instant.date() for instant in result.occurrences()] == [
        date(2024, 3, 31),
        date(2024, 4, 30),
        date(2024, 5, 31),
        date(2024, 6, 30),
    ]


def test_open_ended_recurrence_is_infinite():
    result = plan(Recurring(pattern=RecurrencePattern.daily), None, RECIPIENTS, NOW)

    assert not result.is_finite
    assert result.last_dispatch_at() is None
    assert len(list(result.entries(limit=10))) == 10


def test_entries_between_is_half_open():
    config = Recurring(pattern=RecurrencePattern.daily, end_date=date(2024, 3, 10), time_of_day=time(10, 0))
    result = plan(config, None, RECIPIENTS, NOW)
    first = result.first_dispatch_at

    assert result.entries_between(None, first - timedelta(seconds=1)) == []
    assert len(result.entries_between(None, first)) == 1
    assert result.entries_between(first, first) == []
    assert len(result.entries_between(first, first + timedelta(days=2))) == 2


def test_schedule_dict_round_trip():
    config = Recurring(
        pattern=RecurrencePattern.weekly,
        days_of_week=frozenset({0, 6}),
        end_date=date(2024, 4, 1),
        timezone="Europe/Berlin",
    )

    assert schedule_from_dict(schedule_to_dict(config)) == config
    assert schedule_from_dict(None) == Immediate()


def test_malformed_schedule_dict_raises():
    with pytest.raises(InvalidSchedule) as exc:
        schedule_from_dict({"type": "scheduled"})
    assert exc.value.code == "malformed_schedule"


def test_describe_schedule():
    config = Recurring(pattern=RecurrencePattern.weekly, days_of_week=frozenset({1, 3}))
    summary = describe_schedule(config, BatchConfig(batch_size=50, batch_delay_seconds=300))

    assert summary == "Weekly on Mon, Wed until cancelled; batches of 50 every 300s"
