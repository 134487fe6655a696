"""Tests for the campaign status machine."""

from datetime import UTC, datetime, timedelta

import pytest

from app.models.awareness.enums import CampaignStatus
from app.services.awareness.errors import InvalidTransition
from app.services.awareness.lifecycle import TERMINAL_STATUSES, plan_exhausted, transition
from app.services.awareness.scheduler import BatchConfig, Immediate, Scheduled, plan

NOW = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)


def test_launch_immediate_goes_active():
    dispatch_plan = plan(Immediate(), None, ["u1"], NOW)

    assert transition(CampaignStatus.draft, "launch", dispatch_plan=dispatch_plan, now=NOW) == CampaignStatus.active


def test_launch_future_schedule_goes_scheduled():
    dispatch_plan = plan(Scheduled(at=NOW + timedelta(hours=2)), None, ["u1"], NOW)

    assert transition(CampaignStatus.draft, "launch", dispatch_plan=dispatch_plan, now=NOW) == CampaignStatus.scheduled


def test_launch_requires_plan():
    with pytest.raises(InvalidTransition) as exc:
        transition(CampaignStatus.draft, "launch")
    assert exc.value.code == "launch_requires_plan"


@pytest.mark.parametrize(
    "status, action, expected",
    [
        (CampaignStatus.scheduled, "activate", CampaignStatus.active),
        (CampaignStatus.active, "pause", CampaignStatus.paused),
        (CampaignStatus.paused, "resume", CampaignStatus.active),
        (CampaignStatus.active, "complete", CampaignStatus.completed),
        (CampaignStatus.paused, "cancel", CampaignStatus.cancelled),
        (CampaignStatus.draft, "cancel", CampaignStatus.cancelled),
    ],
)
def test_allowed_transitions(status, action, expected):
    assert transition(status, action) == expected


@pytest.mark.parametrize(
    "status, action",
    [
        (CampaignStatus.draft, "pause"),
        (CampaignStatus.paused, "pause"),
        (CampaignStatus.scheduled, "resume"),
        (CampaignStatus.completed, "cancel"),
        (CampaignStatus.cancelled, "resume"),
    ],
)
def test_rejected_transitions(status, action):
    with pytest.raises(InvalidTransition) as exc:
        transition(status, action)
    assert exc.value.code == f"cannot_{action}"
    assert exc.value.status_code == 409


def test_unknown_action():
    with pytest.raises(InvalidTransition) as exc:
        transition(CampaignStatus.active, "explode")
    assert exc.value.code == "unknown_action"


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        for action in ("activate", "pause", "resume", "complete", "cancel"):
            with pytest.raises(InvalidTransition):
                transition(status, action)


def test_plan_exhausted_after_last_batch():
    dispatch_plan = plan(Immediate(), BatchConfig(batch_size=1, batch_delay_seconds=60), ["u1", "u2"], NOW)

    assert not plan_exhausted(dispatch_plan, None)
    assert not plan_exhausted(dispatch_plan, NOW)
    assert plan_exhausted(dispatch_plan, NOW + timedelta(seconds=60))


def test_empty_plan_is_exhausted_immediately():
    assert plan_exhausted(plan(Immediate(), None, [], NOW), None)
