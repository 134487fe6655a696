"""Tests for the campaign lifecycle service and dispatch tick."""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import init_db
from app.models.awareness.enums import CampaignStatus, RecurrencePattern, TrackingEventType
from app.schemas.awareness.campaign import (
    BatchIn,
    CampaignCreate,
    CampaignUpdate,
    RecurringSchedule,
    ScheduledSchedule,
)
from app.services.awareness import campaigns as campaigns_service
from app.services.awareness import tracking as tracking_service
from app.services.awareness.collaborators import StaticDirectory
from app.services.awareness.errors import CampaignNotFound, InvalidSchedule, InvalidTransition
from app.services.awareness.tracking import Tracking
from app.services.awareness.types import DirectoryEntry


def _create(db_session, now, **kwargs):
    payload = CampaignCreate(name=kwargs.pop("name", "Invoice lure"), template_ref="invoice", **kwargs)
    return campaigns_service.create(db_session, payload, now=now)


def _launch(db_session, campaign, now, directory, delivery):
    return campaigns_service.launch(db_session, str(campaign.id), now=now, directory=directory, delivery=delivery)


class TestCrud:
    def test_create_defaults_to_draft_immediate(self, db_session, now):
        campaign = _create(db_session, now)

        assert campaign.status == CampaignStatus.draft
        assert campaign.schedule == {"type": "immediate"}
        assert campaign.target_group == "all"
        assert campaign.batch is None

    def test_create_rejects_invalid_recurrence(self, db_session, now):
        with pytest.raises(InvalidSchedule) as exc:
            _create(db_session, now, schedule=RecurringSchedule(pattern=RecurrencePattern.weekly))
        assert exc.value.code == "missing_days_of_week"

    def test_get_unknown_campaign(self, db_session):
        with pytest.raises(CampaignNotFound):
            campaigns_service.get(db_session, "00000000-0000-0000-0000-000000000000")
        with pytest.raises(CampaignNotFound):
            campaigns_service.get(db_session, "not-a-uuid")

    def test_list_filters_by_status_and_search(self, db_session, now, directory, delivery):
        first = _create(db_session, now, name="Payroll update", batch=BatchIn(batch_size=2, batch_delay_seconds=60))
        _create(db_session, now, name="Parcel notice")
        _launch(db_session, first, now, directory, delivery)

        active = campaigns_service.list(db_session, status="active")
        assert [campaign.name for campaign in active] == ["Payroll update"]
        found = campaigns_service.list_response(db_session, None, "parcel", limit=10, offset=0)
        assert found["count"] == 1
        assert found["items"][0].name == "Parcel notice"

    def test_update_only_in_draft(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now)
        updated = campaigns_service.update(
            db_session, str(campaign.id), CampaignUpdate(name="Renamed", target_group=["Finance"]), now=now
        )
        assert updated.name == "Renamed"
        assert updated.target_group == ["Finance"]

        _launch(db_session, campaign, now, directory, delivery)
        with pytest.raises(InvalidTransition) as exc:
            campaigns_service.update(db_session, str(campaign.id), CampaignUpdate(name="Again"), now=now)
        assert exc.value.code == "cannot_edit"

    def test_delete_only_in_draft(self, db_session, now, directory, delivery):
        draft = _create(db_session, now, name="Draft")
        campaigns_service.delete(db_session, str(draft.id))
        with pytest.raises(CampaignNotFound):
            campaigns_service.get(db_session, str(draft.id))

        launched = _create(db_session, now, name="Launched")
        _launch(db_session, launched, now, directory, delivery)
        with pytest.raises(InvalidTransition) as exc:
            campaigns_service.delete(db_session, str(launched.id))
        assert exc.value.code == "cannot_delete"


class TestLaunch:
    def test_immediate_launch_sends_first_batch(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=2, batch_delay_seconds=60))

        launched = _launch(db_session, campaign, now, directory, delivery)

        assert launched.status == CampaignStatus.active
        assert launched.recipient_ids == ["u1", "u2", "u3", "u4", "u5"]
        assert launched.total_recipients == 5
        assert launched.dispatched_batches == 1
        assert [entry.recipients for _, entry in delivery.calls] == [("u1", "u2")]
        records = tracking_service.interactions_for_campaign(db_session, str(campaign.id))
        assert [(record.user_id, record.sent) for record in records] == [("u1", True), ("u2", True)]

    def test_single_batch_campaign_completes_on_launch(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now)

        launched = _launch(db_session, campaign, now, directory, delivery)

        assert launched.status == CampaignStatus.completed
        assert launched.completed_at is not None

    def test_department_target_group(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, target_group=["Finance"])

        launched = _launch(db_session, campaign, now, directory, delivery)

        assert launched.recipient_ids == ["u1", "u2"]

    def test_future_schedule_is_scheduled(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, schedule=ScheduledSchedule(at=now + timedelta(hours=1)))

        launched = _launch(db_session, campaign, now, directory, delivery)

        assert launched.status == CampaignStatus.scheduled
        assert delivery.calls == []

    def test_launch_twice_is_rejected(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=1, batch_delay_seconds=60))
        _launch(db_session, campaign, now, directory, delivery)

        with pytest.raises(InvalidTransition) as exc:
            _launch(db_session, campaign, now, directory, delivery)
        assert exc.value.code == "cannot_launch"

    def test_launch_is_optimistic_when_delivery_fails(self, db_session, now, directory, failing_delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=2, batch_delay_seconds=60))

        launched = _launch(db_session, campaign, now, directory, failing_delivery)

        assert launched.status == CampaignStatus.active
        assert tracking_service.interactions_for_campaign(db_session, str(campaign.id)) == []

    def test_preview_plan_before_launch(self, db_session, now, directory):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=2, batch_delay_seconds=30))

        preview = campaigns_service.preview_plan(db_session, str(campaign.id), now=now, directory=directory)

        assert preview.batch_count == 3
        assert preview.first_dispatch_at == now


class TestDispatchTick:
    def test_remaining_batches_fire_on_later_ticks(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=2, batch_delay_seconds=60))
        _launch(db_session, campaign, now, directory, delivery)

        summary = campaigns_service.dispatch_due(db_session, now + timedelta(seconds=30), delivery)
        assert summary.batches == 0

        summary = campaigns_service.dispatch_due(db_session, now + timedelta(seconds=60), delivery)
        assert summary.batches == 1

        summary = campaigns_service.dispatch_due(db_session, now + timedelta(seconds=120), delivery)
        assert summary.batches == 1
        assert summary.completed == 1

        refreshed = campaigns_service.get(db_session, str(campaign.id))
        assert refreshed.status == CampaignStatus.completed
        assert refreshed.dispatched_batches == 3
        assert len(tracking_service.interactions_for_campaign(db_session, str(campaign.id))) == 5

    def test_repeated_tick_never_resends(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=2, batch_delay_seconds=60))
        _launch(db_session, campaign, now, directory, delivery)

        campaigns_service.dispatch_due(db_session, now + timedelta(seconds=60), delivery)
        campaigns_service.dispatch_due(db_session, now + timedelta(seconds=60), delivery)

        assert len(delivery.calls) == 2

    def test_scheduled_campaign_activates_when_due(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, schedule=ScheduledSchedule(at=now + timedelta(hours=1)))
        _launch(db_session, campaign, now, directory, delivery)

        early = campaigns_service.dispatch_due(db_session, now + timedelta(minutes=30), delivery)
        assert early.activated == 0

        due = campaigns_service.dispatch_due(db_session, now + timedelta(hours=1), delivery)
        assert due.activated == 1
        assert due.batches == 1
        assert due.completed == 1

    def test_missed_recurring_occurrences_catch_up(self, db_session, now, directory, delivery):
        campaign = _create(
            db_session,
            now,
            schedule=RecurringSchedule(
                pattern=RecurrencePattern.weekly,
                days_of_week=[1, 3, 5],
                end_date=(now + timedelta(days=14)).date(),
            ),
        )
        launched = _launch(db_session, campaign, now, directory, delivery)
        assert launched.status == CampaignStatus.scheduled

        summary = campaigns_service.dispatch_due(db_session, now + timedelta(days=15), delivery)

        assert summary.batches == 6
        assert summary.completed == 1
        assert [entry.occurrence for _, entry in delivery.calls] == list(range(6))

    def test_open_ended_recurrence_stays_active(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, schedule=RecurringSchedule(pattern=RecurrencePattern.daily))
        _launch(db_session, campaign, now, directory, delivery)

        summary = campaigns_service.dispatch_due(db_session, now + timedelta(days=3), delivery)

        assert summary.batches == 3
        assert summary.completed == 0
        assert campaigns_service.get(db_session, str(campaign.id)).status == CampaignStatus.active

    def test_paused_campaign_is_skipped_then_catches_up(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=2, batch_delay_seconds=60))
        _launch(db_session, campaign, now, directory, delivery)
        campaigns_service.pause(db_session, str(campaign.id))

        paused = campaigns_service.dispatch_due(db_session, now + timedelta(seconds=90), delivery)
        assert paused.batches == 0

        campaigns_service.resume(db_session, str(campaign.id))
        resumed = campaigns_service.dispatch_due(db_session, now + timedelta(seconds=120), delivery)
        assert resumed.batches == 2
        assert resumed.completed == 1

    def test_failed_batch_is_counted(self, db_session, now, directory, delivery, failing_delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=3, batch_delay_seconds=60))
        _launch(db_session, campaign, now, directory, delivery)

        summary = campaigns_service.dispatch_due(db_session, now + timedelta(seconds=60), failing_delivery)

        assert summary.failed == 1
        assert len(tracking_service.interactions_for_campaign(db_session, str(campaign.id))) == 3

    def test_stop_cancels_campaign(self, db_session, now, directory, delivery):
        campaign = _create(db_session, now, batch=BatchIn(batch_size=2, batch_delay_seconds=60))
        _launch(db_session, campaign, now, directory, delivery)

        stopped = campaigns_service.stop(db_session, str(campaign.id), now=now)
        summary = campaigns_service.dispatch_due(db_session, now + timedelta(minutes=5), delivery)

        assert stopped.status == CampaignStatus.cancelled
        assert stopped.completed_at is not None
        assert summary.batches == 0


def test_count_by_status(db_session, now, directory, delivery):
    _create(db_session, now, name="Draft")
    launched = _create(db_session, now, name="Live", batch=BatchIn(batch_size=1, batch_delay_seconds=60))
    _launch(db_session, launched, now, directory, delivery)

    counts = campaigns_service.count_by_status(db_session)

    assert counts["draft"] == 1
    assert counts["active"] == 1
    assert counts["completed"] == 0


def test_recipient_sent_events_use_batch_instant(db_session, now, directory, delivery):
    campaign = _create(db_session, now, batch=BatchIn(batch_size=4, batch_delay_seconds=600))
    _launch(db_session, campaign, now, directory, delivery)
    campaigns_service.dispatch_due(db_session, now + timedelta(hours=1), delivery)

    events = tracking_service.events_for_campaign(db_session, str(campaign.id))
    late = [event for event in events if event.user_id == "u5"]
    assert late[0].type == TrackingEventType.sent
    assert late[0].timestamp == now + timedelta(seconds=600)


@pytest.fixture()
def committing_session():
    """Session on a private database where commit and rollback are real."""
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def test_failed_sent_recording_never_resends_batches(monkeypatch, committing_session, now, delivery):
    directory = StaticDirectory([DirectoryEntry(user_id=user_id, department="Finance") for user_id in ("u1", "u2", "u3")])
    campaign = _create(committing_session, now, batch=BatchIn(batch_size=1, batch_delay_seconds=60))
    _launch(committing_session, campaign, now, directory, delivery)

    original_ingest = Tracking.ingest

    def flaky_ingest(db, event, **kwargs):
        if event.user_id == "u3":
            raise RuntimeError("tracking store unavailable")
        return original_ingest(db, event, **kwargs)

    with monkeypatch.context() as patch:
        patch.setattr(Tracking, "ingest", staticmethod(flaky_ingest))
        first = campaigns_service.dispatch_due(committing_session, now + timedelta(seconds=200), delivery)
    second = campaigns_service.dispatch_due(committing_session, now + timedelta(seconds=300), delivery)

    assert [entry.recipients for _, entry in delivery.calls] == [("u1",), ("u2",), ("u3",)]
    assert (first.batches, first.failed, first.completed) == (2, 1, 1)
    assert second.batches == 0
    refreshed = campaigns_service.get(committing_session, str(campaign.id))
    assert refreshed.status == CampaignStatus.completed
    assert refreshed.last_dispatch_at is not None
    assert tracking_service.get_interaction(committing_session, str(campaign.id), "u2").sent_at is not None
    assert tracking_service.get_interaction(committing_session, str(campaign.id), "u3") is None
