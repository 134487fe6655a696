"""Tests for persistent tracking ingestion."""

from datetime import UTC, datetime, timedelta

import pytest

from app.models.awareness import OrphanTrackingEvent, RecipientInteraction, TrackingEventLog
from app.models.awareness.enums import TrackingEventType
from app.services.awareness import tracking as tracking_service
from app.services.awareness.types import ClickedMetadata, TrackingEvent

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)


@pytest.fixture()
def broadcasts(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "app.websocket.broadcaster.broadcast_analytics_update",
        lambda campaign_id, event: calls.append((campaign_id, event)),
    )
    return calls


def _event(campaign, event_type, minutes=0, user_id="u1", metadata=None):
    return TrackingEvent(
        campaign_id=str(getattr(campaign, "id", campaign)),
        user_id=user_id,
        type=event_type,
        timestamp=T0 + timedelta(minutes=minutes),
        metadata=metadata,
    )


def test_first_event_is_recorded(db_session, campaign, broadcasts):
    result = tracking_service.ingest(db_session, _event(campaign, TrackingEventType.sent))

    assert result.outcome == "recorded"
    assert result.record.sent_at == T0
    assert db_session.query(RecipientInteraction).count() == 1
    assert db_session.query(TrackingEventLog).count() == 1
    assert broadcasts[0][0] == str(campaign.id)
    assert broadcasts[0][1]["type"] == "sent"


def test_duplicate_is_logged_but_keeps_first_timestamp(db_session, campaign, broadcasts):
    tracking_service.ingest(db_session, _event(campaign, TrackingEventType.clicked, minutes=5))
    result = tracking_service.ingest(db_session, _event(campaign, TrackingEventType.clicked, minutes=50))

    assert result.outcome == "duplicate"
    assert result.record.clicked_at == T0 + timedelta(minutes=5)
    assert db_session.query(TrackingEventLog).count() == 2
    assert len(broadcasts) == 1

    stored = tracking_service.get_interaction(db_session, str(campaign.id), "u1")
    assert stored.clicked_at == T0 + timedelta(minutes=5)


def test_out_of_order_events_fold_to_same_state(db_session, campaign, broadcasts):
    tracking_service.ingest(db_session, _event(campaign, TrackingEventType.reported, minutes=9))
    tracking_service.ingest(db_session, _event(campaign, TrackingEventType.sent, minutes=0))

    record = tracking_service.get_interaction(db_session, str(campaign.id), "u1")
    assert record.sent and record.reported
    assert not record.opened


def test_metadata_survives_round_trip(db_session, campaign, broadcasts):
    tracking_service.ingest(
        db_session,
        _event(
            campaign,
            TrackingEventType.clicked,
            metadata=ClickedMetadata(clicked_url="https://pay.test", attack_vector="qr"),
        ),
    )

    record = tracking_service.get_interaction(db_session, str(campaign.id), "u1")
    assert record.metadata[TrackingEventType.clicked].clicked_url == "https://pay.test"
    events = tracking_service.events_for_campaign(db_session, str(campaign.id))
    assert events[0].metadata.attack_vector == "qr"


def test_unknown_campaign_becomes_orphan(db_session, broadcasts):
    result = tracking_service.ingest(db_session, _event("not-a-campaign", TrackingEventType.opened))

    assert result.outcome == "orphan"
    assert db_session.query(OrphanTrackingEvent).count() == 1
    assert broadcasts == []
    warnings = tracking_service.data_quality_warnings(db_session)
    assert warnings[0]["campaign_id"] == "not-a-campaign"
    assert warnings[0]["event_type"] == "opened"


def test_interactions_filters(db_session, campaign, broadcasts):
    tracking_service.ingest(db_session, _event(campaign, TrackingEventType.sent, user_id="u1"))
    tracking_service.ingest(db_session, _event(campaign, TrackingEventType.sent, user_id="u2"))

    assert [record.user_id for record in tracking_service.interactions_for_campaign(db_session, str(campaign.id))] == [
        "u1",
        "u2",
    ]
    assert len(tracking_service.interactions(db_session, user_ids=["u2"])) == 1
    assert tracking_service.interactions(db_session, campaign_ids=[]) == []


def test_events_window(db_session, campaign, broadcasts):
    tracking_service.ingest(db_session, _event(campaign, TrackingEventType.sent, minutes=0))
    tracking_service.ingest(db_session, _event(campaign, TrackingEventType.opened, minutes=120))

    events = tracking_service.events_for_campaign(db_session, None, T0 + timedelta(minutes=60), T0 + timedelta(days=1))
    assert [event.type for event in events] == [TrackingEventType.opened]


def test_ingest_many_without_broadcast(db_session, campaign, broadcasts):
    results = tracking_service.ingest_many(
        db_session,
        [_event(campaign, TrackingEventType.sent), _event(campaign, TrackingEventType.sent, minutes=1)],
        broadcast=False,
    )

    assert [result.outcome for result in results] == ["recorded", "duplicate"]
    assert broadcasts == []
