"""Tests for the webhook delivery collaborator and the deliver_batch task."""

import json
import uuid
from datetime import UTC, datetime
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from app.models.awareness.enums import TrackingEventType
from app.schemas.awareness.campaign import BatchIn, CampaignCreate
from app.services.awareness import campaigns as campaigns_service
from app.services.awareness import tracking as tracking_service
from app.services.awareness.delivery import DeliveryError, DeliveryUnavailable, QueuedDelivery, WebhookDelivery
from app.services.awareness.scheduler import DispatchEntry
from app.tasks import deliver_batch


@pytest.fixture()
def campaign():
    return SimpleNamespace(id=uuid.UUID(int=7), name="Invoice lure", template_ref="invoice")


@pytest.fixture()
def entry():
    return DispatchEntry(
        occurrence=0,
        batch_index=1,
        dispatch_at=datetime(2024, 3, 4, 9, 1, tzinfo=UTC),
        recipients=("u1", "u2"),
    )


def _delivery(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WebhookDelivery(url="https://mailer.test/batches", client=client)


def test_posts_batch_with_idempotency_key(campaign, entry):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    delivered = _delivery(handler).deliver(campaign, entry)

    assert delivered == ("u1", "u2")
    body = json.loads(seen[0].content)
    assert body["recipients"] == ["u1", "u2"]
    assert body["batch_index"] == 1
    assert body["dispatch_at"] == "2024-03-04T09:01:00+00:00"
    assert seen[0].headers["Idempotency-Key"] == f"{campaign.id}:0:1"


def test_accepted_subset(campaign, entry):
    delivered = _delivery(lambda request: httpx.Response(200, json={"accepted": ["u2", "u9"]})).deliver(
        campaign, entry
    )
    assert delivered == ("u2",)


def test_client_error_is_permanent(campaign, entry):
    with pytest.raises(DeliveryError) as exc_info:
        _delivery(lambda request: httpx.Response(422)).deliver(campaign, entry)
    assert exc_info.value.status_code == 422
    assert not isinstance(exc_info.value, DeliveryUnavailable)


def test_server_error_is_retryable_and_makes_one_attempt(campaign, entry):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    with pytest.raises(DeliveryUnavailable):
        _delivery(handler).deliver(campaign, entry)
    assert len(calls) == 1


def test_transport_error_propagates(campaign, entry):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(httpx.RequestError):
        _delivery(handler).deliver(campaign, entry)


def test_without_url_skips(campaign, entry):
    assert WebhookDelivery(url="").deliver(campaign, entry) == ()


class TestQueuedDelivery:
    def test_enqueues_batch(self, monkeypatch, campaign, entry):
        queued = []
        monkeypatch.setattr(deliver_batch, "delay", lambda *args: queued.append(args))

        assert QueuedDelivery(url="https://mailer.test/batches").deliver(campaign, entry) == ()
        assert queued == [(str(campaign.id), 0, 1, "2024-03-04T09:01:00+00:00", ["u1", "u2"])]

    def test_without_url_queues_nothing(self, monkeypatch, campaign, entry):
        queued = []
        monkeypatch.setattr(deliver_batch, "delay", lambda *args: queued.append(args))

        assert QueuedDelivery(url="").deliver(campaign, entry) == ()
        assert queued == []


def test_batch_retries_use_backoff():
    assert DeliveryUnavailable in deliver_batch.autoretry_for
    assert httpx.RequestError in deliver_batch.autoretry_for
    assert deliver_batch.retry_backoff is True


class TestDeliverBatchTask:
    @pytest.fixture()
    def launched(self, monkeypatch, db_connection, db_session, directory, delivery, now):
        monkeypatch.setattr(
            "app.tasks.delivery.SessionLocal",
            sessionmaker(bind=db_connection, autoflush=False, autocommit=False),
        )
        campaign = campaigns_service.create(
            db_session,
            CampaignCreate(name="Queued", batch=BatchIn(batch_size=2, batch_delay_seconds=60)),
            now=now,
        )
        return campaigns_service.launch(db_session, str(campaign.id), now=now, directory=directory, delivery=delivery)

    def _use_webhook(self, monkeypatch, handler):
        monkeypatch.setattr("app.tasks.delivery._webhook", lambda: _delivery(handler))

    def test_records_sent_for_accepted_recipients(self, monkeypatch, db_session, launched):
        self._use_webhook(monkeypatch, lambda request: httpx.Response(200, json={"accepted": ["u3"]}))

        accepted = deliver_batch(str(launched.id), 0, 1, "2024-03-04T09:01:00+00:00", ["u3", "u4"])

        assert accepted == ["u3"]
        db_session.expire_all()
        record = tracking_service.get_interaction(db_session, str(launched.id), "u3")
        assert record.sent_at == datetime(2024, 3, 4, 9, 1, tzinfo=UTC)
        assert tracking_service.get_interaction(db_session, str(launched.id), "u4") is None

    def test_unavailable_webhook_raises_for_retry(self, monkeypatch, launched):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        self._use_webhook(monkeypatch, handler)

        with pytest.raises(DeliveryUnavailable):
            deliver_batch(str(launched.id), 0, 1, "2024-03-04T09:01:00+00:00", ["u3", "u4"])
        assert len(calls) == 1

    def test_rejected_batch_is_dropped(self, monkeypatch, launched):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        self._use_webhook(monkeypatch, handler)

        assert deliver_batch(str(launched.id), 0, 1, "2024-03-04T09:01:00+00:00", ["u3", "u4"]) == []
        assert len(calls) == 1

    def test_cancelled_campaign_is_skipped(self, monkeypatch, db_session, launched, now):
        campaigns_service.stop(db_session, str(launched.id), now=now)
        calls = []
        self._use_webhook(monkeypatch, lambda request: calls.append(request) or httpx.Response(200))

        assert deliver_batch(str(launched.id), 0, 1, "2024-03-04T09:01:00+00:00", ["u3", "u4"]) == []
        assert calls == []
