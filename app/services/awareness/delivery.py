"""Delivery collaborator seam.

Message rendering and transport belong to an external service. The core
hands it one dispatch batch at a time. In production the hand-off is a
``deliver_batch`` Celery task, which owns retries and records the ``sent``
events once the webhook accepts the batch.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx

from app.config import settings
from app.models.awareness.campaign import Campaign
from app.services.awareness.scheduler import DispatchEntry

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Delivery collaborator rejected or could not accept a batch."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DeliveryUnavailable(DeliveryError):
    """Webhook answered 429 or 5xx; the batch may be retried."""


class DeliveryCollaborator(Protocol):
    def deliver(self, campaign: Campaign, entry: DispatchEntry) -> Sequence[str]:
        """Hand ``entry`` to the transport; return the recipient ids accepted.

        A collaborator that delivers asynchronously returns nothing and
        records the ``sent`` events itself.
        """
        ...


def delivery_payload(campaign: Campaign, entry: DispatchEntry) -> dict:
    return {
        "campaign_id": str(campaign.id),
        "campaign_name": campaign.name,
        "template_ref": campaign.template_ref,
        "occurrence": entry.occurrence,
        "batch_index": entry.batch_index,
        "dispatch_at": entry.dispatch_at.isoformat(),
        "recipients": list(entry.recipients),
    }


def idempotency_key(campaign: Campaign, entry: DispatchEntry) -> str:
    return f"{campaign.id}:{entry.occurrence}:{entry.batch_index}"


class WebhookDelivery:
    """POST one batch as JSON to the configured delivery webhook.

    A single attempt per call. Transport errors propagate as
    ``httpx.RequestError`` and 429/5xx answers raise ``DeliveryUnavailable``
    so the calling task can retry; other 4xx answers raise ``DeliveryError``.
    """

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        self.url = url if url is not None else settings.delivery_webhook_url
        self.timeout = timeout if timeout is not None else settings.delivery_timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout,
                headers={"Content-Type": "application/json", "User-Agent": "PhishAwareness/1.0"},
            )
        return self._client

    def close(self):
        if self._client:
            self._client.close()
            self._client = None

    def deliver(self, campaign: Campaign, entry: DispatchEntry) -> Sequence[str]:
        if not self.url:
            logger.info(
                "awareness_delivery_skipped campaign_id=%s batch_index=%s reason=no_webhook",
                campaign.id,
                entry.batch_index,
            )
            return ()
        if not entry.recipients:
            return ()

        response = self._get_client().post(
            self.url,
            json=delivery_payload(campaign, entry),
            headers={"Idempotency-Key": idempotency_key(campaign, entry)},
        )
        if response.status_code < 400:
            return _accepted(response, entry)
        if response.status_code >= 500 or response.status_code == 429:
            raise DeliveryUnavailable(
                f"Delivery webhook unavailable: {response.status_code}",
                status_code=response.status_code,
            )
        raise DeliveryError(
            f"Delivery webhook rejected batch: {response.status_code}",
            status_code=response.status_code,
        )


class QueuedDelivery:
    """Enqueue each batch as a ``deliver_batch`` task and return at once."""

    def __init__(self, url: str | None = None):
        self.url = url if url is not None else settings.delivery_webhook_url

    def deliver(self, campaign: Campaign, entry: DispatchEntry) -> Sequence[str]:
        if not self.url:
            logger.info(
                "awareness_delivery_skipped campaign_id=%s batch_index=%s reason=no_webhook",
                campaign.id,
                entry.batch_index,
            )
            return ()
        if not entry.recipients:
            return ()
        from app.tasks.delivery import deliver_batch

        deliver_batch.delay(
            str(campaign.id),
            entry.occurrence,
            entry.batch_index,
            entry.dispatch_at.isoformat(),
            list(entry.recipients),
        )
        logger.info(
            "awareness_batch_queued campaign_id=%s occurrence=%s batch_index=%s recipients=%s",
            campaign.id,
            entry.occurrence,
            entry.batch_index,
            len(entry.recipients),
        )
        return ()


def _accepted(response: httpx.Response, entry: DispatchEntry) -> Sequence[str]:
    """Recipients the webhook reported as accepted; all of them when it does not say."""
    try:
        body = response.json()
    except ValueError:
        return entry.recipients
    if isinstance(body, dict) and isinstance(body.get("accepted"), list):
        wanted = set(entry.recipients)
        return tuple(str(uid) for uid in body["accepted"] if str(uid) in wanted)
    return entry.recipients
