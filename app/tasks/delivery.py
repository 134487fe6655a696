"""Celery task that hands one dispatch batch to the delivery webhook.

Transport errors and 429/5xx answers are retried with exponential backoff.
Every attempt carries the same Idempotency-Key, so the webhook can drop a
batch it already accepted.
"""

import logging
from datetime import datetime

import httpx

from app.celery_app import celery_app
from app.db import SessionLocal
from app.models.awareness.campaign import Campaign
from app.models.awareness.enums import CampaignStatus
from app.services.awareness.campaigns import record_sent
from app.services.awareness.delivery import DeliveryError, DeliveryUnavailable, WebhookDelivery
from app.services.awareness.observability import DISPATCHED_BATCHES
from app.services.awareness.scheduler import DispatchEntry
from app.services.common import try_uuid

logger = logging.getLogger(__name__)

MAX_RETRIES = 6
RETRY_BACKOFF_MAX = 1800


def _webhook() -> WebhookDelivery:
    return WebhookDelivery()


@celery_app.task(
    name="app.tasks.delivery.deliver_batch",
    bind=True,
    max_retries=MAX_RETRIES,
    autoretry_for=(httpx.RequestError, httpx.TimeoutException, DeliveryUnavailable),
    retry_backoff=True,
    retry_backoff_max=RETRY_BACKOFF_MAX,
)
def deliver_batch(
    self,
    campaign_id: str,
    occurrence: int,
    batch_index: int,
    dispatch_at: str,
    recipients: list[str],
):
    """Post one batch and record a ``sent`` event per accepted recipient.

    Returns the accepted recipient ids. A rejected batch (4xx) is logged and
    not retried; a cancelled or deleted campaign is skipped.
    """
    entry = DispatchEntry(
        occurrence=occurrence,
        batch_index=batch_index,
        dispatch_at=datetime.fromisoformat(dispatch_at),
        recipients=tuple(recipients),
    )
    session = SessionLocal()
    try:
        campaign_uuid = try_uuid(campaign_id)
        campaign = session.get(Campaign, campaign_uuid) if campaign_uuid else None
        if campaign is None or campaign.status == CampaignStatus.cancelled:
            logger.info("awareness_batch_dropped campaign_id=%s batch_index=%s", campaign_id, batch_index)
            return []

        webhook = _webhook()
        try:
            delivered = webhook.deliver(campaign, entry)
        except DeliveryUnavailable:
            logger.warning(
                "awareness_batch_retry campaign_id=%s batch_index=%s attempt=%s",
                campaign_id,
                batch_index,
                self.request.retries + 1,
            )
            raise
        except DeliveryError as exc:
            DISPATCHED_BATCHES.labels(status="failed").inc()
            logger.error(
                "awareness_batch_rejected campaign_id=%s batch_index=%s status=%s",
                campaign_id,
                batch_index,
                exc.status_code,
            )
            return []
        finally:
            webhook.close()

        record_sent(session, campaign, entry, delivered)
        session.commit()
        DISPATCHED_BATCHES.labels(status="delivered").inc()
        logger.info(
            "awareness_batch_delivered campaign_id=%s occurrence=%s batch_index=%s accepted=%s",
            campaign_id,
            occurrence,
            batch_index,
            len(delivered),
        )
        return list(delivered)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
