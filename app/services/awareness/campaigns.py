"""Simulated phishing campaign service.

Provides CRUD for campaigns and drives their lifecycle
(draft -> scheduled | active -> paused <-> active -> completed, or
cancelled). Delivery itself is handed to the delivery collaborator one
dispatch batch at a time from :meth:`Campaigns.dispatch_due`, which the
Celery beat tick calls.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import String, cast, or_, select
from sqlalchemy.orm import Session

from app.models.awareness.campaign import Campaign
from app.models.awareness.enums import CampaignStatus, TrackingEventType
from app.services.awareness.collaborators import ALL_USERS, DirectoryProvider, SqlDirectoryProvider, resolve_target_group
from app.services.awareness.delivery import DeliveryCollaborator, QueuedDelivery
from app.services.awareness.errors import CampaignNotFound, InvalidTransition
from app.services.awareness.lifecycle import plan_exhausted, transition
from app.services.awareness.observability import CAMPAIGN_TRANSITIONS, DISPATCHED_BATCHES
from app.services.awareness.scheduler import (
    BatchConfig,
    DispatchEntry,
    DispatchPlan,
    Recurring,
    ScheduleConfig,
    batch_from_dict,
    batch_to_dict,
    plan,
    resolve_zone,
    schedule_from_dict,
    schedule_to_dict,
    validate_recurring,
)
from app.services.awareness.tracking import Tracking
from app.services.awareness.types import SentMetadata, TrackingEvent, as_utc
from app.services.common import apply_ordering, apply_pagination, try_uuid, validate_enum
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = (CampaignStatus.scheduled, CampaignStatus.active)


@dataclass
class DispatchSummary:
    activated: int = 0
    completed: int = 0
    batches: int = 0
    failed: int = 0

    def merge(self, other: "DispatchSummary") -> None:
        self.activated += other.activated
        self.completed += other.completed
        self.batches += other.batches
        self.failed += other.failed


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(UTC)


def _normalize_target_group(target_group) -> str | list[str]:
    if target_group is None or target_group == ALL_USERS:
        return ALL_USERS
    if isinstance(target_group, str):
        return [target_group]
    return sorted({str(name) for name in target_group})


def _validate_config(config: ScheduleConfig, now: datetime) -> None:
    """Shape checks that do not depend on the launch instant."""
    timezone = getattr(config, "timezone", None)
    if timezone is not None:
        resolve_zone(timezone)
    if isinstance(config, Recurring):
        validate_recurring(config, now)


def schedule_config(campaign: Campaign) -> tuple[ScheduleConfig, BatchConfig | None]:
    return schedule_from_dict(campaign.schedule), batch_from_dict(campaign.batch)


def dispatch_plan(campaign: Campaign) -> DispatchPlan:
    """Rebuild a launched campaign's plan; always equal to the plan made at launch."""
    config, batch = schedule_config(campaign)
    return plan(config, batch, campaign.recipient_ids or (), as_utc(campaign.launched_at))


def record_sent(db: Session, campaign: Campaign, entry: DispatchEntry, recipients) -> None:
    """Flush one ``sent`` event per accepted recipient; the caller commits."""
    for user_id in recipients:
        Tracking.ingest(
            db,
            TrackingEvent(
                campaign_id=str(campaign.id),
                user_id=user_id,
                type=TrackingEventType.sent,
                timestamp=entry.dispatch_at,
                metadata=SentMetadata(template_id=campaign.template_ref),
            ),
            broadcast=False,
            commit=False,
        )


def _record_transition(campaign: Campaign, action: str) -> None:
    CAMPAIGN_TRANSITIONS.labels(action=action, to_status=campaign.status.value).inc()
    logger.info(
        "awareness_campaign_transition campaign_id=%s action=%s status=%s",
        campaign.id,
        action,
        campaign.status.value,
    )


class Campaigns(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload, now: datetime | None = None):
        config = payload.schedule.to_config()
        batch = payload.batch.to_config() if payload.batch else None
        _validate_config(config, _now(now))
        data = payload.model_dump(exclude={"schedule", "batch"})
        data["target_group"] = _normalize_target_group(data.get("target_group"))
        campaign = Campaign(**data, schedule=schedule_to_dict(config), batch=batch_to_dict(batch))
        db.add(campaign)
        db.commit()
        db.refresh(campaign)
        logger.info("awareness_campaign_created campaign_id=%s", campaign.id)
        return campaign

    @staticmethod
    def get(db: Session, campaign_id: str):
        campaign_uuid = try_uuid(campaign_id)
        campaign = db.get(Campaign, campaign_uuid) if campaign_uuid else None
        if not campaign:
            raise CampaignNotFound(str(campaign_id))
        return campaign

    @staticmethod
    def list(
        db: Session,
        status: str | None = None,
        search: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Campaign)
        if status:
            status_value = validate_enum(status, CampaignStatus, "status")
            query = query.filter(Campaign.status == status_value)
        if search:
            like = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    Campaign.name.ilike(like),
                    Campaign.template_ref.ilike(like),
                    cast(Campaign.id, String).ilike(like),
                )
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Campaign.created_at,
                "updated_at": Campaign.updated_at,
                "name": Campaign.name,
                "launched_at": Campaign.launched_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(db: Session, campaign_id: str, payload, now: datetime | None = None):
        campaign = Campaigns.get(db, campaign_id)
        if campaign.status != CampaignStatus.draft:
            raise InvalidTransition("cannot_edit", "Only draft campaigns can be edited")
        data = payload.model_dump(exclude_unset=True, exclude={"schedule", "batch"})
        if "target_group" in data:
            data["target_group"] = _normalize_target_group(data["target_group"])
        if "schedule" in payload.model_fields_set and payload.schedule is not None:
            config = payload.schedule.to_config()
            _validate_config(config, _now(now))
            data["schedule"] = schedule_to_dict(config)
        if "batch" in payload.model_fields_set:
            data["batch"] = batch_to_dict(payload.batch.to_config() if payload.batch else None)
        for key, value in data.items():
            setattr(campaign, key, value)
        db.commit()
        db.refresh(campaign)
        return campaign

    @staticmethod
    def delete(db: Session, campaign_id: str):
        """Launched campaigns are historical records and are never deleted."""
        campaign = Campaigns.get(db, campaign_id)
        if campaign.status != CampaignStatus.draft:
            raise InvalidTransition("cannot_delete", "Only draft campaigns can be deleted")
        db.delete(campaign)
        db.commit()

    @staticmethod
    def preview_plan(
        db: Session,
        campaign_id: str,
        now: datetime | None = None,
        directory: DirectoryProvider | None = None,
    ) -> DispatchPlan:
        campaign = Campaigns.get(db, campaign_id)
        if campaign.launched_at is not None:
            return dispatch_plan(campaign)
        config, batch = schedule_config(campaign)
        recipients = resolve_target_group(directory or SqlDirectoryProvider(db), campaign.target_group)
        return plan(config, batch, recipients, _now(now))

    @staticmethod
    def launch(
        db: Session,
        campaign_id: str,
        now: datetime | None = None,
        directory: DirectoryProvider | None = None,
        delivery: DeliveryCollaborator | None = None,
    ):
        """Freeze recipients and the plan, then fire anything already due.

        Launch is optimistic: the campaign is active (or scheduled) as soon as
        the plan exists, whatever the delivery collaborator later reports.
        """
        now = _now(now)
        campaign = Campaigns.get(db, campaign_id)
        if campaign.status != CampaignStatus.draft:
            raise InvalidTransition("cannot_launch", f"Cannot launch a campaign in status {campaign.status.value}")
        config, batch = schedule_config(campaign)
        recipients = resolve_target_group(directory or SqlDirectoryProvider(db), campaign.target_group)
        launch_plan = plan(config, batch, recipients, now)

        campaign.status = transition(campaign.status, "launch", dispatch_plan=launch_plan, now=now)
        campaign.recipient_ids = sorted({recipient for batch in launch_plan.batches for recipient in batch})
        campaign.total_recipients = launch_plan.recipient_count
        campaign.launched_at = now
        campaign.last_dispatch_at = None
        db.commit()
        db.refresh(campaign)
        _record_transition(campaign, "launch")

        if campaign.status == CampaignStatus.active:
            Campaigns._dispatch_campaign(db, campaign, now, delivery or QueuedDelivery())
        return campaign

    @staticmethod
    def _apply(db: Session, campaign_id: str, action: str, now: datetime | None = None):
        campaign = Campaigns.get(db, campaign_id)
        campaign.status = transition(campaign.status, action)
        if action in ("cancel", "complete"):
            campaign.completed_at = _now(now)
        db.commit()
        db.refresh(campaign)
        _record_transition(campaign, action)
        return campaign

    @staticmethod
    def pause(db: Session, campaign_id: str):
        return Campaigns._apply(db, campaign_id, "pause")

    @staticmethod
    def resume(db: Session, campaign_id: str):
        """Entries that came due while paused fire on the next dispatch tick."""
        return Campaigns._apply(db, campaign_id, "resume")

    @staticmethod
    def stop(db: Session, campaign_id: str, now: datetime | None = None):
        return Campaigns._apply(db, campaign_id, "cancel", now)

    @staticmethod
    def dispatch_due(
        db: Session,
        now: datetime | None = None,
        delivery: DeliveryCollaborator | None = None,
    ) -> DispatchSummary:
        """Fire every plan entry in ``(last_dispatch_at, now]`` for live campaigns.

        Each campaign row is locked on its own and its cursor is committed
        before any batch is handed off, so concurrent or failed ticks never
        hand the same entry over twice.
        """
        now = _now(now)
        delivery = delivery or QueuedDelivery()
        summary = DispatchSummary()
        campaign_ids = db.scalars(
            select(Campaign.id).where(Campaign.status.in_(DISPATCHABLE_STATUSES)).order_by(Campaign.launched_at)
        ).all()
        for campaign_id in campaign_ids:
            campaign = db.scalars(
                select(Campaign)
                .where(Campaign.id == campaign_id, Campaign.status.in_(DISPATCHABLE_STATUSES))
                .with_for_update(skip_locked=True)
                .execution_options(populate_existing=True)
            ).first()
            if campaign is None:
                # Locked by another worker or no longer dispatchable
                continue
            try:
                summary.merge(Campaigns._dispatch_campaign(db, campaign, now, delivery))
            except Exception:
                db.rollback()
                logger.exception("awareness_dispatch_failed campaign_id=%s", campaign_id)
                summary.failed += 1
        return summary

    @staticmethod
    def _dispatch_campaign(
        db: Session,
        campaign: Campaign,
        now: datetime,
        delivery: DeliveryCollaborator,
    ) -> DispatchSummary:
        summary = DispatchSummary()
        campaign_id = campaign.id
        campaign_plan = dispatch_plan(campaign)

        if campaign.status == CampaignStatus.scheduled:
            first = campaign_plan.first_dispatch_at
            if first is None or first > now:
                return summary
            campaign.status = transition(campaign.status, "activate")
            _record_transition(campaign, "activate")
            summary.activated += 1

        due = list(campaign_plan.entries_between(as_utc(campaign.last_dispatch_at), now))
        campaign.last_dispatch_at = now
        if plan_exhausted(campaign_plan, now):
            campaign.status = transition(campaign.status, "complete")
            campaign.completed_at = now
            _record_transition(campaign, "complete")
            summary.completed += 1
        db.commit()

        for entry in due:
            summary.batches += 1
            try:
                delivered = delivery.deliver(campaign, entry)
            except Exception as exc:
                summary.failed += 1
                DISPATCHED_BATCHES.labels(status="failed").inc()
                logger.warning(
                    "awareness_batch_failed campaign_id=%s occurrence=%s batch_index=%s error=%s",
                    campaign_id,
                    entry.occurrence,
                    entry.batch_index,
                    exc,
                )
                continue
            try:
                record_sent(db, campaign, entry, delivered)
                campaign.dispatched_batches = (campaign.dispatched_batches or 0) + 1
                db.commit()
            except Exception:
                db.rollback()
                summary.failed += 1
                DISPATCHED_BATCHES.labels(status="failed").inc()
                logger.exception(
                    "awareness_sent_record_failed campaign_id=%s occurrence=%s batch_index=%s",
                    campaign_id,
                    entry.occurrence,
                    entry.batch_index,
                )
                continue
            DISPATCHED_BATCHES.labels(status="delivered" if delivered else "handed_off").inc()

        if summary.batches:
            logger.info(
                "awareness_dispatch_tick campaign_id=%s batches=%s failed=%s",
                campaign_id,
                summary.batches,
                summary.failed,
            )
        return summary

    @staticmethod
    def count_by_status(db: Session) -> dict:
        counts = {status.value: 0 for status in CampaignStatus}
        for (status,) in db.query(Campaign.status).all():
            counts[status.value] += 1
        return counts


campaigns = Campaigns()
