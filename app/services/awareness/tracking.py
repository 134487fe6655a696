"""Persistent tracking ingestion.

Every event is appended to ``awareness_tracking_events`` and folded into the
single ``awareness_interactions`` row for its (campaign, recipient) with the
same fold the in-memory tracker uses. Events for unknown campaigns are kept
as orphans and reported as data-quality warnings.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.awareness.campaign import Campaign
from app.models.awareness.enums import TrackingEventType
from app.models.awareness.tracking import OrphanTrackingEvent, RecipientInteraction, TrackingEventLog
from app.services.awareness.errors import OrphanEvent
from app.services.awareness.funnel import fold_event, is_duplicate
from app.services.awareness.observability import ORPHAN_EVENTS, TRACKING_EVENTS
from app.services.awareness.types import (
    RecipientInteractionRecord,
    TrackingEvent,
    as_utc,
    metadata_as_dict,
    metadata_for,
)
from app.services.common import apply_pagination, try_uuid
from app.telemetry import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass(frozen=True)
class IngestResult:
    record: RecipientInteractionRecord
    duplicate: bool
    orphan: bool

    @property
    def outcome(self) -> str:
        if self.orphan:
            return "orphan"
        return "duplicate" if self.duplicate else "recorded"


def record_from_row(row: RecipientInteraction) -> RecipientInteractionRecord:
    metadata = {}
    for key, raw in (row.metadata_ or {}).items():
        try:
            event_type = TrackingEventType(key)
        except ValueError:
            continue
        metadata[event_type] = metadata_for(event_type, raw)
    return RecipientInteractionRecord(
        campaign_id=row.campaign_id,
        user_id=row.user_id,
        sent_at=as_utc(row.sent_at),
        opened_at=as_utc(row.opened_at),
        clicked_at=as_utc(row.clicked_at),
        reported_at=as_utc(row.reported_at),
        metadata=metadata,
    )


def event_from_row(row: TrackingEventLog | OrphanTrackingEvent) -> TrackingEvent:
    return TrackingEvent(
        campaign_id=row.campaign_id,
        user_id=row.user_id,
        type=row.event_type,
        timestamp=row.occurred_at,
        metadata=metadata_for(row.event_type, row.metadata_),
    )


def campaign_exists(db: Session, campaign_id: str) -> bool:
    campaign_uuid = try_uuid(campaign_id)
    if campaign_uuid is None:
        return False
    return db.get(Campaign, campaign_uuid) is not None


def _load_row(db: Session, campaign_id: str, user_id: str) -> RecipientInteraction | None:
    return db.scalars(
        select(RecipientInteraction).where(
            RecipientInteraction.campaign_id == campaign_id,
            RecipientInteraction.user_id == user_id,
        )
    ).first()


def _apply_to_row(db: Session, event: TrackingEvent) -> tuple[RecipientInteractionRecord, bool]:
    row = _load_row(db, event.campaign_id, event.user_id)
    current = record_from_row(row) if row is not None else None
    duplicate = is_duplicate(current, event)
    record = fold_event(current, event)
    if row is None:
        row = RecipientInteraction(campaign_id=event.campaign_id, user_id=event.user_id)
        db.add(row)
    # Only NULL timestamps are ever filled; a set flag keeps its first timestamp
    for field_name in ("sent_at", "opened_at", "clicked_at", "reported_at"):
        if getattr(row, field_name) is None and getattr(record, field_name) is not None:
            setattr(row, field_name, getattr(record, field_name))
    row.metadata_ = {
        event_type.value: metadata_as_dict(metadata) for event_type, metadata in record.metadata.items()
    }
    return record, duplicate


def _persist(
    db: Session, event: TrackingEvent, orphan: bool, commit: bool = True
) -> tuple[RecipientInteractionRecord, bool]:
    record, duplicate = _apply_to_row(db, event)
    raw_metadata = metadata_as_dict(event.metadata) or None
    db.add(
        TrackingEventLog(
            campaign_id=event.campaign_id,
            user_id=event.user_id,
            event_type=event.type,
            occurred_at=event.timestamp,
            metadata_=raw_metadata,
        )
    )
    if orphan:
        db.add(
            OrphanTrackingEvent(
                campaign_id=event.campaign_id,
                user_id=event.user_id,
                event_type=event.type,
                occurred_at=event.timestamp,
                metadata_=raw_metadata,
            )
        )
    if commit:
        db.commit()
    else:
        db.flush()
    return record, duplicate


class Tracking:
    @staticmethod
    def ingest(db: Session, event: TrackingEvent, broadcast: bool = True, commit: bool = True) -> IngestResult:
        """Record ``event``; duplicates and out-of-order events are accepted.

        With ``commit=False`` the rows are only flushed and the caller owns the
        transaction, so a batch of events lands or rolls back together.
        """
        with tracer.start_as_current_span("awareness.tracking.ingest") as span:
            span.set_attribute("awareness.event_type", event.type.value)
            orphan = not campaign_exists(db, event.campaign_id)
            try:
                record, duplicate = _persist(db, event, orphan, commit)
            except IntegrityError:
                if not commit:
                    raise
                # Concurrent first event for the same recipient; fold into the winner's row
                db.rollback()
                record, duplicate = _persist(db, event, orphan, commit)

        result = IngestResult(record=record, duplicate=duplicate, orphan=orphan)
        TRACKING_EVENTS.labels(event_type=event.type.value, outcome=result.outcome).inc()
        if orphan:
            ORPHAN_EVENTS.labels(event_type=event.type.value).inc()
            logger.warning("awareness_orphan_event %s", OrphanEvent(event.campaign_id, event.user_id, event.type.value))
        logger.info(
            "awareness_tracking_event campaign_id=%s user_id=%s type=%s outcome=%s",
            event.campaign_id,
            event.user_id,
            event.type.value,
            result.outcome,
        )
        if broadcast and not orphan and not duplicate:
            from app.websocket.broadcaster import broadcast_analytics_update

            broadcast_analytics_update(
                event.campaign_id,
                {
                    "type": event.type.value,
                    "user_id": event.user_id,
                    "timestamp": event.timestamp.isoformat(),
                    **record.to_row(),
                },
            )
        return result

    @staticmethod
    def ingest_many(db: Session, events: Iterable[TrackingEvent], broadcast: bool = True) -> list[IngestResult]:
        return [Tracking.ingest(db, event, broadcast=broadcast) for event in events]

    @staticmethod
    def get_interaction(db: Session, campaign_id: str, user_id: str) -> RecipientInteractionRecord | None:
        row = _load_row(db, str(campaign_id), str(user_id))
        return record_from_row(row) if row is not None else None

    @staticmethod
    def interactions_for_campaign(db: Session, campaign_id: str) -> list[RecipientInteractionRecord]:
        rows = db.scalars(
            select(RecipientInteraction)
            .where(RecipientInteraction.campaign_id == str(campaign_id))
            .order_by(RecipientInteraction.user_id)
        ).all()
        return [record_from_row(row) for row in rows]

    @staticmethod
    def interactions(
        db: Session,
        campaign_ids: Iterable[str] | None = None,
        user_ids: Iterable[str] | None = None,
    ) -> list[RecipientInteractionRecord]:
        stmt = select(RecipientInteraction)
        if campaign_ids is not None:
            stmt = stmt.where(RecipientInteraction.campaign_id.in_([str(cid) for cid in campaign_ids]))
        if user_ids is not None:
            stmt = stmt.where(RecipientInteraction.user_id.in_([str(uid) for uid in user_ids]))
        rows = db.scalars(stmt.order_by(RecipientInteraction.campaign_id, RecipientInteraction.user_id)).all()
        return [record_from_row(row) for row in rows]

    @staticmethod
    def events_for_campaign(
        db: Session,
        campaign_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TrackingEvent]:
        """Raw event log, duplicates included, oldest first."""
        stmt = select(TrackingEventLog)
        if campaign_id is not None:
            stmt = stmt.where(TrackingEventLog.campaign_id == str(campaign_id))
        if start is not None:
            stmt = stmt.where(TrackingEventLog.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(TrackingEventLog.occurred_at <= end)
        rows = db.scalars(stmt.order_by(TrackingEventLog.occurred_at, TrackingEventLog.received_at)).all()
        return [event_from_row(row) for row in rows]

    @staticmethod
    def list_orphans(db: Session, limit: int = 50, offset: int = 0) -> list[TrackingEvent]:
        query = db.query(OrphanTrackingEvent).order_by(OrphanTrackingEvent.created_at.desc())
        return [event_from_row(row) for row in apply_pagination(query, limit, offset).all()]

    @staticmethod
    def data_quality_warnings(db: Session, limit: int = 50, offset: int = 0) -> list[dict[str, str]]:
        return [
            {
                "code": "orphan_event",
                "campaign_id": event.campaign_id,
                "user_id": event.user_id,
                "event_type": event.type.value,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in Tracking.list_orphans(db, limit=limit, offset=offset)
        ]


tracking = Tracking()
