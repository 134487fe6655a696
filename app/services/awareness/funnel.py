"""Recipient funnel tracker.

Folds the append-only tracking event stream into one
:class:`RecipientInteractionRecord` per (campaign, recipient). The fold is
idempotent: a flag that is already set keeps its first timestamp, and
events are accepted in any order.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from threading import Lock

from app.logging import get_logger
from app.services.awareness.errors import OrphanEvent
from app.services.awareness.observability import ORPHAN_EVENTS, TRACKING_EVENTS
from app.services.awareness.types import RecipientInteractionRecord, TrackingEvent, flag_field

logger = get_logger(__name__)


def fold_event(record: RecipientInteractionRecord | None, event: TrackingEvent) -> RecipientInteractionRecord:
    """Apply ``event`` to ``record`` and return the new record.

    First write wins for the flag timestamp, last write wins for metadata.
    """
    if record is None:
        record = RecipientInteractionRecord(campaign_id=event.campaign_id, user_id=event.user_id)
    elif (record.campaign_id, record.user_id) != event.key:
        raise ValueError("event does not belong to this interaction record")

    updates: dict = {"metadata": {**record.metadata, event.type: event.metadata}}
    field_name = flag_field(event.type)
    if getattr(record, field_name) is None:
        updates[field_name] = event.timestamp
    return replace(record, **updates)


def fold_events(events: Iterable[TrackingEvent]) -> dict[tuple[str, str], RecipientInteractionRecord]:
    records: dict[tuple[str, str], RecipientInteractionRecord] = {}
    for event in events:
        records[event.key] = fold_event(records.get(event.key), event)
    return records


def is_duplicate(record: RecipientInteractionRecord | None, event: TrackingEvent) -> bool:
    return record is not None and record.timestamp_for(event.type) is not None


class FunnelTracker:
    """In-process tracker, safe to share between threads."""

    def __init__(self, known_campaigns: Iterable[str] = ()) -> None:
        self._records: dict[tuple[str, str], RecipientInteractionRecord] = {}
        self._known_campaigns: set[str] = {str(cid) for cid in known_campaigns}
        self._orphans: list[TrackingEvent] = []
        self._lock = Lock()

    def register_campaign(self, campaign_id: str) -> None:
        with self._lock:
            self._known_campaigns.add(str(campaign_id))

    def apply(self, event: TrackingEvent) -> RecipientInteractionRecord:
        with self._lock:
            current = self._records.get(event.key)
            duplicate = is_duplicate(current, event)
            record = fold_event(current, event)
            self._records[event.key] = record
            orphan = event.campaign_id not in self._known_campaigns
            if orphan:
                self._orphans.append(event)

        if orphan:
            warning = OrphanEvent(event.campaign_id, event.user_id, event.type.value)
            ORPHAN_EVENTS.labels(event_type=event.type.value).inc()
            logger.warning("awareness_orphan_event %s", warning)
        outcome = "orphan" if orphan else "duplicate" if duplicate else "recorded"
        TRACKING_EVENTS.labels(event_type=event.type.value, outcome=outcome).inc()
        return record

    def get(self, campaign_id: str, user_id: str) -> RecipientInteractionRecord | None:
        with self._lock:
            return self._records.get((str(campaign_id), str(user_id)))

    def records(self, campaign_id: str | None = None) -> list[RecipientInteractionRecord]:
        with self._lock:
            snapshot = list(self._records.values())
        if campaign_id is None:
            return snapshot
        return [record for record in snapshot if record.campaign_id == str(campaign_id)]

    @property
    def orphans(self) -> tuple[TrackingEvent, ...]:
        with self._lock:
            return tuple(self._orphans)

    def data_quality_warnings(self) -> list[dict[str, str]]:
        return [
            {
                "code": "orphan_event",
                "campaign_id": event.campaign_id,
                "user_id": event.user_id,
                "event_type": event.type.value,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in self.orphans
        ]
