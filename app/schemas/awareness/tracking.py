from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.awareness.enums import TrackingEventType
from app.services.awareness.types import TrackingEvent, metadata_for


class TrackingEventIn(BaseModel):
    campaign_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    type: TrackingEventType
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None

    def to_event(self, now: datetime | None = None) -> TrackingEvent:
        return TrackingEvent(
            campaign_id=self.campaign_id,
            user_id=self.user_id,
            type=self.type,
            timestamp=self.timestamp or now or datetime.now(UTC),
            metadata=metadata_for(self.type, self.metadata),
        )


class InteractionRead(BaseModel):
    campaign_id: str
    user_id: str
    sent: bool
    sent_at: datetime | None = None
    opened: bool
    opened_at: datetime | None = None
    clicked: bool
    clicked_at: datetime | None = None
    reported: bool
    reported_at: datetime | None = None


class IngestResponse(BaseModel):
    outcome: str
    interaction: InteractionRead


class DataQualityWarning(BaseModel):
    code: str
    campaign_id: str
    user_id: str
    event_type: str
    timestamp: datetime
