from app.models.awareness.campaign import Campaign
from app.models.awareness.directory import DirectoryUser, TrainingEvent
from app.models.awareness.enums import (
    CampaignStatus,
    ComplianceStatus,
    RecurrencePattern,
    RiskLevel,
    ScheduleKind,
    SecurityPosture,
    TrackingEventType,
    TrainingEventType,
)
from app.models.awareness.tracking import OrphanTrackingEvent, RecipientInteraction, TrackingEventLog

__all__ = [
    "Campaign",
    "CampaignStatus",
    "ComplianceStatus",
    "DirectoryUser",
    "OrphanTrackingEvent",
    "RecipientInteraction",
    "RecurrencePattern",
    "RiskLevel",
    "ScheduleKind",
    "SecurityPosture",
    "TrackingEventLog",
    "TrackingEventType",
    "TrainingEvent",
    "TrainingEventType",
]
