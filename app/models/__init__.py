from app.models.awareness import (  # noqa: F401
    Campaign,
    DirectoryUser,
    OrphanTrackingEvent,
    RecipientInteraction,
    TrackingEventLog,
    TrainingEvent,
)
