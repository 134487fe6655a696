"""Immutable read models shared by the funnel tracker, aggregation and scoring.

Event metadata is a closed variant per event type: a ``clicked`` event
carries :class:`ClickedMetadata`, a ``reported`` event carries
:class:`ReportedMetadata` and so on. Raw payloads coming from the tracking
endpoints are narrowed with :func:`metadata_for`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.models.awareness.enums import TrackingEventType


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalise aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class SentMetadata:
    template_id: str | None = None


@dataclass(frozen=True)
class OpenedMetadata:
    user_agent: str | None = None


@dataclass(frozen=True)
class ClickedMetadata:
    clicked_url: str | None = None
    attack_vector: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class ReportedMetadata:
    attack_vector: str | None = None


EventMetadata = SentMetadata | OpenedMetadata | ClickedMetadata | ReportedMetadata

_METADATA_TYPES: dict[TrackingEventType, type] = {
    TrackingEventType.sent: SentMetadata,
    TrackingEventType.opened: OpenedMetadata,
    TrackingEventType.clicked: ClickedMetadata,
    TrackingEventType.reported: ReportedMetadata,
}

# Payloads from the browser-side trackers use camelCase keys.
_KEY_ALIASES = {
    "templateId": "template_id",
    "userAgent": "user_agent",
    "clickedUrl": "clicked_url",
    "attackVector": "attack_vector",
}


def metadata_for(event_type: TrackingEventType, raw: dict[str, Any] | None) -> EventMetadata:
    """Build the metadata variant for ``event_type`` from a loosely-typed dict.

    Unknown keys are ignored; values are coerced to ``str``.
    """
    metadata_cls = _METADATA_TYPES[event_type]
    allowed = metadata_cls.__dataclass_fields__.keys()
    values: dict[str, str] = {}
    for key, value in (raw or {}).items():
        name = _KEY_ALIASES.get(key, key)
        if name in allowed and value is not None and value != "":
            values[name] = str(value)
    return metadata_cls(**values)


def metadata_as_dict(metadata: EventMetadata | None) -> dict[str, str]:
    if metadata is None:
        return {}
    return {key: value for key, value in asdict(metadata).items() if value is not None}


@dataclass(frozen=True)
class TrackingEvent:
    campaign_id: str
    user_id: str
    type: TrackingEventType
    timestamp: datetime
    metadata: EventMetadata | None = None

    def __post_init__(self) -> None:
        event_type = TrackingEventType(self.type)
        object.__setattr__(self, "type", event_type)
        object.__setattr__(self, "campaign_id", str(self.campaign_id))
        object.__setattr__(self, "user_id", str(self.user_id))
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))
        expected = _METADATA_TYPES[event_type]
        if self.metadata is None:
            object.__setattr__(self, "metadata", expected())
        elif not isinstance(self.metadata, expected):
            raise ValueError(
                f"{event_type.value} events carry {expected.__name__}, got {type(self.metadata).__name__}"
            )

    @property
    def key(self) -> tuple[str, str]:
        return (self.campaign_id, self.user_id)


_FLAG_FIELDS = {
    TrackingEventType.sent: "sent_at",
    TrackingEventType.opened: "opened_at",
    TrackingEventType.clicked: "clicked_at",
    TrackingEventType.reported: "reported_at",
}


def flag_field(event_type: TrackingEventType) -> str:
    return _FLAG_FIELDS[event_type]


@dataclass(frozen=True)
class RecipientInteractionRecord:
    """Canonical per-(campaign, recipient) state folded from tracking events.

    Each flag is independent: a recipient may be ``reported`` without ever
    being ``opened`` because open pixels are routinely blocked.
    """

    campaign_id: str
    user_id: str
    sent_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    reported_at: datetime | None = None
    metadata: dict[TrackingEventType, EventMetadata] = field(default_factory=dict)

    @property
    def sent(self) -> bool:
        return self.sent_at is not None

    @property
    def opened(self) -> bool:
        return self.opened_at is not None

    @property
    def clicked(self) -> bool:
        return self.clicked_at is not None

    @property
    def reported(self) -> bool:
        return self.reported_at is not None

    def timestamp_for(self, event_type: TrackingEventType) -> datetime | None:
        return getattr(self, flag_field(event_type))

    def to_row(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "user_id": self.user_id,
            "sent": self.sent,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "opened": self.opened,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "clicked": self.clicked,
            "clicked_at": self.clicked_at.isoformat() if self.clicked_at else None,
            "reported": self.reported,
            "reported_at": self.reported_at.isoformat() if self.reported_at else None,
        }


@dataclass(frozen=True)
class DirectoryEntry:
    user_id: str
    department: str | None = None
    email: str | None = None
    role: str | None = None


@dataclass(frozen=True)
class TrainingHistory:
    """Read-only training/progress snapshot for one user."""

    user_id: str
    courses_completed: int = 0
    quiz_scores: tuple[float, ...] = ()
    last_training_at: datetime | None = None
    training_events: int = 0
    last_activity_at: datetime | None = None

    @property
    def avg_quiz_score(self) -> float | None:
        if not self.quiz_scores:
            return None
        return sum(self.quiz_scores) / len(self.quiz_scores)

    @property
    def has_training(self) -> bool:
        return self.training_events > 0 or self.courses_completed > 0 or bool(self.quiz_scores)
