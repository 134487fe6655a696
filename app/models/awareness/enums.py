import enum


class CampaignStatus(enum.Enum):
    draft = "draft"
    scheduled = "scheduled"
    active = "active"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class ScheduleKind(enum.Enum):
    immediate = "immediate"
    scheduled = "scheduled"
    recurring = "recurring"


class RecurrencePattern(enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class TrackingEventType(enum.Enum):
    sent = "sent"
    opened = "opened"
    clicked = "clicked"
    reported = "reported"


class TrainingEventType(enum.Enum):
    course_started = "course_started"
    course_completed = "course_completed"
    quiz_completed = "quiz_completed"


class RiskLevel(enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class ComplianceStatus(enum.Enum):
    not_started = "not_started"
    compliant = "compliant"
    renewal_required = "renewal_required"
    overdue = "overdue"
    not_applicable = "n/a"


class SecurityPosture(enum.Enum):
    excellent = "excellent"
    good = "good"
    fair = "fair"
    poor = "poor"
    critical = "critical"
    not_applicable = "n/a"
