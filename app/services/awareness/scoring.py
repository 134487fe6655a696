"""Risk and compliance scoring.

Scores are point-in-time and always recomputable from interaction records
plus the training history supplied by the training collaborator; nothing
here is persisted. Missing inputs resolve to neutral values instead of
raising.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from app.models.awareness.enums import ComplianceStatus, RiskLevel, SecurityPosture, TrackingEventType
from app.services.awareness.aggregation import campaign_metrics, department_of
from app.services.awareness.policies import (
    COMPLIANCE_POLICY,
    DEFAULT_QUIZ_SCORE,
    DEPARTMENT_RISK_POLICY,
    NEVER_TRAINED_DAYS,
    USER_RISK_POLICY,
    CompliancePolicy,
    DepartmentRiskPolicy,
    UserRiskPolicy,
    security_posture,
)
from app.services.awareness.trends import bucket_by_day, round_half_up
from app.services.awareness.types import (
    DirectoryEntry,
    RecipientInteractionRecord,
    TrackingEvent,
    TrainingHistory,
    as_utc,
)


@dataclass(frozen=True)
class RiskScore:
    value: float
    bucket: RiskLevel

    def to_row(self) -> dict[str, Any]:
        return {"risk_score": self.value, "risk_level": self.bucket.value}


NEUTRAL_RISK = RiskScore(value=0.0, bucket=RiskLevel.low)


@dataclass(frozen=True)
class ComplianceRecord:
    courses_completed: int
    last_training_at: datetime | None
    days_since_last_training: int
    status: ComplianceStatus

    def to_row(self) -> dict[str, Any]:
        return {
            "courses_completed": self.courses_completed,
            "last_training_at": self.last_training_at.isoformat() if self.last_training_at else None,
            "days_since_last_training": self.days_since_last_training,
            "compliance_status": self.status.value,
        }


NOT_APPLICABLE_COMPLIANCE = ComplianceRecord(
    courses_completed=0,
    last_training_at=None,
    days_since_last_training=NEVER_TRAINED_DAYS,
    status=ComplianceStatus.not_applicable,
)


@dataclass(frozen=True)
class OrganizationRisk:
    training_factor: float
    phishing_factor: float
    quiz_factor: float
    overall_score: int
    posture: SecurityPosture

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["posture"] = self.posture.value
        return row


NEUTRAL_ORGANIZATION_RISK = OrganizationRisk(
    training_factor=0.0,
    phishing_factor=0.0,
    quiz_factor=0.0,
    overall_score=0,
    posture=SecurityPosture.not_applicable,
)


def _quiz_or_default(avg_quiz_score: float | None) -> float:
    return DEFAULT_QUIZ_SCORE if avg_quiz_score is None else float(avg_quiz_score)


def user_risk_score(courses_completed: int, avg_quiz_score: float | None, emails_clicked: int) -> float:
    """``100 - courses*20 - quiz*0.5 + clicks*15`` bounded to 0..100.

    Users without quiz history are scored with a neutral quiz score of 80.
    """
    quiz = _quiz_or_default(avg_quiz_score)
    score = 100 - courses_completed * 20 - quiz * 0.5 + emails_clicked * 15
    return min(100.0, max(0.0, float(score)))


def user_risk(
    records: Iterable[RecipientInteractionRecord],
    history: TrainingHistory | None,
    policy: UserRiskPolicy = USER_RISK_POLICY,
) -> RiskScore:
    metrics = campaign_metrics(records)
    if metrics.emails_sent == 0 and metrics.emails_clicked == 0:
        return NEUTRAL_RISK
    courses = history.courses_completed if history else 0
    quiz = history.avg_quiz_score if history else None
    return RiskScore(
        value=user_risk_score(courses, quiz, metrics.emails_clicked),
        bucket=policy.bucket(metrics.emails_clicked, metrics.click_rate),
    )


def days_since(last: datetime | None, now: datetime) -> int:
    if last is None:
        return NEVER_TRAINED_DAYS
    return int((as_utc(now) - as_utc(last)) // timedelta(days=1))


def compliance_record(
    history: TrainingHistory | None,
    now: datetime,
    policy: CompliancePolicy = COMPLIANCE_POLICY,
) -> ComplianceRecord:
    if history is None:
        return NOT_APPLICABLE_COMPLIANCE
    days = days_since(history.last_training_at, now)
    return ComplianceRecord(
        courses_completed=history.courses_completed,
        last_training_at=as_utc(history.last_training_at),
        days_since_last_training=days,
        status=policy.status(history.courses_completed, days),
    )


def organization_risk(
    total_users: int,
    users_with_training: int,
    emails_clicked: int,
    total_phishing_events: int,
    avg_quiz_score: float | None = None,
) -> OrganizationRisk:
    """Headline organisation score: training (0-40) + phishing (0-30) + quiz (0-30)."""
    if total_users <= 0:
        return NEUTRAL_ORGANIZATION_RISK
    training_factor = users_with_training * 40 / total_users
    if emails_clicked > 0:
        phishing_factor = max(0.0, 30 - emails_clicked * 30 / max(1, total_phishing_events))
    else:
        phishing_factor = 30.0
    quiz_factor = _quiz_or_default(avg_quiz_score) * 30 / 100
    total = min(100.0, max(0.0, training_factor + phishing_factor + quiz_factor))
    overall = int(round_half_up(total, 0))
    return OrganizationRisk(
        training_factor=float(training_factor),
        phishing_factor=float(phishing_factor),
        quiz_factor=float(quiz_factor),
        overall_score=overall,
        posture=security_posture(overall),
    )


def organization_risk_from(
    records: Iterable[RecipientInteractionRecord],
    histories: Mapping[str, TrainingHistory],
    total_users: int,
) -> OrganizationRisk:
    """Derive the organisation score inputs from record and training snapshots."""
    metrics = campaign_metrics(records)
    quiz_scores = [score for history in histories.values() for score in history.quiz_scores]
    avg_quiz = sum(quiz_scores) / len(quiz_scores) if quiz_scores else None
    return organization_risk(
        total_users=total_users,
        users_with_training=sum(1 for history in histories.values() if history.has_training),
        emails_clicked=metrics.emails_clicked,
        total_phishing_events=metrics.emails_clicked + metrics.emails_reported,
        avg_quiz_score=avg_quiz,
    )


def _records_by_user(records: Iterable[RecipientInteractionRecord]) -> dict[str, list[RecipientInteractionRecord]]:
    grouped: dict[str, list[RecipientInteractionRecord]] = {}
    for record in records:
        grouped.setdefault(record.user_id, []).append(record)
    return grouped


def _percent(part: int, whole: int) -> int:
    if not whole:
        return 0
    return int(round_half_up(part / whole * 100, 0))


def department_risk(
    directory: Iterable[DirectoryEntry],
    records: Iterable[RecipientInteractionRecord],
    histories: Mapping[str, TrainingHistory],
    policy: DepartmentRiskPolicy = DEPARTMENT_RISK_POLICY,
) -> list[dict[str, Any]]:
    """Risk distribution per department, highest average risk first."""
    by_user = _records_by_user(records)
    directory_index = {entry.user_id: entry for entry in directory}
    departments: dict[str, dict[str, Any]] = {}
    for user_id in directory_index:
        department = department_of(user_id, directory_index)
        row = departments.setdefault(
            department,
            {"department": department, "users": 0, "high_risk": 0, "medium_risk": 0, "low_risk": 0, "_total": 0.0},
        )
        clicks = sum(1 for record in by_user.get(user_id, ()) if record.clicked)
        history = histories.get(user_id)
        quiz = _quiz_or_default(history.avg_quiz_score if history else None)
        courses = history.courses_completed if history else 0

        level = policy.bucket(clicks, quiz)
        row["users"] += 1
        row[f"{level.value}_risk"] += 1
        row["_total"] += user_risk_score(courses, quiz, clicks)

    rows = []
    for row in departments.values():
        users = row["users"]
        total = row.pop("_total")
        rows.append(
            {
                **row,
                "avg_risk_score": int(round_half_up(total / users, 0)) if users else 0,
                "high_pct": _percent(row["high_risk"], users),
                "medium_pct": _percent(row["medium_risk"], users),
                "low_pct": _percent(row["low_risk"], users),
            }
        )
    rows.sort(key=lambda item: (-item["avg_risk_score"], item["department"]))
    return rows


def user_scorecards(
    directory: Iterable[DirectoryEntry],
    records: Iterable[RecipientInteractionRecord],
    histories: Mapping[str, TrainingHistory],
    now: datetime,
) -> list[dict[str, Any]]:
    by_user = _records_by_user(records)
    rows = []
    for entry in directory:
        user_records = by_user.get(entry.user_id, [])
        metrics = campaign_metrics(user_records)
        history = histories.get(entry.user_id)
        risk = user_risk(user_records, history)
        compliance = compliance_record(history, now)
        rows.append(
            {
                "user_id": entry.user_id,
                "email": entry.email,
                "department": entry.department,
                "emails_sent": metrics.emails_sent,
                "emails_clicked": metrics.emails_clicked,
                "emails_reported": metrics.emails_reported,
                "click_rate": metrics.click_rate,
                "avg_quiz_score": history.avg_quiz_score if history else None,
                **risk.to_row(),
                **compliance.to_row(),
            }
        )
    rows.sort(key=lambda row: (-row["risk_score"], row["user_id"]))
    return rows


def compliance_report(
    directory: Iterable[DirectoryEntry],
    histories: Mapping[str, TrainingHistory],
    now: datetime,
) -> list[dict[str, Any]]:
    rows = []
    for entry in directory:
        record = compliance_record(histories.get(entry.user_id), now)
        rows.append({"user_id": entry.user_id, "email": entry.email, "department": entry.department, **record.to_row()})
    rows.sort(key=lambda row: (row["days_since_last_training"], row["user_id"]))
    return rows


def compliance_rate(
    directory: Iterable[DirectoryEntry],
    histories: Mapping[str, TrainingHistory],
    now: datetime,
    activity_window_days: int = 90,
) -> int:
    """Percent of users with a completed course and activity inside the window."""
    users = [entry.user_id for entry in directory]
    if not users:
        return 100
    cutoff = as_utc(now) - timedelta(days=activity_window_days)
    compliant = 0
    for user_id in users:
        history = histories.get(user_id)
        if history is None or history.courses_completed <= 0:
            continue
        last_activity = as_utc(history.last_activity_at or history.last_training_at)
        if last_activity is not None and last_activity > cutoff:
            compliant += 1
    return _percent(compliant, len(users))


def improvement_rate(histories: Mapping[str, TrainingHistory], total_users: int) -> int:
    completed = sum(1 for history in histories.values() if history.courses_completed > 0)
    return _percent(completed, total_users)


def vulnerability_trend(click_times: Iterable[datetime], start: datetime, end: datetime) -> float:
    """Percent change in clicks versus the preceding period of equal length."""
    start = as_utc(start)
    end = as_utc(end)
    period = timedelta(days=max(1, -(-(end - start) // timedelta(days=1))))
    previous_start = start - period
    current = previous = 0
    for moment in click_times:
        moment = as_utc(moment)
        if start <= moment <= end:
            current += 1
        elif previous_start <= moment < start:
            previous += 1
    if previous == 0:
        return 0.0 if current == 0 else 100.0
    return round_half_up((current - previous) / previous * 100, 1)


def risk_trend(
    events: Iterable[TrackingEvent],
    course_completions: Iterable[datetime],
    start: datetime,
    end: datetime,
    tz: tzinfo = UTC,
) -> list[dict[str, Any]]:
    """Daily risk series: clicks push the score up, completed courses pull it down."""
    stream: list[tuple[str, datetime]] = [
        ("phishing_clicks", event.timestamp) for event in events if event.type == TrackingEventType.clicked
    ]
    stream.extend(("courses_completed", moment) for moment in course_completions)

    def _derive(row: dict[str, Any]) -> dict[str, Any]:
        incidents = row["phishing_clicks"]
        score = max(0, 100 - row["courses_completed"] * 10 + row["phishing_clicks"] * 5 + incidents * 3)
        score = min(100, score)
        return {"incidents": incidents, "risk_score": score, "compliance_rate": max(0, 100 - score)}

    return bucket_by_day(
        stream,
        start,
        end,
        lambda item: (item[0],),
        timestamp_of=lambda item: item[1],
        derive=_derive,
        counters=("phishing_clicks", "courses_completed"),
        tz=tz,
    )
