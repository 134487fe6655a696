"""Named scoring policies.

The per-user and per-department risk buckets use different, independently
tuned thresholds because they back different dashboards. They are kept as
two policies on purpose; do not merge them without a product decision.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.models.awareness.enums import ComplianceStatus, RiskLevel, SecurityPosture

DEFAULT_QUIZ_SCORE = 80.0
NEVER_TRAINED_DAYS = 999


@dataclass(frozen=True)
class UserRiskPolicy:
    """Bucket used by the per-user phishing leaderboard."""

    high_clicks: int = 2
    high_click_rate: float = 50.0
    medium_clicks: int = 0
    medium_click_rate: float = 20.0

    def bucket(self, emails_clicked: int, click_rate: float) -> RiskLevel:
        if emails_clicked > self.high_clicks or click_rate > self.high_click_rate:
            return RiskLevel.high
        if emails_clicked > self.medium_clicks or click_rate > self.medium_click_rate:
            return RiskLevel.medium
        return RiskLevel.low


@dataclass(frozen=True)
class DepartmentRiskPolicy:
    """Bucket used by the department risk distribution."""

    high_clicks: int = 2
    high_quiz_floor: float = 60.0
    medium_clicks: int = 0
    medium_quiz_floor: float = 80.0

    def bucket(self, phishing_clicks: int, avg_quiz_score: float) -> RiskLevel:
        if phishing_clicks > self.high_clicks or avg_quiz_score < self.high_quiz_floor:
            return RiskLevel.high
        if phishing_clicks > self.medium_clicks or avg_quiz_score < self.medium_quiz_floor:
            return RiskLevel.medium
        return RiskLevel.low


@dataclass(frozen=True)
class CompliancePolicy:
    overdue_after_days: int = 365
    renewal_after_days: int = 300

    def status(self, courses_completed: int, days_since_last_training: int) -> ComplianceStatus:
        # Overdue is checked first: a never-trained user (999 days) is overdue, not "not started".
        if days_since_last_training > self.overdue_after_days:
            return ComplianceStatus.overdue
        if self.renewal_after_days < days_since_last_training <= self.overdue_after_days:
            return ComplianceStatus.renewal_required
        if courses_completed > 0 and days_since_last_training <= self.overdue_after_days:
            return ComplianceStatus.compliant
        return ComplianceStatus.not_started


_POSTURE_FLOORS = (
    (80, SecurityPosture.excellent),
    (60, SecurityPosture.good),
    (40, SecurityPosture.fair),
    (20, SecurityPosture.poor),
)


def security_posture(overall_score: float) -> SecurityPosture:
    for floor, posture in _POSTURE_FLOORS:
        if overall_score >= floor:
            return posture
    return SecurityPosture.critical


USER_RISK_POLICY = UserRiskPolicy()
DEPARTMENT_RISK_POLICY = DepartmentRiskPolicy()
COMPLIANCE_POLICY = CompliancePolicy()
