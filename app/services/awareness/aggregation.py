"""Campaign and cohort metrics derived from interaction records.

All functions are pure over the records/events they are given and return
flat rows so every view can be exported as CSV.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from app.models.awareness.enums import TrackingEventType
from app.services.awareness.policies import USER_RISK_POLICY, UserRiskPolicy
from app.services.awareness.trends import bucket_by_day, ratio, round_half_up
from app.services.awareness.types import (
    ClickedMetadata,
    DirectoryEntry,
    RecipientInteractionRecord,
    ReportedMetadata,
    TrackingEvent,
)

NO_DEPARTMENT = "No Department"
FUNNEL_COUNTERS = tuple(event_type.value for event_type in TrackingEventType)


@dataclass(frozen=True)
class CampaignMetrics:
    emails_sent: int = 0
    emails_opened: int = 0
    emails_clicked: int = 0
    emails_reported: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0
    report_rate: float = 0.0
    vulnerability_score: float = 0.0

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


def funnel_rate(numerator: int, denominator: int) -> float:
    """Funnel percentage capped at 100.

    Flags are independent, so a campaign can record more reports than clicks.
    """
    return min(100.0, ratio(numerator, denominator))


def vulnerability_score(click_rate: float, report_rate: float) -> float:
    """Clicks raise vulnerability, reporting offsets half of it; clamped to 0..100."""
    score = round_half_up(click_rate - report_rate * 0.5, 1)
    return max(0.0, min(100.0, score))


def metrics_from_counts(sent: int, opened: int, clicked: int, reported: int) -> CampaignMetrics:
    click_rate = funnel_rate(clicked, sent)
    report_rate = funnel_rate(reported, clicked)
    return CampaignMetrics(
        emails_sent=sent,
        emails_opened=opened,
        emails_clicked=clicked,
        emails_reported=reported,
        open_rate=funnel_rate(opened, sent),
        click_rate=click_rate,
        report_rate=report_rate,
        vulnerability_score=vulnerability_score(click_rate, report_rate),
    )


def funnel_counts(records: Iterable[RecipientInteractionRecord]) -> Counter:
    counts: Counter = Counter({name: 0 for name in FUNNEL_COUNTERS})
    for record in records:
        counts["sent"] += record.sent
        counts["opened"] += record.opened
        counts["clicked"] += record.clicked
        counts["reported"] += record.reported
    return counts


def campaign_metrics(records: Iterable[RecipientInteractionRecord]) -> CampaignMetrics:
    counts = funnel_counts(records)
    return metrics_from_counts(counts["sent"], counts["opened"], counts["clicked"], counts["reported"])


def index_directory(entries: Iterable[DirectoryEntry]) -> dict[str, DirectoryEntry]:
    return {entry.user_id: entry for entry in entries}


def department_of(user_id: str, directory: Mapping[str, DirectoryEntry]) -> str:
    entry = directory.get(user_id)
    if entry is None or not entry.department:
        return NO_DEPARTMENT
    return entry.department


def department_metrics(
    records: Iterable[RecipientInteractionRecord],
    directory: Mapping[str, DirectoryEntry],
) -> list[dict[str, Any]]:
    """Campaign ratios per department, departments discovered from the recipients."""
    grouped: dict[str, list[RecipientInteractionRecord]] = {}
    for record in records:
        grouped.setdefault(department_of(record.user_id, directory), []).append(record)

    rows = []
    for department, members in grouped.items():
        metrics = campaign_metrics(members)
        rows.append(
            {
                "department": department,
                "recipients": len({record.user_id for record in members}),
                **metrics.to_row(),
            }
        )
    rows.sort(key=lambda row: (-row["vulnerability_score"], row["department"]))
    return rows


def events_from_records(records: Iterable[RecipientInteractionRecord]) -> list[TrackingEvent]:
    """First-seen events per flag, so trends agree with the record-based totals."""
    events = []
    for record in records:
        for event_type in TrackingEventType:
            timestamp = record.timestamp_for(event_type)
            if timestamp is None:
                continue
            events.append(
                TrackingEvent(
                    campaign_id=record.campaign_id,
                    user_id=record.user_id,
                    type=event_type,
                    timestamp=timestamp,
                    metadata=record.metadata.get(event_type),
                )
            )
    return events


def _daily_rates(row: dict[str, Any]) -> dict[str, float]:
    return {
        "click_rate": funnel_rate(row["clicked"], row["sent"]),
        "report_rate": funnel_rate(row["reported"], row["clicked"]),
    }


def campaign_trend(
    events: Iterable[TrackingEvent],
    start: datetime,
    end: datetime,
    tz: tzinfo = UTC,
) -> list[dict[str, Any]]:
    return bucket_by_day(
        events,
        start,
        end,
        lambda event: (event.type.value,),
        derive=_daily_rates,
        counters=FUNNEL_COUNTERS,
        tz=tz,
    )


def top_clicked_links(
    events: Iterable[TrackingEvent],
    fallback: str = "template",
    limit: int | None = 10,
) -> list[dict[str, Any]]:
    """Clicked events grouped by URL (or ``fallback`` without per-link tracking)."""
    counts: Counter = Counter()
    for event in events:
        if event.type != TrackingEventType.clicked:
            continue
        url = event.metadata.clicked_url if isinstance(event.metadata, ClickedMetadata) else None
        counts[url or fallback] += 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ranked = ranked[:limit]
    return [{"link": link, "clicks": clicks} for link, clicks in ranked]


def campaign_comparison(
    records_by_campaign: Mapping[str, Iterable[RecipientInteractionRecord]],
    names: Mapping[str, str] | None = None,
) -> list[dict[str, Any]]:
    rows = []
    for campaign_id, records in records_by_campaign.items():
        metrics = campaign_metrics(records)
        rows.append(
            {
                "campaign_id": campaign_id,
                "name": (names or {}).get(campaign_id, campaign_id),
                **metrics.to_row(),
                "effectiveness": round_half_up(metrics.report_rate - metrics.click_rate, 1),
            }
        )
    return rows


def user_leaderboard(
    records: Iterable[RecipientInteractionRecord],
    directory: Mapping[str, DirectoryEntry],
    policy: UserRiskPolicy = USER_RISK_POLICY,
) -> list[dict[str, Any]]:
    """Per-user phishing behaviour across campaigns, worst click rate first."""
    per_user: dict[str, list[RecipientInteractionRecord]] = {}
    for record in records:
        per_user.setdefault(record.user_id, []).append(record)

    rows = []
    for user_id, user_records in per_user.items():
        metrics = campaign_metrics(user_records)
        if metrics.emails_sent == 0:
            continue
        entry = directory.get(user_id)
        rows.append(
            {
                "user_id": user_id,
                "email": entry.email if entry else None,
                "department": department_of(user_id, directory),
                "emails_sent": metrics.emails_sent,
                "emails_opened": metrics.emails_opened,
                "emails_clicked": metrics.emails_clicked,
                "emails_reported": metrics.emails_reported,
                "click_rate": metrics.click_rate,
                "report_rate": metrics.report_rate,
                "risk_level": policy.bucket(metrics.emails_clicked, metrics.click_rate).value,
            }
        )
    rows.sort(key=lambda row: (-row["click_rate"], row["user_id"]))
    return rows


def attack_vector_breakdown(events: Iterable[TrackingEvent]) -> list[dict[str, Any]]:
    vectors: dict[str, dict[str, Any]] = {}
    for event in events:
        if not isinstance(event.metadata, ClickedMetadata | ReportedMetadata):
            continue
        vector = event.metadata.attack_vector
        if not vector:
            continue
        bucket = vectors.setdefault(vector, {"attack_vector": vector, "clicks": 0, "reports": 0})
        if event.type == TrackingEventType.clicked:
            bucket["clicks"] += 1
        else:
            bucket["reports"] += 1

    rows = []
    for bucket in vectors.values():
        total = bucket["clicks"] + bucket["reports"]
        success = Decimal(bucket["clicks"]) / Decimal(total) * 100 if bucket["clicks"] else Decimal(0)
        rows.append({**bucket, "success_rate": int(success.quantize(Decimal(1), rounding=ROUND_HALF_UP))})
    rows.sort(key=lambda row: (-row["clicks"], row["attack_vector"]))
    return rows
