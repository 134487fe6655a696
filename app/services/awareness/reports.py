from __future__ import annotations

from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from sqlalchemy.orm import Session

from app.models.awareness.campaign import Campaign
from app.models.awareness.enums import TrackingEventType
from app.services.awareness import aggregation, scoring
from app.services.awareness.campaigns import Campaigns
from app.services.awareness.collaborators import (
    DirectoryProvider,
    SqlDirectoryProvider,
    SqlTrainingProvider,
    TrainingProvider,
)
from app.services.awareness.tracking import Tracking
from app.services.awareness.types import as_utc

DEFAULT_WINDOW_DAYS = 30


def report_window(
    start_at: datetime | None,
    end_at: datetime | None,
    days: int | None = None,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    end = as_utc(end_at) or as_utc(now) or datetime.now(UTC)
    start = as_utc(start_at) or end - timedelta(days=days or DEFAULT_WINDOW_DAYS)
    return start, end


def _directory(db: Session, directory: DirectoryProvider | None) -> DirectoryProvider:
    return directory or SqlDirectoryProvider(db)


def _training(db: Session, training: TrainingProvider | None) -> TrainingProvider:
    return training or SqlTrainingProvider(db)


def campaign_summary(db: Session, campaign_id: str) -> dict[str, Any]:
    campaign = Campaigns.get(db, campaign_id)
    metrics = aggregation.campaign_metrics(Tracking.interactions_for_campaign(db, str(campaign.id)))
    return {
        "campaign_id": str(campaign.id),
        "name": campaign.name,
        "status": campaign.status.value,
        "total_recipients": campaign.total_recipients,
        **metrics.to_row(),
    }


def campaign_departments(
    db: Session,
    campaign_id: str,
    directory: DirectoryProvider | None = None,
) -> list[dict[str, Any]]:
    campaign = Campaigns.get(db, campaign_id)
    records = Tracking.interactions_for_campaign(db, str(campaign.id))
    entries = _directory(db, directory).entries({record.user_id for record in records})
    return aggregation.department_metrics(records, aggregation.index_directory(entries))


def campaign_trend(
    db: Session,
    campaign_id: str,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    tz: tzinfo = UTC,
) -> list[dict[str, Any]]:
    """Daily funnel counts from first-seen flags, so totals match the summary."""
    campaign = Campaigns.get(db, campaign_id)
    start, end = report_window(start_at or campaign.launched_at or campaign.created_at, end_at)
    records = Tracking.interactions_for_campaign(db, str(campaign.id))
    return aggregation.campaign_trend(aggregation.events_from_records(records), start, end, tz)


def campaign_top_links(db: Session, campaign_id: str, limit: int = 10) -> list[dict[str, Any]]:
    campaign = Campaigns.get(db, campaign_id)
    events = Tracking.events_for_campaign(db, str(campaign.id))
    return aggregation.top_clicked_links(events, fallback=campaign.template_ref or "template", limit=limit)


def campaign_comparison(db: Session, campaign_ids: list[str] | None = None) -> list[dict[str, Any]]:
    query = db.query(Campaign).filter(Campaign.launched_at.isnot(None))
    if campaign_ids:
        query = query.filter(Campaign.id.in_([Campaigns.get(db, cid).id for cid in campaign_ids]))
    launched = query.order_by(Campaign.launched_at.desc()).all()
    ids = [str(campaign.id) for campaign in launched]
    grouped: dict[str, list] = {cid: [] for cid in ids}
    for record in Tracking.interactions(db, campaign_ids=ids):
        grouped[record.campaign_id].append(record)
    return aggregation.campaign_comparison(grouped, {str(campaign.id): campaign.name for campaign in launched})


def user_leaderboard(db: Session, directory: DirectoryProvider | None = None) -> list[dict[str, Any]]:
    records = Tracking.interactions(db)
    entries = _directory(db, directory).entries({record.user_id for record in records})
    return aggregation.user_leaderboard(records, aggregation.index_directory(entries))


def attack_vectors(
    db: Session,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
) -> list[dict[str, Any]]:
    start, end = report_window(start_at, end_at)
    return aggregation.attack_vector_breakdown(Tracking.events_for_campaign(db, None, start, end))


def organization_risk(
    db: Session,
    directory: DirectoryProvider | None = None,
    training: TrainingProvider | None = None,
) -> dict[str, Any]:
    users = [entry.user_id for entry in _directory(db, directory).entries()]
    histories = _training(db, training).history(users)
    result = scoring.organization_risk_from(Tracking.interactions(db, user_ids=users), histories, len(users))
    return {"total_users": len(users), **result.to_row()}


def department_risk(
    db: Session,
    directory: DirectoryProvider | None = None,
    training: TrainingProvider | None = None,
) -> list[dict[str, Any]]:
    entries = _directory(db, directory).entries()
    users = [entry.user_id for entry in entries]
    histories = _training(db, training).history(users)
    return scoring.department_risk(entries, Tracking.interactions(db, user_ids=users), histories)


def compliance(
    db: Session,
    now: datetime | None = None,
    directory: DirectoryProvider | None = None,
    training: TrainingProvider | None = None,
) -> list[dict[str, Any]]:
    entries = _directory(db, directory).entries()
    histories = _training(db, training).history([entry.user_id for entry in entries])
    return scoring.compliance_report(entries, histories, as_utc(now) or datetime.now(UTC))


def user_scores(
    db: Session,
    now: datetime | None = None,
    directory: DirectoryProvider | None = None,
    training: TrainingProvider | None = None,
) -> list[dict[str, Any]]:
    entries = _directory(db, directory).entries()
    users = [entry.user_id for entry in entries]
    histories = _training(db, training).history(users)
    records = Tracking.interactions(db, user_ids=users)
    return scoring.user_scorecards(entries, records, histories, as_utc(now) or datetime.now(UTC))


def risk_trend(
    db: Session,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    tz: tzinfo = UTC,
    training: TrainingProvider | None = None,
) -> list[dict[str, Any]]:
    start, end = report_window(start_at, end_at)
    events = Tracking.events_for_campaign(db, None, start, end)
    completions = _training(db, training).completions(start, end)
    return scoring.risk_trend(events, completions, start, end, tz)


def overview(
    db: Session,
    now: datetime | None = None,
    days: int = DEFAULT_WINDOW_DAYS,
    directory: DirectoryProvider | None = None,
    training: TrainingProvider | None = None,
) -> dict[str, Any]:
    """Headline numbers for the awareness dashboard."""
    now = as_utc(now) or datetime.now(UTC)
    start, end = report_window(None, now, days)
    entries = _directory(db, directory).entries()
    users = [entry.user_id for entry in entries]
    histories = _training(db, training).history(users)
    records = Tracking.interactions(db, user_ids=users)
    previous_start = start - (end - start)
    click_times = [
        event.timestamp
        for event in Tracking.events_for_campaign(db, None, previous_start, end)
        if event.type == TrackingEventType.clicked
    ]
    return {
        "total_users": len(users),
        "organization_risk": scoring.organization_risk_from(records, histories, len(users)).to_row(),
        "compliance_rate": scoring.compliance_rate(entries, histories, now),
        "improvement_rate": scoring.improvement_rate(histories, len(users)),
        "vulnerability_trend": scoring.vulnerability_trend(click_times, start, end),
        "campaigns": Campaigns.count_by_status(db),
        "phishing": aggregation.campaign_metrics(records).to_row(),
    }
