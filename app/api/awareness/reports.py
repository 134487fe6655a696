from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.schemas.awareness.tracking import DataQualityWarning
from app.services.awareness import reports as reports_service
from app.services.awareness import tracking as tracking_service
from app.services.awareness.errors import AwarenessError, as_http_exception
from app.services.awareness.export import csv_response

router = APIRouter(prefix="/awareness/reports", tags=["awareness-reports"])


def _call(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except AwarenessError as exc:
        raise as_http_exception(exc) from exc


def _zone(tz: str | None):
    try:
        return ZoneInfo(tz or settings.default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {tz}") from exc


def _window(start_at: datetime | None, end_at: datetime | None, days: int | None):
    start, end = reports_service.report_window(start_at, end_at, days)
    if start > end:
        raise HTTPException(status_code=400, detail="start_at must be before end_at")
    return start, end


@router.get("/overview")
def overview(days: int = Query(default=30, ge=1, le=365), db: Session = Depends(get_db)):
    return reports_service.overview(db, datetime.now(UTC), days)


@router.get("/campaigns/compare")
def compare_campaigns(campaign_ids: list[str] | None = Query(default=None), db: Session = Depends(get_db)):
    return _call(reports_service.campaign_comparison, db, campaign_ids)


@router.get("/campaigns/compare/export.csv")
def export_campaign_comparison(campaign_ids: list[str] | None = Query(default=None), db: Session = Depends(get_db)):
    return csv_response(_call(reports_service.campaign_comparison, db, campaign_ids), "campaign_comparison.csv")


@router.get("/campaigns/{campaign_id}")
def campaign_summary(campaign_id: str, db: Session = Depends(get_db)):
    return _call(reports_service.campaign_summary, db, campaign_id)


@router.get("/campaigns/{campaign_id}/departments")
def campaign_departments(campaign_id: str, db: Session = Depends(get_db)):
    return _call(reports_service.campaign_departments, db, campaign_id)


@router.get("/campaigns/{campaign_id}/departments/export.csv")
def export_campaign_departments(campaign_id: str, db: Session = Depends(get_db)):
    rows = _call(reports_service.campaign_departments, db, campaign_id)
    return csv_response(rows, f"campaign_{campaign_id}_departments.csv")


@router.get("/campaigns/{campaign_id}/trend")
def campaign_trend(
    campaign_id: str,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    tz: str | None = None,
    db: Session = Depends(get_db),
):
    return _call(reports_service.campaign_trend, db, campaign_id, start_at, end_at, _zone(tz))


@router.get("/campaigns/{campaign_id}/trend/export.csv")
def export_campaign_trend(
    campaign_id: str,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    tz: str | None = None,
    db: Session = Depends(get_db),
):
    rows = _call(reports_service.campaign_trend, db, campaign_id, start_at, end_at, _zone(tz))
    return csv_response(rows, f"campaign_{campaign_id}_trend.csv")


@router.get("/campaigns/{campaign_id}/links")
def campaign_top_links(
    campaign_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return _call(reports_service.campaign_top_links, db, campaign_id, limit)


@router.get("/users/leaderboard")
def user_leaderboard(db: Session = Depends(get_db)):
    return reports_service.user_leaderboard(db)


@router.get("/users/leaderboard/export.csv")
def export_user_leaderboard(db: Session = Depends(get_db)):
    return csv_response(reports_service.user_leaderboard(db), "user_leaderboard.csv")


@router.get("/users/scores")
def user_scores(db: Session = Depends(get_db)):
    return reports_service.user_scores(db, datetime.now(UTC))


@router.get("/users/scores/export.csv")
def export_user_scores(db: Session = Depends(get_db)):
    return csv_response(reports_service.user_scores(db, datetime.now(UTC)), "user_risk_scores.csv")


@router.get("/attack-vectors")
def attack_vectors(
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    days: int | None = Query(default=None, ge=1, le=365),
    db: Session = Depends(get_db),
):
    start, end = _window(start_at, end_at, days)
    return reports_service.attack_vectors(db, start, end)


@router.get("/risk/organization")
def organization_risk(db: Session = Depends(get_db)):
    return reports_service.organization_risk(db)


@router.get("/risk/departments")
def department_risk(db: Session = Depends(get_db)):
    return reports_service.department_risk(db)


@router.get("/risk/departments/export.csv")
def export_department_risk(db: Session = Depends(get_db)):
    return csv_response(reports_service.department_risk(db), "department_risk.csv")


@router.get("/risk/trend")
def risk_trend(
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    days: int | None = Query(default=None, ge=1, le=365),
    tz: str | None = None,
    db: Session = Depends(get_db),
):
    start, end = _window(start_at, end_at, days)
    return reports_service.risk_trend(db, start, end, _zone(tz))


@router.get("/risk/trend/export.csv")
def export_risk_trend(
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    days: int | None = Query(default=None, ge=1, le=365),
    tz: str | None = None,
    db: Session = Depends(get_db),
):
    start, end = _window(start_at, end_at, days)
    return csv_response(reports_service.risk_trend(db, start, end, _zone(tz)), "risk_trend.csv")


@router.get("/compliance")
def compliance(db: Session = Depends(get_db)):
    return reports_service.compliance(db, datetime.now(UTC))


@router.get("/compliance/export.csv")
def export_compliance(db: Session = Depends(get_db)):
    return csv_response(reports_service.compliance(db, datetime.now(UTC)), "compliance_report.csv")


@router.get("/data-quality", response_model=list[DataQualityWarning])
def data_quality(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    """Tracking events that arrived for campaigns this service does not know."""
    return tracking_service.data_quality_warnings(db, limit=limit, offset=offset)
