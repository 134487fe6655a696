from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.awareness.campaign import (
    CampaignCreate,
    CampaignRead,
    CampaignUpdate,
    DispatchPlanRead,
    DispatchTickResponse,
)
from app.schemas.common import ListResponse
from app.services.awareness import campaigns as campaigns_service
from app.services.awareness.campaigns import schedule_config
from app.services.awareness.errors import AwarenessError, as_http_exception
from app.services.awareness.export import csv_response
from app.services.awareness.scheduler import describe_schedule

router = APIRouter(prefix="/awareness/campaigns", tags=["awareness-campaigns"])


def _call(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except AwarenessError as exc:
        raise as_http_exception(exc) from exc


@router.post("", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
def create_campaign(payload: CampaignCreate, db: Session = Depends(get_db)):
    return _call(campaigns_service.create, db, payload)


@router.get("", response_model=ListResponse[CampaignRead])
def list_campaigns(
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return campaigns_service.list_response(
        db, status_filter, search, order_by, order_dir, limit=limit, offset=offset
    )


@router.get("/{campaign_id}", response_model=CampaignRead)
def get_campaign(campaign_id: str, db: Session = Depends(get_db)):
    return _call(campaigns_service.get, db, campaign_id)


@router.patch("/{campaign_id}", response_model=CampaignRead)
def update_campaign(campaign_id: str, payload: CampaignUpdate, db: Session = Depends(get_db)):
    return _call(campaigns_service.update, db, campaign_id, payload)


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_campaign(campaign_id: str, db: Session = Depends(get_db)):
    _call(campaigns_service.delete, db, campaign_id)


@router.get("/{campaign_id}/plan", response_model=DispatchPlanRead)
def preview_plan(
    campaign_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    campaign = _call(campaigns_service.get, db, campaign_id)
    dispatch_plan = _call(campaigns_service.preview_plan, db, campaign_id)
    config, batch = _call(schedule_config, campaign)
    return {
        "kind": dispatch_plan.kind,
        "summary": describe_schedule(config, batch),
        "first_dispatch_at": dispatch_plan.first_dispatch_at,
        "is_finite": dispatch_plan.is_finite,
        "batch_count": dispatch_plan.batch_count,
        "recipient_count": dispatch_plan.recipient_count,
        "entries": dispatch_plan.to_rows(limit),
    }


@router.get("/{campaign_id}/plan/export.csv")
def export_plan(
    campaign_id: str,
    limit: int = Query(default=1000, ge=1, le=10000),
    db: Session = Depends(get_db),
):
    dispatch_plan = _call(campaigns_service.preview_plan, db, campaign_id)
    return csv_response(dispatch_plan.to_rows(limit), f"campaign_{campaign_id}_plan.csv")


@router.post("/{campaign_id}/launch", response_model=CampaignRead)
def launch_campaign(campaign_id: str, db: Session = Depends(get_db)):
    return _call(campaigns_service.launch, db, campaign_id)


@router.post("/{campaign_id}/pause", response_model=CampaignRead)
def pause_campaign(campaign_id: str, db: Session = Depends(get_db)):
    return _call(campaigns_service.pause, db, campaign_id)


@router.post("/{campaign_id}/resume", response_model=CampaignRead)
def resume_campaign(campaign_id: str, db: Session = Depends(get_db)):
    return _call(campaigns_service.resume, db, campaign_id)


@router.post("/{campaign_id}/stop", response_model=CampaignRead)
def stop_campaign(campaign_id: str, db: Session = Depends(get_db)):
    return _call(campaigns_service.stop, db, campaign_id)


@router.post("/dispatch/tick", response_model=DispatchTickResponse)
def dispatch_tick(db: Session = Depends(get_db)):
    """Run one dispatch tick now instead of waiting for the beat schedule."""
    summary = campaigns_service.dispatch_due(db, datetime.now(UTC))
    return {
        "activated": summary.activated,
        "completed": summary.completed,
        "batches": summary.batches,
        "failed": summary.failed,
    }
