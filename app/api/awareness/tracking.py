import base64
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.responses import Response

from app.db import get_db
from app.models.awareness.enums import TrackingEventType
from app.schemas.awareness.tracking import IngestResponse, TrackingEventIn
from app.services.awareness import tracking as tracking_service
from app.services.awareness.tracking import IngestResult
from app.services.awareness.types import TrackingEvent, metadata_for

router = APIRouter(prefix="/awareness", tags=["awareness-tracking"])

# 1x1 transparent GIF
_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
_SAFE_LANDING_PATH = "/phishing-simulation"


def _response(result: IngestResult) -> dict:
    return {"outcome": result.outcome, "interaction": result.record.to_row()}


def _ingest(db: Session, campaign_id: str, user_id: str, event_type: TrackingEventType, raw: dict) -> IngestResult:
    event = TrackingEvent(
        campaign_id=campaign_id,
        user_id=user_id,
        type=event_type,
        timestamp=datetime.now(UTC),
        metadata=metadata_for(event_type, raw),
    )
    return tracking_service.ingest(db, event)


@router.post("/tracking/events", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
def ingest_event(payload: TrackingEventIn, db: Session = Depends(get_db)):
    """Accept one tracking event; unknown campaigns are kept as orphans."""
    return _response(tracking_service.ingest(db, payload.to_event()))


@router.post("/tracking/events/batch", response_model=list[IngestResponse], status_code=status.HTTP_202_ACCEPTED)
def ingest_events(payload: list[TrackingEventIn], db: Session = Depends(get_db)):
    now = datetime.now(UTC)
    return [_response(result) for result in tracking_service.ingest_many(db, [item.to_event(now) for item in payload])]


@router.get("/track/open/{campaign_id}/{user_id}")
def track_open(campaign_id: str, user_id: str, request: Request, db: Session = Depends(get_db)):
    _ingest(db, campaign_id, user_id, TrackingEventType.opened, {"user_agent": request.headers.get("user-agent")})
    return Response(
        content=_PIXEL,
        media_type="image/gif",
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


@router.get("/track/click/{campaign_id}/{user_id}")
def track_click(
    campaign_id: str,
    user_id: str,
    request: Request,
    url: str | None = Query(default=None),
    vector: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    _ingest(
        db,
        campaign_id,
        user_id,
        TrackingEventType.clicked,
        {"clicked_url": url, "attack_vector": vector, "user_agent": request.headers.get("user-agent")},
    )
    # Always land on the awareness page, never on the simulated link
    return RedirectResponse(
        url=f"{_SAFE_LANDING_PATH}?campaign={campaign_id}&user={user_id}",
        status_code=status.HTTP_302_FOUND,
    )


@router.post("/track/report/{campaign_id}/{user_id}", response_model=IngestResponse)
def track_report(
    campaign_id: str,
    user_id: str,
    vector: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return _response(_ingest(db, campaign_id, user_id, TrackingEventType.reported, {"attack_vector": vector}))

