from fastapi import APIRouter

from app.api.awareness.campaigns import router as campaigns_router
from app.api.awareness.reports import router as reports_router
from app.api.awareness.tracking import router as tracking_router

# Management routers sit behind role checks; tracking endpoints are hit by mail clients.
router = APIRouter(tags=["awareness"])
router.include_router(campaigns_router)
router.include_router(reports_router)

__all__ = ["router", "tracking_router"]
