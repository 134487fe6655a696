from fastapi import Depends, FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.awareness import router as awareness_router
from app.api.awareness import tracking_router
from app.api.deps import CAMPAIGN_MANAGER_ROLES, require_role
from app.config import settings
from app.db import init_db
from app.logging import configure_logging
from app.telemetry import setup_otel
from app.websocket.router import router as ws_router

app = FastAPI(title="phish_awareness API")

configure_logging()
setup_otel(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(awareness_router, dependencies=[Depends(require_role(*CAMPAIGN_MANAGER_ROLES))])
# Tracking pixels and redirects are public; recipients are identified by path
_include_api_router(tracking_router)
app.include_router(ws_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def head_health():
    return Response(status_code=200)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _create_tables():
    if settings.db_auto_create:
        init_db()


@app.on_event("startup")
async def _start_websocket_manager():
    from app.websocket.manager import get_connection_manager

    manager = get_connection_manager()
    await manager.connect()


@app.on_event("shutdown")
async def _stop_websocket_manager():
    from app.websocket.manager import get_connection_manager

    manager = get_connection_manager()
    await manager.disconnect()
