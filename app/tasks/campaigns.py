import logging

from app.celery_app import celery_app
from app.db import SessionLocal
from app.services.awareness.campaigns import Campaigns

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.campaigns.dispatch_due_campaigns")
def dispatch_due_campaigns():
    """Fire every batch that fell due since the previous tick.

    Scheduled by beat every DISPATCH_TICK_SECONDS. Each campaign keeps its
    own dispatch cursor, committed before batches are queued as
    ``deliver_batch`` tasks, so a late or repeated tick never sends twice.
    """
    session = SessionLocal()
    try:
        summary = Campaigns.dispatch_due(session)
        if summary.activated or summary.batches or summary.completed or summary.failed:
            logger.info(
                "awareness_dispatch_tick activated=%s batches=%s completed=%s failed=%s",
                summary.activated,
                summary.batches,
                summary.completed,
                summary.failed,
            )
        return {
            "activated": summary.activated,
            "completed": summary.completed,
            "batches": summary.batches,
            "failed": summary.failed,
        }
    except Exception:
        session.rollback()
        logger.exception("Error dispatching awareness campaigns")
        raise
    finally:
        session.close()
