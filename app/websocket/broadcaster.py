from __future__ import annotations

import asyncio
from typing import Any

from app.logging import get_logger
from app.websocket.events import Channel, LiveMessage, MessageType
from app.websocket.manager import ADMIN_ROLES, get_connection_manager

logger = get_logger(__name__)


def _handle_task_exception(task: asyncio.Task):
    """Callback to log exceptions from background tasks."""
    try:
        exc = task.exception()
        if exc:
            logger.error("live_task_error error=%s", exc, exc_info=exc)
    except asyncio.CancelledError:
        pass


def _run_async(coro):
    """Run an async coroutine from sync code with error handling."""
    try:
        asyncio.get_running_loop()
        task = asyncio.create_task(coro)
        task.add_done_callback(_handle_task_exception)
    except RuntimeError:
        try:
            asyncio.run(coro)
        except Exception as exc:
            logger.error("async_run_error error=%s", exc)


def broadcast_analytics_update(campaign_id: str, event: dict[str, Any]):
    """
    Push an analytics update to subscribers of the analytics channel.

    Called after a tracking event has been folded into its interaction record.
    """
    try:
        message = LiveMessage(type=MessageType.ANALYTICS_UPDATE, campaignId=str(campaign_id), event=event)
        manager = get_connection_manager()
        _run_async(manager.broadcast_to_channel(Channel.ANALYTICS.value, message))
        logger.debug("broadcast_analytics_update campaign_id=%s", campaign_id)
    except Exception as exc:
        logger.warning("broadcast_analytics_update_error error=%s", exc)


def broadcast_platform_metrics(metrics: dict[str, Any]):
    """Platform-wide metrics go to administrators only."""
    try:
        message = LiveMessage(type=MessageType.PLATFORM_METRICS, metrics=metrics)
        _run_async(get_connection_manager().broadcast_to_roles(ADMIN_ROLES, message))
    except Exception as exc:
        logger.warning("broadcast_platform_metrics_error error=%s", exc)


def send_alert_to_user(user_id: str, alert: dict[str, Any]):
    try:
        message = LiveMessage(type=MessageType.ALERT, alert=alert)
        _run_async(get_connection_manager().broadcast_to_user(str(user_id), message))
    except Exception as exc:
        logger.warning("send_alert_to_user_error user_id=%s error=%s", user_id, exc)


def send_notification(notification: dict[str, Any]):
    try:
        message = LiveMessage(type=MessageType.NOTIFICATION, notification=notification)
        _run_async(get_connection_manager().broadcast_to_all(message))
    except Exception as exc:
        logger.warning("send_notification_error error=%s", exc)
