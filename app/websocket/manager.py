from __future__ import annotations

import asyncio
import contextlib
import json
import time
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from app.config import settings
from app.logging import get_logger
from app.services.awareness.observability import LIVE_CONNECTIONS
from app.websocket.events import LiveMessage, MessageType

logger = get_logger(__name__)

CHANNEL_PREFIX = "awareness_ws:"
ADMIN_ROLES = frozenset({"super_admin", "admin"})

# Audiences a published message can target
AUDIENCE_CHANNEL = "channel"
AUDIENCE_USER = "user"
AUDIENCE_ROLES = "roles"
AUDIENCE_ALL = "all"


class ConnectionManager:
    """
    Manages live update connections with Redis pub/sub for horizontal scaling.

    Local connection pool: user_id -> [WebSocket]
    Channel subscriptions: channel -> set[user_id]
    """

    def __init__(self, redis_url: str | None = None, heartbeat_interval: float | None = None) -> None:
        self.redis_url = redis_url or settings.redis_url
        self.heartbeat_interval = heartbeat_interval or settings.live_heartbeat_interval
        self._connections: dict[str, list[WebSocket]] = {}
        self._roles: dict[str, str | None] = {}
        self._subscriptions: dict[str, set[str]] = {}
        self._last_seen: dict[tuple[str, int], float] = {}
        self._redis_client: Any | None = None
        self._pubsub: Any | None = None
        self._listener_task: asyncio.Task | None = None
        self._watchdog_tasks: dict[tuple[str, int], asyncio.Task] = {}
        self._running = False

    async def connect(self) -> None:
        """Initialize Redis connection and start listener."""
        try:
            import redis.asyncio as aioredis

            self._redis_client = aioredis.from_url(self.redis_url, decode_responses=True)
            self._pubsub = self._redis_client.pubsub()
            await self._pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
            self._running = True
            self._listener_task = asyncio.create_task(self._redis_listener())
            logger.info("live_manager_connected redis=%s", self.redis_url)
        except Exception as exc:
            self._redis_client = None
            self._pubsub = None
            logger.warning("live_manager_redis_failed error=%s", exc)

    async def disconnect(self) -> None:
        """Cleanup Redis connection and stop listener."""
        self._running = False
        if self._listener_task:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.close()
        if self._redis_client:
            await self._redis_client.close()
        self._redis_client = None
        self._pubsub = None
        logger.info("live_manager_disconnected")

    async def _redis_listener(self) -> None:
        """Listen for messages from Redis pub/sub and dispatch to local connections."""
        try:
            if not self._pubsub:
                return
            pubsub = self._pubsub
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message["type"] == "pmessage":
                    await self._handle_redis_message(message["channel"], message["data"])
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.error("live_redis_listener_error error=%s", exc)

    async def _handle_redis_message(self, channel: str, data: str) -> None:
        try:
            payload = json.loads(data)
            event_data = payload.get("event")
            if not event_data:
                return
            await self._dispatch(payload.get("audience"), payload.get("target"), event_data)
        except Exception as exc:
            logger.warning("live_redis_message_error channel=%s error=%s", channel, exc)

    # Connections

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self._connections.values())

    def is_subscribed(self, user_id: str, channel: str) -> bool:
        return user_id in self._subscriptions.get(channel, set())

    async def register_connection(self, user_id: str, role: str | None, websocket: WebSocket) -> None:
        """Register an authenticated connection and acknowledge it."""
        self._connections.setdefault(user_id, []).append(websocket)
        self._roles[user_id] = role
        self.touch(user_id, websocket)
        LIVE_CONNECTIONS.inc()
        logger.debug("live_registered user_id=%s role=%s", user_id, role)

        ack = LiveMessage(type=MessageType.CONNECTION, status="connected", userId=user_id, role=role)
        await websocket.send_json(ack.to_wire())
        self._start_watchdog(user_id, websocket)

    async def unregister_connection(self, user_id: str, websocket: WebSocket) -> None:
        await self._remove_connection(user_id, websocket)

    async def _remove_connection(self, user_id: str, websocket: WebSocket) -> None:
        self._stop_watchdog(user_id, websocket)
        self._last_seen.pop((user_id, id(websocket)), None)
        sockets = self._connections.get(user_id)
        if sockets is not None and websocket in sockets:
            sockets.remove(websocket)
            LIVE_CONNECTIONS.dec()
            if not sockets:
                del self._connections[user_id]

        # Drop subscriptions once the user has no connection left
        if user_id not in self._connections:
            self._roles.pop(user_id, None)
            for channel in list(self._subscriptions):
                self._subscriptions[channel].discard(user_id)
                if not self._subscriptions[channel]:
                    del self._subscriptions[channel]
        logger.debug("live_unregistered user_id=%s", user_id)

    def touch(self, user_id: str, websocket: WebSocket) -> None:
        """Record client activity; silent connections are closed by the watchdog."""
        self._last_seen[(user_id, id(websocket))] = time.monotonic()

    def _start_watchdog(self, user_id: str, websocket: WebSocket) -> None:
        key = (user_id, id(websocket))
        if key in self._watchdog_tasks:
            return
        self._watchdog_tasks[key] = asyncio.create_task(self._watchdog_loop(user_id, websocket))

    def _stop_watchdog(self, user_id: str, websocket: WebSocket) -> None:
        task = self._watchdog_tasks.pop((user_id, id(websocket)), None)
        if task and task is not asyncio.current_task():
            task.cancel()

    async def _watchdog_loop(self, user_id: str, websocket: WebSocket) -> None:
        key = (user_id, id(websocket))
        try:
            while websocket.client_state == WebSocketState.CONNECTED:
                await asyncio.sleep(self.heartbeat_interval)
                last_seen = self._last_seen.get(key)
                if last_seen is None:
                    return
                if time.monotonic() - last_seen > self.heartbeat_interval * 2:
                    logger.info("live_connection_stale user_id=%s", user_id)
                    with contextlib.suppress(Exception):
                        await websocket.close(code=1001, reason="Heartbeat timeout")
                    await self._remove_connection(user_id, websocket)
                    return
        except asyncio.CancelledError:
            pass

    # Subscriptions

    async def subscribe(self, user_id: str, channel: str) -> None:
        self._subscriptions.setdefault(channel, set()).add(user_id)
        logger.debug("live_subscribed user_id=%s channel=%s", user_id, channel)

    async def unsubscribe(self, user_id: str, channel: str) -> None:
        if channel in self._subscriptions:
            self._subscriptions[channel].discard(user_id)
            if not self._subscriptions[channel]:
                del self._subscriptions[channel]
        logger.debug("live_unsubscribed user_id=%s channel=%s", user_id, channel)

    # Fan-out

    async def publish(self, audience: str, target: Any, message: LiveMessage) -> None:
        """Deliver ``message`` to an audience, across instances when Redis is up."""
        event_data = message.to_wire()
        if self._redis_client:
            try:
                payload = json.dumps({"audience": audience, "target": target, "event": event_data})
                await self._redis_client.publish(f"{CHANNEL_PREFIX}{audience}", payload)
                return  # Redis listener handles local delivery
            except Exception as exc:
                logger.warning("live_broadcast_redis_error error=%s", exc)

        await self._dispatch(audience, target, event_data)

    async def broadcast_to_channel(self, channel: str, message: LiveMessage) -> None:
        await self.publish(AUDIENCE_CHANNEL, channel, message)

    async def broadcast_to_user(self, user_id: str, message: LiveMessage) -> None:
        await self.publish(AUDIENCE_USER, user_id, message)

    async def broadcast_to_roles(self, roles: frozenset[str], message: LiveMessage) -> None:
        await self.publish(AUDIENCE_ROLES, sorted(roles), message)

    async def broadcast_to_all(self, message: LiveMessage) -> None:
        await self.publish(AUDIENCE_ALL, None, message)

    def _recipients(self, audience: str | None, target: Any) -> list[str]:
        if audience == AUDIENCE_CHANNEL:
            return list(self._subscriptions.get(str(target), set()))
        if audience == AUDIENCE_USER:
            return [str(target)]
        if audience == AUDIENCE_ROLES:
            roles = set(target or ())
            return [user_id for user_id, role in self._roles.items() if role in roles]
        if audience == AUDIENCE_ALL:
            return list(self._connections)
        return []

    async def _dispatch(self, audience: str | None, target: Any, event_data: dict) -> None:
        for user_id in self._recipients(audience, target):
            for ws in list(self._connections.get(user_id, [])):
                try:
                    if ws.client_state == WebSocketState.CONNECTED:
                        await ws.send_json(event_data)
                except Exception:
                    await self._remove_connection(user_id, ws)


# Singleton instance
_manager: ConnectionManager | None = None


def get_connection_manager() -> ConnectionManager:
    """Get the singleton ConnectionManager instance."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
