"""Reconnecting client for the live analytics channel.

One connection per session. The token is sent once, as a query parameter,
when the socket is opened. On open the client subscribes to each configured
channel and then pings every ``heartbeat_interval`` seconds. Any close code
other than 1000 triggers a reconnect every ``reconnect_interval`` seconds,
up to ``max_reconnect_attempts``; after that the channel parks in the
``error`` state until :meth:`LiveUpdateChannel.retry` is called.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import time
from collections.abc import Awaitable, Callable, Iterable
from enum import StrEnum
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets

from app.config import settings
from app.logging import get_logger
from app.services.awareness.errors import ChannelUnavailable
from app.services.awareness.observability import LIVE_CHANNEL_RECONNECTS
from app.websocket.events import Channel, MessageType

logger = get_logger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
INTERNAL_ERROR_CLOSE = 1011
PONG_TIMEOUT_CLOSE = 4000


class ChannelStatus(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class LiveConnection(Protocol):
    close_code: int | None

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...

    def __aiter__(self): ...


Connector = Callable[[str], Awaitable[LiveConnection]]
Callback = Callable[..., Any]


async def _default_connector(url: str) -> LiveConnection:
    return await websockets.connect(url)


def with_token(url: str, token: str | None) -> str:
    if not token:
        return url
    parts = urlsplit(url)
    query = [(key, value) for key, value in parse_qsl(parts.query) if key != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


async def _invoke(callback: Callback | None, *args) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.warning("live_channel_callback_error error=%s", exc)


class LiveUpdateChannel:
    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        channels: Iterable[str] = (Channel.ANALYTICS.value,),
        on_message: Callback | None = None,
        on_status: Callback | None = None,
        on_error: Callback | None = None,
        reconnect_interval: float | None = None,
        max_reconnect_attempts: int | None = None,
        heartbeat_interval: float | None = None,
        pong_timeout_factor: float | None = None,
        connector: Connector | None = None,
    ):
        self.url = url
        self.token = token
        self.channels = tuple(channels)
        self.on_message = on_message
        self.on_status = on_status
        self.on_error = on_error
        self.reconnect_interval = (
            settings.live_reconnect_interval if reconnect_interval is None else reconnect_interval
        )
        self.max_reconnect_attempts = (
            settings.live_max_reconnect_attempts if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self.heartbeat_interval = (
            settings.live_heartbeat_interval if heartbeat_interval is None else heartbeat_interval
        )
        # Disabled by default: a silent server is only detected by a close
        self.pong_timeout_factor = pong_timeout_factor
        self._connector = connector or _default_connector

        self.reconnect_attempts = 0
        self.last_message: dict[str, Any] | None = None
        self.last_error: Exception | None = None
        self._status = ChannelStatus.DISCONNECTED
        self._connection: LiveConnection | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._last_pong: float | None = None
        self._closing = False

    @property
    def status(self) -> ChannelStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == ChannelStatus.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def _set_status(self, status: ChannelStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.debug("live_channel_status status=%s", status.value)
        await _invoke(self.on_status, status)

    async def connect(self) -> None:
        if self._status in (ChannelStatus.CONNECTING, ChannelStatus.CONNECTED):
            return
        self._closing = False
        await self._set_status(ChannelStatus.CONNECTING)
        try:
            connection = await self._connector(with_token(self.url, self.token))
        except Exception as exc:
            logger.warning("live_channel_connect_failed url=%s error=%s", self.url, exc)
            self.last_error = exc
            await self._handle_close(ABNORMAL_CLOSURE)
            return

        self._connection = connection
        self._last_pong = time.monotonic()
        await self._set_status(ChannelStatus.CONNECTED)
        logger.info("live_channel_connected url=%s", self.url)

        self._reader_task = asyncio.create_task(self._reader(connection))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(connection))
        try:
            for channel in self.channels:
                await self.send({"type": "subscribe", "channel": channel})
        except Exception as exc:
            logger.warning("live_channel_subscribe_failed url=%s error=%s", self.url, exc)
            self.last_error = exc
            await self._drop_connection(connection)
            await self._handle_close(ABNORMAL_CLOSURE)
            return
        self.reconnect_attempts = 0

    async def _drop_connection(self, connection: LiveConnection) -> None:
        """Detach a dead connection so its reader does not report the close again."""
        if self._connection is connection:
            self._connection = None
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        with contextlib.suppress(Exception):
            await connection.close(code=INTERNAL_ERROR_CLOSE, reason="Subscribe failed")

    async def disconnect(self) -> None:
        """Close the connection and cancel any pending reconnect."""
        self._closing = True
        self._cancel_reconnect()
        self._stop_heartbeat()
        connection = self._connection
        if connection is not None:
            with contextlib.suppress(Exception):
                await connection.close(code=NORMAL_CLOSURE, reason="Client disconnect")
        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        self._connection = None
        await self._set_status(ChannelStatus.DISCONNECTED)

    async def retry(self) -> None:
        """Manual retry after the reconnect budget is spent."""
        self._cancel_reconnect()
        self.reconnect_attempts = 0
        self.last_error = None
        if self._status == ChannelStatus.ERROR:
            await self._set_status(ChannelStatus.DISCONNECTED)
        await self.connect()

    async def send(self, message: dict[str, Any]) -> bool:
        if self._connection is None or self._status != ChannelStatus.CONNECTED:
            logger.warning("live_channel_send_skipped type=%s status=%s", message.get("type"), self._status.value)
            return False
        await self._connection.send(json.dumps(message))
        return True

    async def subscribe(self, channel: str) -> bool:
        return await self.send({"type": "subscribe", "channel": channel})

    async def _reader(self, connection: LiveConnection) -> None:
        try:
            async for raw in connection:
                await self._handle_raw(raw)
        except websockets.ConnectionClosed:
            pass
        except Exception as exc:
            logger.warning("live_channel_reader_error error=%s", exc)
        code = getattr(connection, "close_code", None)
        if connection is self._connection:
            self._connection = None
            await self._handle_close(code)

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("live_channel_invalid_message")
            return
        if not isinstance(message, dict):
            logger.warning("live_channel_invalid_message")
            return

        self.last_message = message
        message_type = message.get("type")
        if message_type == MessageType.PONG:
            self._last_pong = time.monotonic()
        elif message_type == MessageType.ERROR:
            logger.warning("live_channel_server_error message=%s", message.get("message"))
        elif message_type not in set(MessageType):
            logger.debug("live_channel_unknown_type type=%s", message_type)
        await _invoke(self.on_message, message)

    async def _handle_close(self, code: int | None) -> None:
        self._stop_heartbeat()
        if self._closing or code == NORMAL_CLOSURE:
            await self._set_status(ChannelStatus.DISCONNECTED)
            return

        logger.info("live_channel_closed code=%s attempts=%s", code, self.reconnect_attempts)
        if self.reconnect_attempts < self.max_reconnect_attempts:
            self.reconnect_attempts += 1
            LIVE_CHANNEL_RECONNECTS.inc()
            await self._set_status(ChannelStatus.DISCONNECTED)
            self._reconnect_task = asyncio.create_task(self._reconnect_later())
            return

        self.last_error = ChannelUnavailable()
        await self._set_status(ChannelStatus.ERROR)
        logger.warning("live_channel_unavailable attempts=%s", self.reconnect_attempts)
        await _invoke(self.on_error, self.last_error)

    async def _reconnect_later(self) -> None:
        try:
            await asyncio.sleep(self.reconnect_interval)
        except asyncio.CancelledError:
            return
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, connection: LiveConnection) -> None:
        try:
            while self._connection is connection:
                await asyncio.sleep(self.heartbeat_interval)
                if self._connection is not connection:
                    return
                if self._pong_overdue():
                    logger.warning("live_channel_pong_timeout url=%s", self.url)
                    await connection.close(code=PONG_TIMEOUT_CLOSE, reason="Pong timeout")
                    return
                await self.send({"type": "ping"})
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.warning("live_channel_heartbeat_error error=%s", exc)

    def _pong_overdue(self) -> bool:
        if not self.pong_timeout_factor or self._last_pong is None:
            return False
        return time.monotonic() - self._last_pong > self.heartbeat_interval * self.pong_timeout_factor
