from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict


class MessageType(StrEnum):
    """Live update message types sent by the server."""

    CONNECTION = "connection"
    ANALYTICS_UPDATE = "analytics_update"
    PLATFORM_METRICS = "platform_metrics"
    ALERT = "alert"
    NOTIFICATION = "notification"
    SUBSCRIBED = "subscribed"
    PONG = "pong"
    ERROR = "error"


class Channel(StrEnum):
    ANALYTICS = "analytics"


class LiveMessage(BaseModel):
    """Outbound live update message.

    Every message is a JSON object with a ``type``; the remaining keys depend
    on the type (``event`` for analytics updates, ``metrics`` for platform
    metrics, ``alert``, ``notification``, ``message`` for errors).
    """

    model_config = ConfigDict(extra="allow")

    type: MessageType
    timestamp: datetime | None = None

    def model_post_init(self, __context: Any) -> None:
        if self.timestamp is None:
            object.__setattr__(self, "timestamp", datetime.now(UTC))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class InboundMessageType(StrEnum):
    """Types of messages clients can send."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PING = "ping"


class InboundMessage(BaseModel):
    """Message received from a live update client."""

    model_config = ConfigDict(extra="ignore")

    type: str
    channel: str | None = None
