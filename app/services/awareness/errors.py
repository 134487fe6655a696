"""Error taxonomy for the awareness campaign core."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException


@dataclass(eq=False)
class AwarenessError(Exception):
    code: str
    detail: str
    status_code: int = 400

    def __str__(self) -> str:
        return f"{self.code}: {self.detail}"

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class InvalidSchedule(AwarenessError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=400)


class InvalidTransition(AwarenessError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=409)


class CampaignNotFound(AwarenessError):
    def __init__(self, campaign_id: str):
        super().__init__(code="campaign_not_found", detail=f"Campaign {campaign_id} not found", status_code=404)


class OrphanEvent(AwarenessError):
    """Tracking event for a campaign the core does not know about.

    Recorded and surfaced as a data-quality warning, never raised to callers.
    """

    def __init__(self, campaign_id: str, user_id: str, event_type: str):
        super().__init__(
            code="orphan_event",
            detail=f"{event_type} event for unknown campaign {campaign_id} (user {user_id})",
            status_code=202,
        )


class ChannelUnavailable(AwarenessError):
    def __init__(self, detail: str = "Live update channel exhausted its reconnect attempts"):
        super().__init__(code="channel_unavailable", detail=detail, status_code=503)


def as_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, AwarenessError):
        return exc.to_http_exception()
    if isinstance(exc, HTTPException):
        return exc
    return HTTPException(status_code=500, detail=str(exc) or "Awareness error")
