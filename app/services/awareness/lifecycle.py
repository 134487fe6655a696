"""Campaign status machine.

draft -> scheduled | active -> (paused <-> active) -> completed
Any non-terminal status may be cancelled (explicit stop). completed and
cancelled are terminal.
"""

from __future__ import annotations

from datetime import datetime

from app.models.awareness.enums import CampaignStatus
from app.services.awareness.errors import InvalidTransition
from app.services.awareness.scheduler import DispatchPlan
from app.services.awareness.types import as_utc

TERMINAL_STATUSES = frozenset({CampaignStatus.completed, CampaignStatus.cancelled})

_ALLOWED: dict[str, frozenset[CampaignStatus]] = {
    "launch": frozenset({CampaignStatus.draft}),
    "activate": frozenset({CampaignStatus.scheduled}),
    "pause": frozenset({CampaignStatus.active}),
    "resume": frozenset({CampaignStatus.paused}),
    "complete": frozenset({CampaignStatus.active}),
    "cancel": frozenset(
        {CampaignStatus.draft, CampaignStatus.scheduled, CampaignStatus.active, CampaignStatus.paused}
    ),
}

_TARGETS: dict[str, CampaignStatus] = {
    "activate": CampaignStatus.active,
    "pause": CampaignStatus.paused,
    "resume": CampaignStatus.active,
    "complete": CampaignStatus.completed,
    "cancel": CampaignStatus.cancelled,
}


def launch_status(dispatch_plan: DispatchPlan, now: datetime) -> CampaignStatus:
    """Active when the first dispatch is already due, scheduled otherwise."""
    first = dispatch_plan.first_dispatch_at
    if first is not None and first <= as_utc(now):
        return CampaignStatus.active
    return CampaignStatus.scheduled


def transition(
    status: CampaignStatus,
    action: str,
    *,
    dispatch_plan: DispatchPlan | None = None,
    now: datetime | None = None,
) -> CampaignStatus:
    allowed = _ALLOWED.get(action)
    if allowed is None:
        raise InvalidTransition("unknown_action", f"Unknown campaign action: {action}")
    if status not in allowed:
        raise InvalidTransition(
            f"cannot_{action}",
            f"Cannot {action} a campaign in status {status.value}",
        )
    if action == "launch":
        if dispatch_plan is None or now is None:
            raise InvalidTransition("launch_requires_plan", "Launching requires a dispatch plan")
        return launch_status(dispatch_plan, now)
    return _TARGETS[action]


def plan_exhausted(dispatch_plan: DispatchPlan, last_dispatch_at: datetime | None) -> bool:
    """True once a finite plan has fired every entry."""
    if not dispatch_plan.is_finite:
        return False
    final = dispatch_plan.last_dispatch_at()
    if final is None:
        return True
    last_dispatch_at = as_utc(last_dispatch_at)
    return last_dispatch_at is not None and last_dispatch_at >= final
