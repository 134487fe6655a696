"""Phishing awareness service module.

Runs simulated phishing campaigns and derives risk and compliance scores
from how recipients react to them and to training content.

Submodule Structure:
    awareness/
    ├── scheduler.py    - Dispatch planning (immediate, scheduled, recurring, batched)
    ├── lifecycle.py    - Campaign status machine
    ├── campaigns.py    - Persistent campaign service and dispatch tick
    ├── funnel.py       - Idempotent fold of tracking events
    ├── tracking.py     - Persistent tracking ingestion
    ├── aggregation.py  - Campaign, department and cohort metrics
    ├── scoring.py      - Risk and compliance scoring
    ├── policies.py     - Risk bucket and compliance thresholds
    ├── trends.py       - Calendar-day bucketing
    ├── reports.py      - Report views assembled from the above
    └── export.py       - CSV export
"""

from app.services.awareness.campaigns import Campaigns, campaigns
from app.services.awareness.funnel import FunnelTracker, fold_event
from app.services.awareness.scheduler import plan
from app.services.awareness.tracking import Tracking, tracking

__all__ = [
    "Campaigns",
    "FunnelTracker",
    "Tracking",
    "campaigns",
    "fold_event",
    "plan",
    "tracking",
]
