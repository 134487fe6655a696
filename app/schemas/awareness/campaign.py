from __future__ import annotations

from datetime import date, datetime, time
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.awareness.enums import CampaignStatus, RecurrencePattern, ScheduleKind
from app.services.awareness.scheduler import BatchConfig, Immediate, Recurring, Scheduled


class ImmediateSchedule(BaseModel):
    type: Literal["immediate"] = "immediate"

    def to_config(self) -> Immediate:
        return Immediate()


class ScheduledSchedule(BaseModel):
    type: Literal["scheduled"] = "scheduled"
    at: datetime
    timezone: str = "UTC"

    def to_config(self) -> Scheduled:
        return Scheduled(at=self.at, timezone=self.timezone)


class RecurringSchedule(BaseModel):
    type: Literal["recurring"] = "recurring"
    pattern: RecurrencePattern
    days_of_week: list[int] = Field(default_factory=list, description="0 = Sunday .. 6 = Saturday")
    end_date: date | None = None
    timezone: str = "UTC"
    time_of_day: time | None = None
    day_of_month: int | None = None

    def to_config(self) -> Recurring:
        return Recurring(
            pattern=self.pattern,
            days_of_week=frozenset(self.days_of_week),
            end_date=self.end_date,
            timezone=self.timezone,
            time_of_day=self.time_of_day,
            day_of_month=self.day_of_month,
        )


ScheduleIn = Annotated[ImmediateSchedule | ScheduledSchedule | RecurringSchedule, Field(discriminator="type")]


class BatchIn(BaseModel):
    batch_size: int
    batch_delay_seconds: int

    def to_config(self) -> BatchConfig:
        return BatchConfig(batch_size=self.batch_size, batch_delay_seconds=self.batch_delay_seconds)


class CampaignBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    template_ref: str | None = Field(default=None, max_length=200)
    target_group: Literal["all"] | list[str] = "all"


class CampaignCreate(CampaignBase):
    schedule: ScheduleIn = Field(default_factory=ImmediateSchedule)
    batch: BatchIn | None = None


class CampaignUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    template_ref: str | None = Field(default=None, max_length=200)
    target_group: Literal["all"] | list[str] | None = None
    schedule: ScheduleIn | None = None
    batch: BatchIn | None = None


class CampaignRead(CampaignBase):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    status: CampaignStatus
    schedule: dict[str, Any]
    batch: dict[str, Any] | None = None
    total_recipients: int = 0
    dispatched_batches: int = 0
    launched_at: datetime | None = None
    completed_at: datetime | None = None
    last_dispatch_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class DispatchPlanRead(BaseModel):
    kind: ScheduleKind
    summary: str
    first_dispatch_at: datetime | None = None
    is_finite: bool
    batch_count: int
    recipient_count: int
    entries: list[dict[str, Any]]


class DispatchTickResponse(BaseModel):
    activated: int = 0
    completed: int = 0
    batches: int = 0
    failed: int = 0
