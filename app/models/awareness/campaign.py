import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.awareness.enums import CampaignStatus


class Campaign(Base):
    __tablename__ = "awareness_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    template_ref: Mapped[str | None] = mapped_column(String(200))
    status: Mapped[CampaignStatus] = mapped_column(Enum(CampaignStatus), default=CampaignStatus.draft)

    # Targeting: "all" or a list of department names
    target_group: Mapped[str | list | None] = mapped_column(JSON, default="all")
    recipient_ids: Mapped[list | None] = mapped_column(JSON)

    # Scheduling
    schedule: Mapped[dict] = mapped_column(JSON, nullable=False)
    batch: Mapped[dict | None] = mapped_column(JSON)
    launched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_dispatch_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Counters
    total_recipients: Mapped[int] = mapped_column(Integer, default=0)
    dispatched_batches: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
