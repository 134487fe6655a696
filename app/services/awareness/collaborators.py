"""Read-only collaborator seams: the organisation directory and training history.

The scoring engine never reaches into another system's storage directly;
it is handed snapshots produced by one of these providers.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.awareness.directory import DirectoryUser, TrainingEvent
from app.models.awareness.enums import TrainingEventType
from app.services.awareness.types import DirectoryEntry, TrainingHistory, as_utc

ALL_USERS = "all"


class DirectoryProvider(Protocol):
    def entries(self, user_ids: Iterable[str] | None = None) -> list[DirectoryEntry]: ...


class TrainingProvider(Protocol):
    def history(self, user_ids: Iterable[str] | None = None) -> dict[str, TrainingHistory]: ...

    def completions(self, start: datetime, end: datetime) -> list[datetime]: ...


def resolve_target_group(directory: DirectoryProvider, target_group: str | Sequence[str] | None) -> list[str]:
    """Recipient ids for ``"all"`` or a list of department names, sorted."""
    entries = directory.entries()
    if target_group is None or target_group == ALL_USERS:
        return sorted(entry.user_id for entry in entries)
    if isinstance(target_group, str):
        target_group = [target_group]
    departments = set(target_group)
    return sorted(entry.user_id for entry in entries if entry.department in departments)


def history_from_events(user_id: str, events: Iterable[TrainingEvent]) -> TrainingHistory:
    courses = 0
    quiz_scores: list[float] = []
    last_training_at = None
    last_activity_at = None
    count = 0
    for event in events:
        count += 1
        occurred_at = as_utc(event.occurred_at)
        if last_activity_at is None or occurred_at > last_activity_at:
            last_activity_at = occurred_at
        if event.event_type == TrainingEventType.course_completed:
            courses += 1
            if last_training_at is None or occurred_at > last_training_at:
                last_training_at = occurred_at
        elif event.event_type == TrainingEventType.quiz_completed and event.score is not None:
            quiz_scores.append(float(event.score))
    return TrainingHistory(
        user_id=user_id,
        courses_completed=courses,
        quiz_scores=tuple(quiz_scores),
        last_training_at=last_training_at,
        training_events=count,
        last_activity_at=last_activity_at,
    )


class SqlDirectoryProvider:
    def __init__(self, db: Session):
        self.db = db

    def entries(self, user_ids: Iterable[str] | None = None) -> list[DirectoryEntry]:
        stmt = select(DirectoryUser).where(DirectoryUser.is_active.is_(True))
        if user_ids is not None:
            stmt = stmt.where(DirectoryUser.user_id.in_([str(uid) for uid in user_ids]))
        rows = self.db.scalars(stmt.order_by(DirectoryUser.user_id)).all()
        return [
            DirectoryEntry(user_id=row.user_id, department=row.department, email=row.email, role=row.role)
            for row in rows
        ]


class SqlTrainingProvider:
    def __init__(self, db: Session):
        self.db = db

    def history(self, user_ids: Iterable[str] | None = None) -> dict[str, TrainingHistory]:
        stmt = select(TrainingEvent)
        if user_ids is not None:
            stmt = stmt.where(TrainingEvent.user_id.in_([str(uid) for uid in user_ids]))
        grouped: dict[str, list[TrainingEvent]] = {}
        for event in self.db.scalars(stmt).all():
            grouped.setdefault(event.user_id, []).append(event)
        return {user_id: history_from_events(user_id, events) for user_id, events in grouped.items()}

    def completions(self, start: datetime, end: datetime) -> list[datetime]:
        """Course completion instants inside [start, end]."""
        stmt = select(TrainingEvent.occurred_at).where(
            TrainingEvent.event_type == TrainingEventType.course_completed,
            TrainingEvent.occurred_at >= start,
            TrainingEvent.occurred_at <= end,
        )
        return [as_utc(moment) for moment in self.db.scalars(stmt).all()]


class StaticDirectory:
    """Directory snapshot held in memory, for offline analysis and imports."""

    def __init__(self, entries: Iterable[DirectoryEntry]):
        self._entries = {entry.user_id: entry for entry in entries}

    def entries(self, user_ids: Iterable[str] | None = None) -> list[DirectoryEntry]:
        if user_ids is None:
            return list(self._entries.values())
        return [self._entries[uid] for uid in map(str, user_ids) if uid in self._entries]


class StaticTraining:
    def __init__(self, histories: Iterable[TrainingHistory]):
        self._histories = {history.user_id: history for history in histories}

    def history(self, user_ids: Iterable[str] | None = None) -> dict[str, TrainingHistory]:
        if user_ids is None:
            return dict(self._histories)
        wanted = {str(uid) for uid in user_ids}
        return {uid: history for uid, history in self._histories.items() if uid in wanted}

    def completions(self, start: datetime, end: datetime) -> list[datetime]:
        # Snapshots only keep the latest completion per user
        start, end = as_utc(start), as_utc(end)
        return [
            as_utc(history.last_training_at)
            for history in self._histories.values()
            if history.last_training_at is not None and start <= as_utc(history.last_training_at) <= end
        ]
