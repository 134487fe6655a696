import os
import sqlite3
import uuid
from datetime import UTC, datetime

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import init_db

load_dotenv(os.path.join(os.getcwd(), ".env"))

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes  # noqa: E402

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

from app.models.awareness import Campaign, DirectoryUser, TrainingEvent, TrainingEventType  # noqa: E402
from app.services.awareness.collaborators import StaticDirectory  # noqa: E402
from app.services.awareness.scheduler import DispatchEntry  # noqa: E402
from app.services.awareness.types import DirectoryEntry  # noqa: E402

NOW = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture()
def db_connection(engine):
    connection = engine.connect()
    transaction = connection.begin()
    try:
        yield connection
    finally:
        transaction.rollback()
        connection.close()


@pytest.fixture()
def db_session(db_connection):
    SessionLocal = sessionmaker(bind=db_connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def now():
    return NOW


class RecordingDelivery:
    """Delivery collaborator that accepts every recipient and remembers each batch."""

    def __init__(self, reject: set[str] | None = None, fail: bool = False):
        self.reject = reject or set()
        self.fail = fail
        self.calls: list[tuple[str, DispatchEntry]] = []

    def deliver(self, campaign, entry: DispatchEntry):
        self.calls.append((str(campaign.id), entry))
        if self.fail:
            raise RuntimeError("delivery backend down")
        return [recipient for recipient in entry.recipients if recipient not in self.reject]


@pytest.fixture()
def delivery():
    return RecordingDelivery()


@pytest.fixture()
def failing_delivery():
    return RecordingDelivery(fail=True)


@pytest.fixture()
def directory_entries():
    return [
        DirectoryEntry(user_id="u1", department="Finance", email="u1@example.com"),
        DirectoryEntry(user_id="u2", department="Finance", email="u2@example.com"),
        DirectoryEntry(user_id="u3", department="Engineering", email="u3@example.com"),
        DirectoryEntry(user_id="u4", department="Engineering", email="u4@example.com"),
        DirectoryEntry(user_id="u5", department=None, email="u5@example.com"),
    ]


@pytest.fixture()
def directory(directory_entries):
    return StaticDirectory(directory_entries)


@pytest.fixture()
def directory_users(db_session, directory_entries):
    users = [
        DirectoryUser(
            user_id=entry.user_id,
            email=entry.email,
            department=entry.department,
            role="admin" if entry.user_id == "u1" else "employee",
        )
        for entry in directory_entries
    ]
    db_session.add_all(users)
    db_session.commit()
    return users


@pytest.fixture()
def training_events(db_session, directory_users):
    events = [
        TrainingEvent(
            user_id="u1",
            event_type=TrainingEventType.course_completed,
            course_ref="phishing-101",
            occurred_at=datetime(2024, 2, 20, tzinfo=UTC),
        ),
        TrainingEvent(
            user_id="u1",
            event_type=TrainingEventType.quiz_completed,
            course_ref="phishing-101",
            score=90,
            occurred_at=datetime(2024, 2, 20, 1, tzinfo=UTC),
        ),
        TrainingEvent(
            user_id="u2",
            event_type=TrainingEventType.quiz_completed,
            course_ref="phishing-101",
            score=50,
            occurred_at=datetime(2023, 1, 10, tzinfo=UTC),
        ),
    ]
    db_session.add_all(events)
    db_session.commit()
    return events


@pytest.fixture()
def campaign(db_session):
    campaign = Campaign(name="Quarterly phish", template_ref="invoice-lure", schedule={"type": "immediate"})
    db_session.add(campaign)
    db_session.commit()
    db_session.refresh(campaign)
    return campaign
