import os

# must be set before app.db is imported
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app.db import Base, SessionLocal, engine
from app.models.event import Event
from app.models_telemetry import TrackedSession
from app.telemetry_utils import utcnow
from main import app


@pytest.fixture(autouse=True)
def fresh_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def add_event(db):
    def _add(user_id, event_type, page_url="/", minutes_ago=60, **extra):
        fields = dict(
            session_id=f"s-{user_id}",
            user_id=user_id,
            project_id="default",
            event_type=event_type,
            event_name=event_type,
            page_url=page_url,
            payload={},
            timestamp=utcnow() - timedelta(minutes=minutes_ago),
        )
        fields.update(extra)
        db.add(Event(**fields))

    return _add


@pytest.fixture
def add_session(db):
    def _add(session_id, user_id, days_ago=1.0, **extra):
        fields = dict(
            session_id=session_id,
            user_id=user_id,
            project_id="default",
            start_time=utcnow() - timedelta(days=days_ago),
            duration=0,
            event_count=0,
            page_views=0,
            is_complete=False,
        )
        fields.update(extra)
        db.add(TrackedSession(**fields))

    return _add
