"""
Pytest configuration and fixtures

IMPORTANT: All tests use transactional rollback isolation.
Application code commits freely; each commit releases a SAVEPOINT inside
an outer transaction that is rolled back when the test ends.

The suite runs against in-memory SQLite unless DATABASE_URL points
elsewhere. The schema comes straight from the models.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from cryptography.fernet import Fernet

# Must be set before core.config / core.database are imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session  # noqa: E402

from core.config import settings  # noqa: E402
from core.database import Base, engine  # noqa: E402
from models import Athlete, CalendarItem, StravaConnection  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    """Create every table once for the whole run."""
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _ensure_encryption_key():
    """Fresh Fernet key per test; reset the process-wide cipher to pick it up."""
    import services.token_encryption as te_mod
    key = Fernet.generate_key().decode()
    old_val = os.environ.get("TOKEN_ENCRYPTION_KEY")
    os.environ["TOKEN_ENCRYPTION_KEY"] = key
    te_mod._token_encryption = None
    yield
    te_mod._token_encryption = None
    if old_val is not None:
        os.environ["TOKEN_ENCRYPTION_KEY"] = old_val


@pytest.fixture(autouse=True)
def _strava_client_config(monkeypatch):
    monkeypatch.setattr(settings, "STRAVA_CLIENT_ID", "test-client-id")
    monkeypatch.setattr(settings, "STRAVA_CLIENT_SECRET", "test-client-secret")


@pytest.fixture(scope="function")
def db_session():
    """
    Create a database session with transactional rollback.

    All changes made during the test are rolled back after the test completes.
    """
    connection = engine.connect()
    transaction = connection.begin()

    session = Session(
        bind=connection,
        join_transaction_mode="create_savepoint",
        expire_on_commit=False,
        autoflush=False,
    )

    yield session

    # Rollback everything - nothing persists
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_athlete(db_session):
    def _make(timezone_name="UTC", coach_id=None):
        athlete = Athlete(
            email=f"test_{uuid4()}@example.com",
            display_name="Test Athlete",
            timezone=timezone_name,
            coach_id=coach_id or uuid4(),
        )
        db_session.add(athlete)
        db_session.commit()
        return athlete
    return _make


@pytest.fixture
def test_athlete(make_athlete):
    return make_athlete()


@pytest.fixture
def make_connection(db_session):
    """StravaConnection with encrypted tokens; valid for 6 hours by default."""
    from services.token_encryption import encrypt_token

    def _make(athlete, access_token="access-1", refresh_token="refresh-1", expires_at=None, last_sync_at=None, scope="activity:read_all"):
        connection = StravaConnection(
            athlete_id=athlete.id,
            strava_athlete_id=int(uuid4().int % 10**9),
            access_token=encrypt_token(access_token),
            refresh_token=encrypt_token(refresh_token),
            expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=6),
            scope=scope,
            last_sync_at=last_sync_at,
        )
        db_session.add(connection)
        db_session.commit()
        return connection
    return _make


@pytest.fixture
def make_calendar_item(db_session):
    def _make(athlete, day, discipline="RUN", start=None, status="PLANNED", title="Planned session"):
        item = CalendarItem(
            athlete_id=athlete.id,
            coach_id=athlete.coach_id,
            date=day,
            planned_start_time_local=start,
            discipline=discipline,
            title=title,
            status=status,
        )
        db_session.add(item)
        db_session.commit()
        return item
    return _make


def strava_activity(activity_id=1001, start_date="2026-03-09T07:02:00Z", elapsed_time=3600, **overrides):
    """Minimal Strava activity summary as returned by /athlete/activities."""
    activity = {
        "id": activity_id,
        "name": "Morning Run",
        "type": "Run",
        "sport_type": "Run",
        "start_date": start_date,
        "start_date_local": start_date.replace("Z", ""),
        "timezone": "(GMT+00:00) UTC",
        "elapsed_time": elapsed_time,
        "moving_time": 3540,
        "distance": 10000.0,
        "total_elevation_gain": 42.0,
        "average_speed": 2.9,
        "max_speed": 4.1,
        "average_heartrate": 151.6,
        "max_heartrate": 172.2,
        "map": {"summary_polyline": "abc123"},
    }
    activity.update(overrides)
    return activity


@pytest.fixture
def activity_factory():
    return strava_activity


class FakeRedis:
    """In-memory stand-in for the subset of redis.Redis the cache uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.closed = False

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        self.store.pop(key, None)
        return 1

    def ping(self):
        return True

    def close(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()
