"""
Shared test fixtures for SwapFlow matching.

Provides the async test client, database session mocks, a Redis mock,
a ``MatchingConfig`` factory and builders for profile model instances.
"""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.database import get_db
from app.matching_engine.config import MatchingConfig
from app.models import Home, Intent, Search, SearchZone


# --- Matching config ---


def _make_config(**overrides) -> MatchingConfig:
    defaults = {
        "instance_id": "test-host-1",
        "retry_delays_ms": (1_000, 2_000, 4_000),
        "max_attempts": 3,
        "worker_concurrency": 2,
        "maintenance_step_timeout_ms": 500,
    }
    defaults.update(overrides)
    return MatchingConfig(**defaults)


@pytest.fixture
def make_config():
    """Factory fixture for MatchingConfig with fast test defaults."""
    return _make_config


@pytest.fixture
def config():
    return _make_config()


# --- Profile builders ---


PARIS = (48.8566, 2.3522)
LYON = (45.7640, 4.8357)


def _make_home(**overrides) -> Home:
    defaults = {
        "user_id": uuid.uuid4(),
        "lat": PARIS[0],
        "lng": PARIS[1],
        "home_type": "T2",
        "nb_rooms": 2,
        "surface": 40,
        "rent": 900,
    }
    defaults.update(overrides)
    return Home(**defaults)


def _make_search(zones=None, **overrides) -> Search:
    defaults = {
        "user_id": uuid.uuid4(),
        "min_rent": None,
        "max_rent": 1000,
        "home_types": [],
    }
    defaults.update(overrides)
    search = Search(**defaults)
    if zones is None:
        zones = [SearchZone(label="Paris", lat=PARIS[0], lng=PARIS[1], radius=5_000)]
    search.zones = zones
    return search


def _make_intent(home=None, search=None, **overrides) -> Intent:
    """Eligible intent linked to *home* and *search* (relationships populated)."""
    user_id = overrides.pop("user_id", uuid.uuid4())
    home = home or _make_home(user_id=user_id)
    search = search or _make_search(user_id=user_id)
    defaults = {
        "user_id": user_id,
        "home_id": home.id,
        "search_id": search.id,
        "is_in_flow": True,
        "total_matches_purchased": 3,
        "total_matches_remaining": 3,
    }
    defaults.update(overrides)
    intent = Intent(**defaults)
    intent.home = home
    intent.search = search
    return intent


@pytest.fixture
def make_home():
    return _make_home


@pytest.fixture
def make_search():
    return _make_search


@pytest.fixture
def make_intent():
    return _make_intent


# --- Mock Redis ---


@pytest.fixture
def mock_redis():
    """AsyncMock Redis client whose lock() is immediately acquired."""
    redis = AsyncMock()
    lock = AsyncMock()
    lock.acquire = AsyncMock(return_value=True)
    lock.release = AsyncMock()
    redis.lock = MagicMock(return_value=lock)
    redis.get = AsyncMock(return_value=None)
    redis.delete = AsyncMock()
    return redis


# --- Mock Database Session ---


@pytest.fixture
def mock_db():
    """AsyncMock database session."""
    db = AsyncMock()

    # Mock the result object returned by db.execute()
    mock_result = MagicMock()
    mock_result.scalar_one_or_none = MagicMock(return_value=None)
    mock_result.rowcount = 0
    db.execute = AsyncMock(return_value=mock_result)
    db.scalar = AsyncMock(return_value=None)
    db.get = AsyncMock(return_value=None)
    db.flush = AsyncMock()
    db.add = MagicMock()
    db.add_all = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()

    # session.begin() is an async context manager
    begin_cm = AsyncMock()
    begin_cm.__aenter__ = AsyncMock(return_value=None)
    begin_cm.__aexit__ = AsyncMock(return_value=False)
    db.begin = MagicMock(return_value=begin_cm)

    return db


@pytest.fixture
def mock_session_factory(mock_db):
    """Session factory that returns a context manager yielding mock_db."""

    class _SessionCM:
        async def __aenter__(self):
            return mock_db

        async def __aexit__(self, *args):
            return False

    def factory():
        return _SessionCM()

    return factory


def result_with(*, scalar=None, scalars=None, rows=None, rowcount=0):
    """Build a MagicMock shaped like an SQLAlchemy Result."""
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=scalar)
    result.scalar = MagicMock(return_value=scalar)
    result.scalars.return_value.all.return_value = list(scalars or [])
    result.scalars.return_value.unique.return_value.all.return_value = list(scalars or [])
    result.all = MagicMock(return_value=list(rows or []))
    result.rowcount = rowcount
    return result


@pytest.fixture
def make_result():
    return result_with


# --- Time helpers ---


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


# --- Dependency Override Helpers ---


@pytest_asyncio.fixture
async def client(mock_db):
    """
    Async HTTP test client with get_db overridden to use the mock session.
    """
    from app.main import app

    async def override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
