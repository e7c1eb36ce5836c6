import os

import pytest

# Settings are read at import time, so set them before anything imports quickalert
os.environ["API_KEY"] = "test-key"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from fastapi.testclient import TestClient

from quickalert.api.main import create_app
from quickalert.core.models import Actor, GeoPoint
from quickalert.core.state import build_services
from quickalert.db.database import Database

# A report location in central Tel Aviv, plus a point about 1 km north of it
REPORT_POINT = GeoPoint(32.0853, 34.7818)
NEARBY_POINT = GeoPoint(32.0943, 34.7818)

ADMIN = Actor(user_id="admin-1", role="admin")
RESPONDER = Actor(user_id="responder-1", role="responder")
CITIZEN = Actor(user_id="citizen-1", role="user")


@pytest.fixture
async def db(tmp_path):
    """Initialize a temporary test database."""
    database = Database(str(tmp_path / "test_quickalert.db"))
    await database.init()
    yield database
    await database.close()


@pytest.fixture
async def services(db):
    return build_services(db)


@pytest.fixture
def make_report(services):
    """Factory submitting a pending report at REPORT_POINT (or a given point)."""

    async def _make(category="fire", point=REPORT_POINT, actor=CITIZEN, title="Smoke from a building"):
        return await services.reports.submit(actor, category=category, title=title, location=point)

    return _make


@pytest.fixture
def client(tmp_path):
    """
    FastAPI TestClient fixture backed by a fresh database for each test.
    """
    app = create_app(database_path=str(tmp_path / "api.db"), sweep_interval=3600)
    with TestClient(app) as test_client:
        yield test_client
