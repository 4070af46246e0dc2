# legalinsight/conftest.py
import os
from datetime import datetime, timezone

import pytest

# Settings are read at import time; pin the test environment first
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_KEY", "test-admin-key")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.pop("TEST_DATABASE_URL", None)
os.environ.pop("GUMROAD_WEBHOOK_TOKEN", None)

from legalinsight.core.clock import FixedClock, get_clock  # noqa: E402
from legalinsight.core.database import init_engine, reset_database  # noqa: E402
from legalinsight.features.plans.service import clear_plan_cache  # noqa: E402


# Day 10 of a 31-day month, mid-day UTC
DEFAULT_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def engine():
    """One in-memory SQLite engine (StaticPool) for the whole run."""
    return init_engine("sqlite://")


@pytest.fixture(scope="function", autouse=True)
def reset_db(engine):
    """Drop and recreate every table so each test starts empty."""
    reset_database()
    clear_plan_cache()
    yield
    clear_plan_cache()


@pytest.fixture
def clock():
    return FixedClock(DEFAULT_NOW)


@pytest.fixture
def app(clock):
    from legalinsight.main import app as fastapi_app

    fastapi_app.dependency_overrides[get_clock] = lambda: clock
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def auth_headers():
    def _headers(user_id: str) -> dict:
        return {"X-User-Id": user_id}

    return _headers


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": os.environ["ADMIN_KEY"]}
