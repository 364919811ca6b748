# mentor/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from mentor.core.clock import FixedClock  # noqa: E402
from mentor.core.database import build_engine  # noqa: E402
from mentor.features.storage.local_store import InMemoryLocalStore, SqlLocalStore  # noqa: E402
from mentor.features.storage.remote_store import InMemoryRemoteStore  # noqa: E402
from mentor.features.streaks.service import StreakService  # noqa: E402

# Tuesday, mid-morning in the user's timezone.
NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def today(clock):
    return clock.today("u1")


@pytest.fixture
def local_store():
    return InMemoryLocalStore()


@pytest.fixture
def remote(clock):
    return InMemoryRemoteStore(clock)


@pytest.fixture
def sql_store():
    engine = build_engine("sqlite://")
    store = SqlLocalStore(engine=engine)
    yield store
    engine.dispose()


@pytest.fixture
def service(local_store, remote, clock):
    return StreakService(
        local_store,
        remote,
        clock,
        at_risk_cutoff_hour=20,
        sync_timeout_seconds=5,
        backoff_base_seconds=5,
        backoff_cap_seconds=900,
        max_retries=3,
    )


@pytest.fixture
def client(service):
    from fastapi.testclient import TestClient

    from mentor.main import create_app

    return TestClient(create_app(service))
