"""Root conftest — shared settings, store, and HTTP client fixtures.

Invariants:
    - Every test gets a fresh SQLite file database under tmp_path
    - Apps are built through create_app() with test settings; the lifespan is
      not run by ASGITransport, so tests drive the Bootstrapper explicitly

Design Decisions:
    - SQLite file (not :memory:): several engines can share it, which is how
      multi-instance rate limiting is simulated
"""

import os

import pytest
from httpx import ASGITransport, AsyncClient

from gatehouse.config import load_settings
from gatehouse.infrastructure.database import StorageConnector
from gatehouse.lifecycle import Bootstrapper
from gatehouse.main import create_app

# Ensure tests never pick up a real store
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./gatehouse-test.db")


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'gatehouse.db'}"


@pytest.fixture
def settings(database_url):
    return load_settings(
        database_url=database_url,
        rate_limit_window_seconds=60,
        rate_limit_max_requests=5,
        storage_probe_interval_seconds=0,
        cors_origins=["http://localhost:5173"],
    )


@pytest.fixture
async def connector(database_url):
    store = StorageConnector(database_url)
    await store.connect()
    yield store
    await store.dispose()


@pytest.fixture
async def bootstrapper(settings):
    boot = Bootstrapper(settings)
    yield boot
    await boot.shutdown()


@pytest.fixture
def app(settings, bootstrapper):
    return create_app(settings, bootstrapper)


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c


@pytest.fixture
async def serving_client(client, bootstrapper):
    """Client for an app whose Bootstrapper has reached Serving."""
    await bootstrapper.start()
    return client
