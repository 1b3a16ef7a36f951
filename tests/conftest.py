import os

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB, no LLM keys, no background loops for tests
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["LLM_PROVIDER"] = "auto"
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_RESPONDERS"] = "false"
os.environ["EVENT_RECOVERY_ENABLED"] = "false"

from sehat.database import close_db, init_db
from sehat.main import app, build_services
from sehat.models.geo import Coordinates
from sehat.services.case_store import CaseStore
from sehat.services.dispatch import DispatchEngine
from sehat.services.event_bus import EventBus
from sehat.services.event_store import EventStore
from sehat.services.responders import ResponderDirectory

KARACHI = Coordinates(lat=24.8607, lng=67.0011)


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import sehat.database as db_mod

    # Close any existing connection
    if db_mod._db is not None:
        try:
            await db_mod._db.close()
        except Exception:
            pass
    db_mod._db = None

    # Override module-level config directly (avoids fragile importlib.reload)
    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""
    db_mod.SEED_DEMO_RESPONDERS = False

    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()


@pytest_asyncio.fixture
async def bus(db):
    """Event bus with a short handler timeout; in-flight deliveries are drained on teardown."""
    event_bus = EventBus(EventStore(db), handler_timeout=0.5, recovery_interval=0.05, stale_after=60)
    yield event_bus
    await event_bus.stop()


@pytest_asyncio.fixture
async def directory(db):
    return ResponderDirectory(db, estimate_missing=False, region_center=KARACHI)


@pytest_asyncio.fixture
async def dispatch(db, directory, bus):
    return DispatchEngine(db, CaseStore(db), directory, bus)


@pytest_asyncio.fixture
async def services(db):
    """The application's service graph on ``app.state``, as the lifespan builds it."""
    build_services(app, db)
    yield app.state
    await app.state.registry.stop()
    await app.state.bus.stop()


@pytest.fixture
def client(services):
    """Provide a synchronous TestClient for websocket tests."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(services):
    """Provide an async httpx client for HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
