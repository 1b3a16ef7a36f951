import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sehat.agents.analytics import AnalyticsAgent
from sehat.agents.knowledge import KnowledgeAgent
from sehat.agents.notification import NotificationAgent
from sehat.agents.triage import TriageAgent
from sehat.config import AGENT_AUTONOMOUS_INTERVAL_SECONDS, EVENT_RECOVERY_ENABLED
from sehat.database import DatabaseAdapter, close_db, get_db, init_db
from sehat.errors import StoreUnavailable
from sehat.routers import agents, cases, events, responders
from sehat.services.agent_registry import AgentRegistry
from sehat.services.case_store import CaseStore
from sehat.services.dispatch import DispatchEngine
from sehat.services.event_bus import EventBus
from sehat.services.event_store import EventStore
from sehat.services.notifications import NotificationStore
from sehat.services.responders import ResponderDirectory
from sehat.services.sessions import SessionStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_services(app: FastAPI, db: DatabaseAdapter) -> None:
    """Wire the service graph onto ``app.state``."""
    bus = EventBus(EventStore(db))
    directory = ResponderDirectory(db)
    notifications = NotificationStore(db)
    sessions = SessionStore(db)
    registry = AgentRegistry(bus, sessions)

    registry.register("triage", TriageAgent(bus=bus))
    registry.register("knowledge", KnowledgeAgent(bus))
    registry.register("notification", NotificationAgent(notifications))
    registry.register("analytics", AnalyticsAgent())

    app.state.bus = bus
    app.state.directory = directory
    app.state.notifications = notifications
    app.state.registry = registry
    app.state.sessions = sessions
    app.state.dispatch = DispatchEngine(db, CaseStore(db), directory, bus)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Sehat Dispatch...")
    await init_db()
    build_services(app, await get_db())
    logger.info("Database initialized")

    if EVENT_RECOVERY_ENABLED:
        app.state.bus.start()
    app.state.registry.start(AGENT_AUTONOMOUS_INTERVAL_SECONDS)
    yield
    await app.state.registry.stop()
    await app.state.bus.stop()
    await close_db()
    logger.info("Sehat Dispatch shut down")


app = FastAPI(
    title="Sehat Dispatch",
    description="Emergency dispatch and event-driven agent coordination",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    return JSONResponse(status_code=503, content={"detail": "Case store unavailable, retry shortly"})


app.include_router(cases.router)
app.include_router(responders.router)
app.include_router(events.router)
app.include_router(agents.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
