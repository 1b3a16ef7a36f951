import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from sehat.dependencies import get_bus, get_notifications, get_registry, get_sessions
from sehat.errors import AgentError, SessionAgentMismatch, SessionNotFound, UnknownAgent
from sehat.models.agent import (
    AgentInfo,
    AgentMessage,
    AgentSession,
    AgentSessionCreate,
    ChatRequest,
    ChatResponse,
    Notification,
)
from sehat.models.event import AgentEvent
from sehat.services.agent_registry import AgentRegistry
from sehat.services.event_bus import EventBus
from sehat.services.notifications import NotificationStore
from sehat.services.sessions import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["agents"])


@router.get("/agents", response_model=list[AgentInfo])
async def list_agents(
    capability: str | None = Query(None),
    registry: AgentRegistry = Depends(get_registry),
):
    agents = registry.agents()
    if capability:
        names = set(registry.find_by_capability(capability))
        agents = [a for a in agents if a.name in names]
    return agents


# --- Sessions ---


@router.post("/agents/sessions", response_model=AgentSession, status_code=201)
async def create_session(
    body: AgentSessionCreate,
    registry: AgentRegistry = Depends(get_registry),
    sessions: SessionStore = Depends(get_sessions),
):
    """Open a chat session with one agent."""
    if registry.get(body.agent) is None:
        raise HTTPException(status_code=404, detail=f"Agent {body.agent} not found")
    return await sessions.create(body.agent, user_id=body.user_id, language=body.language)


@router.get("/agents/sessions", response_model=list[AgentSession])
async def list_sessions(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    sessions: SessionStore = Depends(get_sessions),
):
    return await sessions.for_user(user_id, limit=limit)


@router.get("/agents/sessions/{session_id}", response_model=AgentSession)
async def get_session(session_id: str, sessions: SessionStore = Depends(get_sessions)):
    try:
        return await sessions.require(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found") from None


@router.get("/agents/sessions/{session_id}/messages", response_model=list[AgentMessage])
async def get_session_messages(session_id: str, sessions: SessionStore = Depends(get_sessions)):
    """The stored transcript, oldest first."""
    try:
        await sessions.require(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found") from None
    return await sessions.messages(session_id)


@router.get("/agents/sessions/{session_id}/events", response_model=list[AgentEvent])
async def get_session_events(
    session_id: str,
    sessions: SessionStore = Depends(get_sessions),
    bus: EventBus = Depends(get_bus),
):
    """Events raised by turns in this session, newest first."""
    try:
        await sessions.require(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found") from None
    return await bus.store.list_events(session_id=session_id)


# --- Chat ---


@router.post("/agents/{name}/chat", response_model=ChatResponse)
async def chat(name: str, body: ChatRequest, registry: AgentRegistry = Depends(get_registry)):
    """Route one interactive turn to a named agent.

    Without ``session_id`` a new session is opened and returned.
    """
    try:
        session_id, output = await registry.chat(
            name, body.message, session_id=body.session_id, language=body.language
        )
    except UnknownAgent:
        raise HTTPException(status_code=404, detail=f"Agent {name} not found") from None
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found") from None
    except SessionAgentMismatch as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    except AgentError as e:
        logger.error("Agent %s failed: %s", name, e)
        raise HTTPException(status_code=502, detail=str(e)) from None
    return ChatResponse(agent=name, session_id=session_id, output=output)


@router.get("/notifications/{recipient_id}", response_model=list[Notification])
async def list_notifications(
    recipient_id: str,
    limit: int = Query(50, ge=1, le=500),
    notifications: NotificationStore = Depends(get_notifications),
):
    """Notifications delivered to a patient, responder or the operators channel."""
    return await notifications.for_recipient(recipient_id, limit=limit)
