from typing import Any

from pydantic import BaseModel, Field

from sehat.models.event import AgentEvent


class AgentContext(BaseModel):
    """What an agent knows about the turn or event it is handling."""

    session_id: str | None = None
    event: AgentEvent | None = None
    language: str = "english"


class AgentInfo(BaseModel):
    name: str
    description: str
    capabilities: list[str]
    subscriptions: list[str]


class ChatRequest(BaseModel):
    session_id: str | None = None
    message: str = Field(..., min_length=1)
    language: str = "english"


class ChatResponse(BaseModel):
    agent: str
    session_id: str | None = None
    output: str | dict[str, Any]


class TriageResult(BaseModel):
    urgency: str = "self-care"  # "self-care", "bhu-visit", "emergency"
    symptoms: list[str] = []
    recommended_actions: list[str] = []
    reasoning: str = ""


class Notification(BaseModel):
    id: int | None = None
    event_id: str
    recipient_type: str
    recipient_id: str
    case_id: str | None = None
    message: str
    created_at: str


class AgentSessionCreate(BaseModel):
    agent: str = Field(..., min_length=1)
    user_id: str | None = None
    language: str = "english"


class AgentSession(BaseModel):
    id: str
    agent: str
    user_id: str | None = None
    language: str = "english"
    status: str = "active"
    created_at: str
    updated_at: str


class AgentMessage(BaseModel):
    id: int | None = None
    session_id: str
    sender_type: str  # "user" or "agent"
    content: str
    language: str = "english"
    metadata: dict[str, Any] = {}
    created_at: str
