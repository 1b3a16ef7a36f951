from enum import Enum
from typing import Any

from pydantic import BaseModel


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType:
    CASE_CREATED = "CaseCreated"
    CASE_ASSIGNED = "CaseAssigned"
    CASE_STATUS_CHANGED = "CaseStatusChanged"
    CASE_ACKNOWLEDGED = "CaseAcknowledged"
    PATTERN_DETECTED = "PatternDetected"
    EMERGENCY_REQUESTED = "EmergencyRequested"


class TriggeredBy(BaseModel):
    agent: str = "system"
    case_id: str | None = None
    session_id: str | None = None


class AgentEvent(BaseModel):
    id: str
    type: str
    payload: dict[str, Any] = {}
    triggered_by: TriggeredBy = TriggeredBy()
    status: EventStatus = EventStatus.PENDING
    attempts: int = 0
    handler_results: dict[str, str] = {}
    error: str | None = None
    created_at: str
    claimed_at: str | None = None
    processed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (EventStatus.COMPLETED, EventStatus.FAILED)
