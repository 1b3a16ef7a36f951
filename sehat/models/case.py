from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sehat.models.geo import Coordinates


class CaseStatus(str, Enum):
    NEW = "new"
    ASSIGNED = "assigned"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


STATUS_ORDER: tuple[CaseStatus, ...] = (
    CaseStatus.NEW,
    CaseStatus.ASSIGNED,
    CaseStatus.ACKNOWLEDGED,
    CaseStatus.IN_PROGRESS,
    CaseStatus.COMPLETED,
)

OPEN_STATUSES: tuple[CaseStatus, ...] = STATUS_ORDER[:-1]


def next_status(status: CaseStatus) -> CaseStatus | None:
    """Return the only status a case may move to next, or None once completed."""
    idx = STATUS_ORDER.index(status)
    if idx + 1 < len(STATUS_ORDER):
        return STATUS_ORDER[idx + 1]
    return None


class AssigneeType(str, Enum):
    NONE = "none"
    FIELD_UNIT = "field_unit"
    FACILITY = "facility"


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    role: str = "system"


SYSTEM_ACTOR = Actor(id=None, role="system")

LOG_ENTRY_VERSION = 1


class LogEntry(BaseModel):
    """One immutable line of a case's audit log."""

    model_config = ConfigDict(frozen=True)

    version: int = LOG_ENTRY_VERSION
    timestamp: str
    actor: Actor
    status: CaseStatus
    note: str | None = None


class EmergencyCase(BaseModel):
    id: str
    patient_id: str
    origin: Coordinates
    priority: int = Field(1, ge=1, le=5)
    assigned_to_type: AssigneeType = AssigneeType.NONE
    assigned_to_id: str | None = None
    status: CaseStatus = CaseStatus.NEW
    log: list[LogEntry] = []
    acknowledged_by: str | None = None
    acknowledged_at: str | None = None
    created_at: str
    updated_at: str

    @property
    def is_assigned(self) -> bool:
        return self.assigned_to_type != AssigneeType.NONE


class CaseCreate(BaseModel):
    patient_id: str = Field(..., min_length=1)
    origin: Coordinates
    priority: int = Field(1, ge=1, le=5)
    note: str | None = None
    actor_id: str | None = None
    actor_role: str = "patient"


class CaseStatusUpdate(BaseModel):
    status: CaseStatus
    note: str | None = None
    actor_id: str | None = None
    actor_role: str = "frontliner"

    @field_validator("status", mode="before")
    @classmethod
    def _accept_ack_alias(cls, value):
        # Field apps send the short form.
        if value == "ack":
            return CaseStatus.ACKNOWLEDGED.value
        return value


class AcknowledgeRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    actor_role: str = "facility"


class DispatchRequest(BaseModel):
    actor_id: str | None = None
    actor_role: str = "dispatcher"


class AssignmentInfo(BaseModel):
    type: AssigneeType
    id: str
    distance_meters: float
    eta_millis: int | None = None  # None when the candidate is unreachable
    eta: str


class CaseDispatchResponse(BaseModel):
    case: EmergencyCase
    assignment: AssignmentInfo | None = None
    note: str | None = None


class CaseListItem(BaseModel):
    id: str
    patient_id: str
    status: CaseStatus
    priority: int
    assigned_to_type: AssigneeType
    assigned_to_id: str | None = None
    acknowledged_by: str | None = None
    created_at: str
    updated_at: str
