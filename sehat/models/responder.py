from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from sehat.models.case import AssigneeType
from sehat.models.geo import Coordinates


class CandidateType(str, Enum):
    FIELD_UNIT = "field_unit"
    FACILITY = "facility"

    @property
    def assignee_type(self) -> AssigneeType:
        return AssigneeType(self.value)


class FieldUnit(BaseModel):
    id: str
    name: str
    vehicle_type: str | None = None
    organization: str | None = None
    location: Coordinates | None = None
    is_available: bool = True
    last_seen_at: str | None = None
    created_at: str


class Facility(BaseModel):
    id: str
    name: str
    location: Coordinates | None = None
    geocoded: bool = False
    capabilities: list[str] = []
    created_at: str


class Candidate(BaseModel):
    """A rankable responder of either type, positioned relative to an origin."""

    model_config = ConfigDict(frozen=True)

    type: CandidateType
    id: str
    location: Coordinates
    distance_meters: float
    last_seen_at: str | None = None
    estimated: bool = False


class CandidateScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: CandidateType
    id: str
    distance_meters: float
    eta_millis: float


class FieldUnitCreate(BaseModel):
    id: str | None = None
    name: str = Field(..., min_length=1)
    vehicle_type: str | None = None
    organization: str | None = None
    location: Coordinates | None = None
    is_available: bool = True


class LocationReport(BaseModel):
    location: Coordinates
    is_available: bool | None = None


class FacilityCreate(BaseModel):
    id: str | None = None
    name: str = Field(..., min_length=1)
    location: Coordinates | None = None
    capabilities: list[str] = []


class NearbyFacility(BaseModel):
    facility: Facility
    location: Coordinates
    estimated: bool
    distance_meters: float
