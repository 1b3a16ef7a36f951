import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from sehat.dependencies import get_directory, get_dispatch
from sehat.errors import ResponderExists, ResponderNotFound
from sehat.models.case import AssigneeType, EmergencyCase
from sehat.models.geo import Coordinates
from sehat.models.responder import (
    Facility,
    FacilityCreate,
    FieldUnit,
    FieldUnitCreate,
    LocationReport,
    NearbyFacility,
)
from sehat.services.dispatch import DispatchEngine
from sehat.services.responders import ResponderDirectory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["responders"])


# --- Field units ---


@router.post("/field-units", response_model=FieldUnit, status_code=201)
async def register_field_unit(body: FieldUnitCreate, directory: ResponderDirectory = Depends(get_directory)):
    try:
        return await directory.register_field_unit(body)
    except ResponderExists as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.get("/field-units/{unit_id}", response_model=FieldUnit)
async def get_field_unit(unit_id: str, directory: ResponderDirectory = Depends(get_directory)):
    try:
        return await directory.get_field_unit(unit_id)
    except ResponderNotFound:
        raise HTTPException(status_code=404, detail="Field unit not found") from None


@router.patch("/field-units/{unit_id}/location", response_model=FieldUnit)
async def report_location(
    unit_id: str,
    body: LocationReport,
    directory: ResponderDirectory = Depends(get_directory),
):
    """Periodic self-report of a unit's position and availability."""
    try:
        return await directory.report_location(unit_id, body.location, is_available=body.is_available)
    except ResponderNotFound:
        raise HTTPException(status_code=404, detail="Field unit not found") from None


@router.get("/field-units/{unit_id}/cases", response_model=list[EmergencyCase])
async def field_unit_cases(
    unit_id: str,
    open_only: bool = Query(True),
    directory: ResponderDirectory = Depends(get_directory),
    dispatch: DispatchEngine = Depends(get_dispatch),
):
    """Cases assigned to this unit; open ones only unless ``open_only=false``."""
    try:
        await directory.get_field_unit(unit_id)
    except ResponderNotFound:
        raise HTTPException(status_code=404, detail="Field unit not found") from None
    return await dispatch.cases_for_responder(AssigneeType.FIELD_UNIT, unit_id, open_only=open_only)


# --- Facilities ---


@router.post("/facilities", response_model=Facility, status_code=201)
async def register_facility(body: FacilityCreate, directory: ResponderDirectory = Depends(get_directory)):
    try:
        return await directory.register_facility(body)
    except ResponderExists as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.get("/facilities/nearest", response_model=list[NearbyFacility])
async def nearest_facilities(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    limit: int = Query(5, ge=1, le=50),
    capability: str | None = Query(None),
    directory: ResponderDirectory = Depends(get_directory),
):
    """Facilities nearest to a point, including estimated positions for ungeocoded ones."""
    return await directory.nearby_facilities(Coordinates(lat=lat, lng=lng), limit, capability=capability)


@router.get("/facilities/{facility_id}", response_model=Facility)
async def get_facility(facility_id: str, directory: ResponderDirectory = Depends(get_directory)):
    try:
        return await directory.get_facility(facility_id)
    except ResponderNotFound:
        raise HTTPException(status_code=404, detail="Facility not found") from None


@router.get("/facilities/{facility_id}/cases", response_model=list[EmergencyCase])
async def facility_cases(
    facility_id: str,
    open_only: bool = Query(True),
    directory: ResponderDirectory = Depends(get_directory),
    dispatch: DispatchEngine = Depends(get_dispatch),
):
    try:
        await directory.get_facility(facility_id)
    except ResponderNotFound:
        raise HTTPException(status_code=404, detail="Facility not found") from None
    return await dispatch.cases_for_responder(AssigneeType.FACILITY, facility_id, open_only=open_only)
