import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from sehat.dependencies import get_dispatch
from sehat.errors import CaseNotFound, InvalidTransition
from sehat.models.case import (
    AcknowledgeRequest,
    Actor,
    CaseCreate,
    CaseDispatchResponse,
    CaseListItem,
    CaseStatus,
    CaseStatusUpdate,
    DispatchRequest,
    EmergencyCase,
)
from sehat.services.dispatch import DispatchEngine, DispatchOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cases", tags=["cases"])

NO_RESPONDER_NOTE = "No responders available; case queued for dispatch"


def _list_item(case: EmergencyCase) -> CaseListItem:
    return CaseListItem(
        id=case.id,
        patient_id=case.patient_id,
        status=case.status,
        priority=case.priority,
        assigned_to_type=case.assigned_to_type,
        assigned_to_id=case.assigned_to_id,
        acknowledged_by=case.acknowledged_by,
        created_at=case.created_at,
        updated_at=case.updated_at,
    )


def _dispatch_response(outcome: DispatchOutcome) -> CaseDispatchResponse:
    return CaseDispatchResponse(
        case=outcome.case,
        assignment=outcome.assignment,
        note=None if outcome.winner else NO_RESPONDER_NOTE,
    )


@router.post("", response_model=CaseDispatchResponse, status_code=201)
async def create_case(body: CaseCreate, dispatch: DispatchEngine = Depends(get_dispatch)):
    """Report an emergency and assign the responder with the shortest ETA.

    When no responder can be ranked the case is still created and stays
    ``new``; ``assignment`` is null.
    """
    outcome = await dispatch.create_case(
        patient_id=body.patient_id,
        origin=body.origin,
        priority=body.priority,
        note=body.note,
        actor=Actor(id=body.actor_id or body.patient_id, role=body.actor_role),
    )
    return _dispatch_response(outcome)


@router.get("", response_model=list[CaseListItem])
async def list_cases(
    status: CaseStatus | None = Query(None),
    dispatch: DispatchEngine = Depends(get_dispatch),
):
    """List cases, newest first."""
    return [_list_item(c) for c in await dispatch.list_cases(status=status)]


@router.get("/unassigned", response_model=list[CaseListItem])
async def list_unassigned(dispatch: DispatchEngine = Depends(get_dispatch)):
    return [_list_item(c) for c in await dispatch.unassigned_cases()]


@router.get("/{case_id}", response_model=EmergencyCase)
async def get_case(case_id: str, dispatch: DispatchEngine = Depends(get_dispatch)):
    """Get a single case with its full audit log."""
    try:
        return await dispatch.get_case(case_id)
    except CaseNotFound:
        raise HTTPException(status_code=404, detail="Case not found") from None


@router.patch("/{case_id}/status", response_model=EmergencyCase)
async def update_case_status(
    case_id: str,
    body: CaseStatusUpdate,
    dispatch: DispatchEngine = Depends(get_dispatch),
):
    """Advance a case one step along new -> assigned -> acknowledged -> in_progress -> completed."""
    try:
        return await dispatch.update_status(
            case_id,
            body.status,
            actor=Actor(id=body.actor_id, role=body.actor_role),
            note=body.note,
        )
    except CaseNotFound:
        raise HTTPException(status_code=404, detail="Case not found") from None
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.post("/{case_id}/acknowledge", response_model=EmergencyCase)
async def acknowledge_case(
    case_id: str,
    body: AcknowledgeRequest,
    dispatch: DispatchEngine = Depends(get_dispatch),
):
    """Record who acknowledged the case. Only the first acknowledgement is kept."""
    try:
        return await dispatch.acknowledge(case_id, Actor(id=body.actor_id, role=body.actor_role))
    except CaseNotFound:
        raise HTTPException(status_code=404, detail="Case not found") from None


@router.post("/{case_id}/dispatch", response_model=CaseDispatchResponse)
async def dispatch_case(
    case_id: str,
    body: DispatchRequest | None = None,
    dispatch: DispatchEngine = Depends(get_dispatch),
):
    """Retry assignment for a case still waiting in the backlog."""
    body = body or DispatchRequest()
    try:
        outcome = await dispatch.dispatch_pending(case_id, Actor(id=body.actor_id, role=body.actor_role))
    except CaseNotFound:
        raise HTTPException(status_code=404, detail="Case not found") from None
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return _dispatch_response(outcome)
