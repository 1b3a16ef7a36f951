import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sehat.config import DISPATCH_CANDIDATE_LIMIT, FACILITY_SPEED_KMH, FIELD_UNIT_SPEED_KMH
from sehat.database import DatabaseAdapter
from sehat.errors import InvalidTransition
from sehat.models.case import (
    SYSTEM_ACTOR,
    Actor,
    AssigneeType,
    AssignmentInfo,
    CaseStatus,
    EmergencyCase,
    LogEntry,
    next_status,
)
from sehat.models.event import AgentEvent, EventType, TriggeredBy
from sehat.models.geo import Coordinates
from sehat.models.responder import Candidate, CandidateScore, CandidateType
from sehat.services.case_store import CaseStore
from sehat.services.event_bus import EventBus
from sehat.services.geo import eta_millis_for_distance, format_eta
from sehat.services.responders import ResponderDirectory

logger = logging.getLogger(__name__)

DEFAULT_SPEEDS_KMH: dict[CandidateType, float] = {
    CandidateType.FIELD_UNIT: FIELD_UNIT_SPEED_KMH,
    CandidateType.FACILITY: FACILITY_SPEED_KMH,
}

# Field units can begin treatment on scene, so they win exact ties.
_TYPE_PREFERENCE = {CandidateType.FIELD_UNIT: 0, CandidateType.FACILITY: 1}


def score_candidates(candidates: list[Candidate], speeds_kmh: dict[CandidateType, float]) -> list[CandidateScore]:
    return [
        CandidateScore(
            type=c.type,
            id=c.id,
            distance_meters=c.distance_meters,
            eta_millis=eta_millis_for_distance(c.distance_meters, speeds_kmh.get(c.type, 0.0)),
        )
        for c in candidates
    ]


def rank_scores(scores: list[CandidateScore]) -> list[CandidateScore]:
    """Fastest first; then nearest; then field units before facilities."""
    return sorted(scores, key=lambda s: (s.eta_millis, s.distance_meters, _TYPE_PREFERENCE[s.type], s.id))


def _finite_or_none(value: float) -> int | None:
    return int(value) if math.isfinite(value) else None


def assignment_info(score: CandidateScore) -> AssignmentInfo:
    return AssignmentInfo(
        type=score.type.assignee_type,
        id=score.id,
        distance_meters=round(score.distance_meters, 1),
        eta_millis=_finite_or_none(score.eta_millis),
        eta=format_eta(score.eta_millis),
    )


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class DispatchOutcome:
    case: EmergencyCase
    winner: CandidateScore | None = None
    ranking: list[CandidateScore] = field(default_factory=list)

    @property
    def assignment(self) -> AssignmentInfo | None:
        return assignment_info(self.winner) if self.winner else None


class DispatchEngine:
    """Creates cases, assigns the fastest responder and drives the case lifecycle.

    Every mutation goes through ``CaseStore.update_atomically`` together with
    the events it produces, so a case change and its events commit as one.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        cases: CaseStore,
        directory: ResponderDirectory,
        bus: EventBus,
        *,
        speeds_kmh: dict[CandidateType, float] | None = None,
        candidate_limit: int = DISPATCH_CANDIDATE_LIMIT,
    ) -> None:
        self._db = db
        self._cases = cases
        self._directory = directory
        self._bus = bus
        self._speeds = dict(DEFAULT_SPEEDS_KMH if speeds_kmh is None else speeds_kmh)
        self._candidate_limit = candidate_limit

    @property
    def cases(self) -> CaseStore:
        return self._cases

    # --- Ranking ---

    async def rank(self, origin: Coordinates) -> list[CandidateScore]:
        field_units, facilities = await asyncio.gather(
            self._directory.nearest_field_units(origin, self._candidate_limit),
            self._directory.nearest_facilities(origin, self._candidate_limit),
        )
        return rank_scores(score_candidates([*field_units, *facilities], self._speeds))

    async def assign(self, case: EmergencyCase, actor: Actor = SYSTEM_ACTOR) -> DispatchOutcome:
        """Pick the best candidate for a ``new`` case and apply it in memory.

        Nothing is written here; the caller persists the returned case. An
        empty ranking leaves the case untouched in ``new``.
        """
        ranking = await self.rank(case.origin)
        if not ranking:
            return DispatchOutcome(case=case, ranking=ranking)

        best = ranking[0]
        return DispatchOutcome(case=self._apply_assignment(case, best, actor), winner=best, ranking=ranking)

    @staticmethod
    def _apply_assignment(case: EmergencyCase, score: CandidateScore, actor: Actor) -> EmergencyCase:
        # Any open case with nobody assigned can take a responder; lifecycle
        # progress already made by hand is kept.
        if case.status == CaseStatus.COMPLETED or case.is_assigned:
            allowed = next_status(case.status)
            raise InvalidTransition(
                case.id, case.status.value, CaseStatus.ASSIGNED.value, allowed.value if allowed else None
            )
        now = _now()
        note = (
            f"Assigned to {score.type.value} {score.id} "
            f"(ETA: {format_eta(score.eta_millis)}, distance: {round(score.distance_meters)}m)"
        )
        status = CaseStatus.ASSIGNED if case.status == CaseStatus.NEW else case.status
        entry = LogEntry(timestamp=now, actor=actor, status=status, note=note)
        return case.model_copy(update={
            "status": status,
            "assigned_to_type": score.type.assignee_type,
            "assigned_to_id": score.id,
            "log": [*case.log, entry],
            "updated_at": now,
        })

    # --- Events ---

    @staticmethod
    def _case_created_event(case: EmergencyCase, actor: Actor) -> AgentEvent:
        return EventBus.build(
            EventType.CASE_CREATED,
            {
                "case_id": case.id,
                "patient_id": case.patient_id,
                "priority": case.priority,
                "origin": case.origin.model_dump(),
                "status": case.status.value,
                "reported_by": actor.model_dump(),
            },
            TriggeredBy(agent="dispatch", case_id=case.id),
        )

    @staticmethod
    def _case_assigned_event(case: EmergencyCase, score: CandidateScore) -> AgentEvent:
        return EventBus.build(
            EventType.CASE_ASSIGNED,
            {
                "case_id": case.id,
                "patient_id": case.patient_id,
                "priority": case.priority,
                "origin": case.origin.model_dump(),
                "assigned_to_type": case.assigned_to_type.value,
                "assigned_to_id": case.assigned_to_id,
                "eta_millis": _finite_or_none(score.eta_millis),
                "distance_meters": round(score.distance_meters, 1),
            },
            TriggeredBy(agent="dispatch", case_id=case.id),
        )

    async def _commit(self, events: list[AgentEvent], conn: DatabaseAdapter) -> None:
        for event in events:
            await self._bus.persist(event, conn=conn)

    # --- Operations ---

    async def create_case(
        self,
        patient_id: str,
        origin: Coordinates,
        priority: int = 1,
        note: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> DispatchOutcome:
        now = _now()
        case = EmergencyCase(
            id=str(uuid.uuid4()),
            patient_id=patient_id,
            origin=origin,
            priority=priority,
            status=CaseStatus.NEW,
            log=[LogEntry(
                timestamp=now,
                actor=actor,
                status=CaseStatus.NEW,
                note=note or "Emergency case created",
            )],
            created_at=now,
            updated_at=now,
        )

        outcome = await self.assign(case, actor=SYSTEM_ACTOR)
        events = [self._case_created_event(case, actor)]
        if outcome.winner is not None:
            events.append(self._case_assigned_event(outcome.case, outcome.winner))

        # The case, its initial log and its events are created together or not at all.
        async with self._db.transaction() as tx:
            await self._cases.create(outcome.case, conn=tx)
            await self._commit(events, tx)

        if outcome.winner is not None:
            best = outcome.winner
            logger.info(
                "Assigned case %s to %s %s (ETA: %s, Distance: %dm)",
                case.id, best.type.value, best.id, format_eta(best.eta_millis), round(best.distance_meters),
            )
        else:
            logger.warning("No responders available for case %s; left unassigned", case.id)

        for event in events:
            self._bus.deliver(event)
        return outcome

    async def dispatch_pending(self, case_id: str, actor: Actor = SYSTEM_ACTOR) -> DispatchOutcome:
        """Retry assignment for an open case with nobody assigned.

        Cases that already have an assignee are never re-routed.
        """
        case = await self._cases.require(case_id)
        if case.status == CaseStatus.COMPLETED or case.is_assigned:
            allowed = next_status(case.status)
            raise InvalidTransition(
                case.id, case.status.value, CaseStatus.ASSIGNED.value, allowed.value if allowed else None
            )

        ranking = await self.rank(case.origin)
        if not ranking:
            logger.warning("No responders available for case %s on retry", case.id)
            return DispatchOutcome(case=case, ranking=ranking)

        best = ranking[0]
        async with self._db.transaction() as tx:
            updated = await self._cases.update_atomically(
                case_id, lambda current: self._apply_assignment(current, best, actor), conn=tx
            )
            event = self._case_assigned_event(updated, best)
            await self._commit([event], tx)

        logger.info("Assigned backlog case %s to %s %s", case_id, best.type.value, best.id)
        self._bus.deliver(event)
        return DispatchOutcome(case=updated, winner=best, ranking=ranking)

    async def update_status(
        self,
        case_id: str,
        new_status: CaseStatus,
        actor: Actor = SYSTEM_ACTOR,
        note: str | None = None,
    ) -> EmergencyCase:
        """Advance a case by exactly one step of the lifecycle."""
        previous: list[CaseStatus] = []

        def _advance(case: EmergencyCase) -> EmergencyCase:
            allowed = next_status(case.status)
            if new_status != allowed:
                raise InvalidTransition(
                    case.id, case.status.value, new_status.value, allowed.value if allowed else None
                )
            now = _now()
            previous.append(case.status)
            entry = LogEntry(timestamp=now, actor=actor, status=new_status, note=note)
            return case.model_copy(update={
                "status": new_status,
                "log": [*case.log, entry],
                "updated_at": now,
            })

        async with self._db.transaction() as tx:
            updated = await self._cases.update_atomically(case_id, _advance, conn=tx)
            event = EventBus.build(
                EventType.CASE_STATUS_CHANGED,
                {
                    "case_id": updated.id,
                    "patient_id": updated.patient_id,
                    "from": previous[0].value,
                    "to": updated.status.value,
                    "actor": actor.model_dump(),
                    "note": note,
                    "assigned_to_type": updated.assigned_to_type.value,
                    "assigned_to_id": updated.assigned_to_id,
                },
                TriggeredBy(agent="dispatch", case_id=updated.id),
            )
            await self._commit([event], tx)

        logger.info("Case %s moved %s -> %s by %s", case_id, previous[0].value, updated.status.value, actor.role)
        self._bus.deliver(event)
        return updated

    async def acknowledge(self, case_id: str, actor: Actor) -> EmergencyCase:
        """Record the first responder to acknowledge; later calls change nothing."""
        first: list[bool] = []

        def _ack(case: EmergencyCase) -> EmergencyCase:
            if case.acknowledged_by is not None:
                return case
            first.append(True)
            now = _now()
            return case.model_copy(update={
                "acknowledged_by": actor.id,
                "acknowledged_at": now,
                "updated_at": now,
            })

        async with self._db.transaction() as tx:
            updated = await self._cases.update_atomically(case_id, _ack, conn=tx)
            event = None
            if first:
                event = EventBus.build(
                    EventType.CASE_ACKNOWLEDGED,
                    {
                        "case_id": updated.id,
                        "patient_id": updated.patient_id,
                        "acknowledged_by": updated.acknowledged_by,
                        "acknowledged_at": updated.acknowledged_at,
                        "role": actor.role,
                    },
                    TriggeredBy(agent="dispatch", case_id=updated.id),
                )
                await self._commit([event], tx)

        if event is not None:
            logger.info("Case %s acknowledged by %s %s", case_id, actor.role, actor.id)
            self._bus.deliver(event)
        return updated

    # --- Queries ---

    async def get_case(self, case_id: str) -> EmergencyCase:
        return await self._cases.require(case_id)

    async def list_cases(self, status: CaseStatus | None = None) -> list[EmergencyCase]:
        return await self._cases.list_cases(status=status)

    async def cases_for_responder(
        self,
        assignee_type: AssigneeType,
        assignee_id: str,
        open_only: bool = True,
    ) -> list[EmergencyCase]:
        return await self._cases.list_cases(
            assignee_type=assignee_type, assignee_id=assignee_id, open_only=open_only
        )

    async def unassigned_cases(self) -> list[EmergencyCase]:
        """Open cases with no responder attached, whatever their status."""
        return await self._cases.list_cases(assignee_type=AssigneeType.NONE, open_only=True)
