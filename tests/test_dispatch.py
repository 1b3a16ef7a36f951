"""Tests for the dispatch engine - ranking, assignment and the case lifecycle."""

import asyncio
import logging

import pytest

from sehat.errors import CaseNotFound, InvalidTransition, StoreUnavailable
from sehat.models.case import Actor, AssigneeType, CaseStatus
from sehat.models.event import EventType
from sehat.models.geo import Coordinates
from sehat.models.responder import CandidateScore, CandidateType, FacilityCreate, FieldUnitCreate
from sehat.services.case_store import CaseStore
from sehat.services.dispatch import DispatchEngine, rank_scores
from sehat.services.geo import offset_point

KARACHI = Coordinates(lat=24.8607, lng=67.0011)
FRONTLINER = Actor(id="unit-1", role="frontliner")


async def _field_unit(directory, unit_id="unit-1", location=KARACHI, **kwargs):
    return await directory.register_field_unit(
        FieldUnitCreate(id=unit_id, name=unit_id, location=location, **kwargs)
    )


async def _facility(directory, facility_id="jpmc", location=None):
    return await directory.register_facility(
        FacilityCreate(id=facility_id, name=facility_id, location=location or offset_point(KARACHI, 10_000, 0))
    )


# --- Ranking ---


class TestRankScores:
    def test_fastest_first(self):
        slow = CandidateScore(type=CandidateType.FIELD_UNIT, id="a", distance_meters=100, eta_millis=9_000)
        fast = CandidateScore(type=CandidateType.FACILITY, id="b", distance_meters=900, eta_millis=1_000)
        assert rank_scores([slow, fast]) == [fast, slow]

    def test_tie_prefers_nearer_then_field_unit(self):
        facility = CandidateScore(type=CandidateType.FACILITY, id="a", distance_meters=500, eta_millis=1_000)
        unit = CandidateScore(type=CandidateType.FIELD_UNIT, id="z", distance_meters=500, eta_millis=1_000)
        farther = CandidateScore(type=CandidateType.FIELD_UNIT, id="b", distance_meters=800, eta_millis=1_000)
        assert [s.id for s in rank_scores([farther, facility, unit])] == ["z", "a", "b"]

    def test_unreachable_sorts_last(self):
        unreachable = CandidateScore(
            type=CandidateType.FACILITY, id="a", distance_meters=10, eta_millis=float("inf")
        )
        reachable = CandidateScore(type=CandidateType.FIELD_UNIT, id="b", distance_meters=50_000, eta_millis=4e6)
        assert rank_scores([unreachable, reachable])[0].id == "b"


async def test_field_unit_on_scene_beats_facility_ten_km_away(dispatch, directory):
    await _field_unit(directory)
    await _facility(directory)

    outcome = await dispatch.create_case("patient-1", KARACHI)

    assert outcome.case.status == CaseStatus.ASSIGNED
    assert outcome.case.assigned_to_type == AssigneeType.FIELD_UNIT
    assert outcome.case.assigned_to_id == "unit-1"
    assert outcome.winner.eta_millis == 0

    facility_score = outcome.ranking[1]
    assert facility_score.type == CandidateType.FACILITY
    assert facility_score.eta_millis == pytest.approx(20 * 60_000, rel=1e-3)

    assignment = outcome.assignment
    assert assignment.eta == "0 mins"
    assert assignment.eta_millis == 0


async def test_facility_assigned_when_no_field_unit(dispatch, directory):
    await _field_unit(directory, is_available=False)
    await _facility(directory)

    outcome = await dispatch.create_case("patient-1", KARACHI)
    assert outcome.case.assigned_to_type == AssigneeType.FACILITY
    assert outcome.case.assigned_to_id == "jpmc"
    assert outcome.assignment.eta == "20 mins"


async def test_unreachable_candidate_has_no_numeric_eta(db, directory, bus):
    engine = DispatchEngine(
        db, CaseStore(db), directory, bus,
        speeds_kmh={CandidateType.FIELD_UNIT: 40, CandidateType.FACILITY: 0},
    )
    await _facility(directory)

    outcome = await engine.create_case("patient-1", KARACHI)
    assert outcome.assignment.eta_millis is None
    assert outcome.assignment.eta == "Unknown"


async def test_no_candidates_leaves_case_new(dispatch, caplog):
    caplog.set_level(logging.WARNING, logger="sehat.services.dispatch")

    outcome = await dispatch.create_case("patient-1", KARACHI)

    assert outcome.winner is None
    assert outcome.assignment is None
    assert outcome.case.status == CaseStatus.NEW
    assert outcome.case.assigned_to_type == AssigneeType.NONE
    assert [e.status for e in outcome.case.log] == [CaseStatus.NEW]
    assert [c.id for c in await dispatch.unassigned_cases()] == [outcome.case.id]
    assert "No responders available" in caplog.text


async def test_concurrent_cases_both_take_the_only_unit(dispatch, directory, caplog):
    caplog.set_level(logging.INFO, logger="sehat.services.dispatch")
    await _field_unit(directory, unit_id="only-unit")

    first, second = await asyncio.gather(
        dispatch.create_case("patient-1", KARACHI),
        dispatch.create_case("patient-2", KARACHI),
    )

    # No reservation at ranking time: both cases are assigned the same unit.
    assert first.case.id != second.case.id
    assert first.case.assigned_to_id == second.case.assigned_to_id == "only-unit"
    assigned_lines = [r.getMessage() for r in caplog.records if "Assigned case" in r.getMessage()]
    assert len(assigned_lines) == 2
    assert all("field_unit only-unit" in line for line in assigned_lines)


# --- Case creation ---


async def test_create_case_records_log_and_events(dispatch, directory, bus):
    await _field_unit(directory)
    reporter = Actor(id="patient-1", role="patient")

    outcome = await dispatch.create_case("patient-1", KARACHI, priority=3, note="Chest pain", actor=reporter)
    case = await dispatch.get_case(outcome.case.id)

    assert case.priority == 3
    assert [e.status for e in case.log] == [CaseStatus.NEW, CaseStatus.ASSIGNED]
    assert case.log[0].actor == reporter
    assert case.log[0].note == "Chest pain"
    assert case.log[1].note.startswith("Assigned to field_unit unit-1")
    assert all(e.version == 1 for e in case.log)

    created = await bus.store.list_events(event_type=EventType.CASE_CREATED)
    assigned = await bus.store.list_events(event_type=EventType.CASE_ASSIGNED)
    assert [e.payload["case_id"] for e in created] == [case.id]
    assert assigned[0].payload["assigned_to_id"] == "unit-1"
    assert assigned[0].triggered_by.case_id == case.id


async def test_create_case_rolls_back_when_events_cannot_be_stored(dispatch, bus, monkeypatch):
    async def _broken_persist(event, conn=None):
        raise StoreUnavailable("disk full")

    monkeypatch.setattr(bus, "persist", _broken_persist)

    with pytest.raises(StoreUnavailable):
        await dispatch.create_case("patient-1", KARACHI)
    assert await dispatch.list_cases() == []


# --- Lifecycle ---


async def test_full_lifecycle(dispatch):
    case = (await dispatch.create_case("patient-1", KARACHI)).case

    for status in (CaseStatus.ASSIGNED, CaseStatus.ACKNOWLEDGED, CaseStatus.IN_PROGRESS, CaseStatus.COMPLETED):
        case = await dispatch.update_status(case.id, status, actor=FRONTLINER)

    assert case.status == CaseStatus.COMPLETED
    assert [e.status for e in case.log] == [
        CaseStatus.NEW,
        CaseStatus.ASSIGNED,
        CaseStatus.ACKNOWLEDGED,
        CaseStatus.IN_PROGRESS,
        CaseStatus.COMPLETED,
    ]
    assert case.log[-1].actor == FRONTLINER


async def test_skipping_a_step_is_rejected(dispatch):
    case = (await dispatch.create_case("patient-1", KARACHI)).case

    with pytest.raises(InvalidTransition) as exc_info:
        await dispatch.update_status(case.id, CaseStatus.IN_PROGRESS, actor=FRONTLINER)

    assert exc_info.value.allowed == CaseStatus.ASSIGNED.value
    stored = await dispatch.get_case(case.id)
    assert stored.status == CaseStatus.NEW
    assert len(stored.log) == 1


async def test_no_transition_out_of_completed(dispatch, directory):
    await _field_unit(directory)
    case = (await dispatch.create_case("patient-1", KARACHI)).case
    for status in (CaseStatus.ACKNOWLEDGED, CaseStatus.IN_PROGRESS, CaseStatus.COMPLETED):
        case = await dispatch.update_status(case.id, status)

    for status in CaseStatus:
        with pytest.raises(InvalidTransition):
            await dispatch.update_status(case.id, status)


async def test_going_backwards_is_rejected(dispatch, directory):
    await _field_unit(directory)
    case = (await dispatch.create_case("patient-1", KARACHI)).case

    with pytest.raises(InvalidTransition):
        await dispatch.update_status(case.id, CaseStatus.NEW)
    with pytest.raises(InvalidTransition):
        await dispatch.update_status(case.id, CaseStatus.ASSIGNED)


async def test_status_change_emits_event(dispatch, directory, bus):
    await _field_unit(directory)
    case = (await dispatch.create_case("patient-1", KARACHI)).case

    await dispatch.update_status(case.id, CaseStatus.ACKNOWLEDGED, actor=FRONTLINER, note="On my way")

    events = await bus.store.list_events(event_type=EventType.CASE_STATUS_CHANGED)
    assert len(events) == 1
    assert events[0].payload["from"] == "assigned"
    assert events[0].payload["to"] == "acknowledged"
    assert events[0].payload["note"] == "On my way"


async def test_update_status_missing_case(dispatch):
    with pytest.raises(CaseNotFound):
        await dispatch.update_status("missing", CaseStatus.ASSIGNED)


async def test_failed_event_write_keeps_status(dispatch, directory, bus, monkeypatch):
    await _field_unit(directory)
    case = (await dispatch.create_case("patient-1", KARACHI)).case

    async def _broken_persist(event, conn=None):
        raise StoreUnavailable("connection lost")

    monkeypatch.setattr(bus, "persist", _broken_persist)
    with pytest.raises(StoreUnavailable):
        await dispatch.update_status(case.id, CaseStatus.ACKNOWLEDGED)

    stored = await dispatch.get_case(case.id)
    assert stored.status == CaseStatus.ASSIGNED
    assert len(stored.log) == 2


async def test_readers_wait_for_a_status_change_to_commit(dispatch, directory, bus, monkeypatch):
    await _field_unit(directory)
    case = (await dispatch.create_case("patient-1", KARACHI)).case
    readers = []

    async def _broken_persist(event, conn=None):
        # Another request reads the case while the status UPDATE is still open.
        readers.append(asyncio.create_task(dispatch.get_case(case.id)))
        await asyncio.sleep(0.01)
        raise StoreUnavailable("connection lost")

    monkeypatch.setattr(bus, "persist", _broken_persist)
    with pytest.raises(StoreUnavailable):
        await dispatch.update_status(case.id, CaseStatus.ACKNOWLEDGED)

    seen = await readers[0]
    assert seen.status == CaseStatus.ASSIGNED
    assert len(seen.log) == 2


# --- Acknowledge ---


async def test_acknowledge_is_idempotent(dispatch, directory, bus):
    await _field_unit(directory)
    case = (await dispatch.create_case("patient-1", KARACHI)).case
    facility = Actor(id="jpmc", role="facility")

    first = await dispatch.acknowledge(case.id, facility)
    second = await dispatch.acknowledge(case.id, Actor(id="someone-else", role="facility"))

    assert first.acknowledged_at is not None
    assert second.acknowledged_at == first.acknowledged_at
    assert second.acknowledged_by == "jpmc"
    assert second.status == CaseStatus.ASSIGNED
    assert len(second.log) == len(case.log)
    assert len(await bus.store.list_events(event_type=EventType.CASE_ACKNOWLEDGED)) == 1


async def test_acknowledge_missing_case(dispatch):
    with pytest.raises(CaseNotFound):
        await dispatch.acknowledge("missing", FRONTLINER)


# --- Backlog ---


async def test_dispatch_pending_assigns_once_responder_appears(dispatch, directory):
    case = (await dispatch.create_case("patient-1", KARACHI)).case

    retry = await dispatch.dispatch_pending(case.id)
    assert retry.winner is None
    assert retry.case.status == CaseStatus.NEW

    await _field_unit(directory)
    retry = await dispatch.dispatch_pending(case.id, Actor(id="op-1", role="dispatcher"))
    assert retry.case.status == CaseStatus.ASSIGNED
    assert retry.case.assigned_to_id == "unit-1"
    assert retry.case.log[-1].actor.role == "dispatcher"
    assert await dispatch.unassigned_cases() == []


async def test_dispatch_pending_never_reroutes(dispatch, directory):
    await _field_unit(directory)
    case = (await dispatch.create_case("patient-1", KARACHI)).case

    with pytest.raises(InvalidTransition):
        await dispatch.dispatch_pending(case.id)


async def test_hand_assigned_case_stays_in_backlog(dispatch, directory):
    case = (await dispatch.create_case("patient-1", KARACHI)).case
    await dispatch.update_status(case.id, CaseStatus.ASSIGNED)

    assert [c.id for c in await dispatch.unassigned_cases()] == [case.id]

    await _field_unit(directory)
    retry = await dispatch.dispatch_pending(case.id)
    assert retry.winner is not None
    assert retry.case.status == CaseStatus.ASSIGNED
    assert retry.case.assigned_to_type == AssigneeType.FIELD_UNIT
    assert retry.case.assigned_to_id == "unit-1"
    assert [e.status for e in retry.case.log] == [CaseStatus.NEW, CaseStatus.ASSIGNED, CaseStatus.ASSIGNED]
    assert await dispatch.unassigned_cases() == []


async def test_dispatch_keeps_progress_made_by_hand(dispatch, directory):
    case = (await dispatch.create_case("patient-1", KARACHI)).case
    for status in (CaseStatus.ASSIGNED, CaseStatus.ACKNOWLEDGED):
        await dispatch.update_status(case.id, status)

    await _field_unit(directory)
    retry = await dispatch.dispatch_pending(case.id)
    assert retry.case.status == CaseStatus.ACKNOWLEDGED
    assert retry.case.assigned_to_id == "unit-1"


async def test_completed_case_leaves_backlog(dispatch, directory):
    case = (await dispatch.create_case("patient-1", KARACHI)).case
    for status in (CaseStatus.ASSIGNED, CaseStatus.ACKNOWLEDGED, CaseStatus.IN_PROGRESS, CaseStatus.COMPLETED):
        await dispatch.update_status(case.id, status)

    assert await dispatch.unassigned_cases() == []
    await _field_unit(directory)
    with pytest.raises(InvalidTransition):
        await dispatch.dispatch_pending(case.id)


# --- Queries ---


async def test_cases_for_responder(dispatch, directory):
    await _field_unit(directory)
    open_case = (await dispatch.create_case("patient-1", KARACHI)).case
    done = (await dispatch.create_case("patient-2", KARACHI)).case
    for status in (CaseStatus.ACKNOWLEDGED, CaseStatus.IN_PROGRESS, CaseStatus.COMPLETED):
        await dispatch.update_status(done.id, status)

    open_ids = [c.id for c in await dispatch.cases_for_responder(AssigneeType.FIELD_UNIT, "unit-1")]
    all_ids = {c.id for c in await dispatch.cases_for_responder(AssigneeType.FIELD_UNIT, "unit-1", open_only=False)}

    assert open_ids == [open_case.id]
    assert all_ids == {open_case.id, done.id}


async def test_list_cases_by_status(dispatch, directory):
    unassigned = (await dispatch.create_case("patient-1", KARACHI)).case
    await _field_unit(directory)
    assigned = (await dispatch.create_case("patient-2", KARACHI)).case

    assert [c.id for c in await dispatch.list_cases(CaseStatus.NEW)] == [unassigned.id]
    assert [c.id for c in await dispatch.list_cases(CaseStatus.ASSIGNED)] == [assigned.id]
    assert len(await dispatch.list_cases()) == 2
