"""Tests for Pydantic models - cases, log entries, responders and events."""

import pytest
from pydantic import ValidationError

from sehat.models.case import (
    OPEN_STATUSES,
    Actor,
    AssigneeType,
    CaseCreate,
    CaseStatus,
    CaseStatusUpdate,
    EmergencyCase,
    LogEntry,
    next_status,
)
from sehat.models.event import AgentEvent, EventStatus
from sehat.models.responder import CandidateType

ORIGIN = {"lat": 24.8607, "lng": 67.0011}


class TestCaseStatus:
    def test_fixed_order(self):
        assert next_status(CaseStatus.NEW) == CaseStatus.ASSIGNED
        assert next_status(CaseStatus.ASSIGNED) == CaseStatus.ACKNOWLEDGED
        assert next_status(CaseStatus.ACKNOWLEDGED) == CaseStatus.IN_PROGRESS
        assert next_status(CaseStatus.IN_PROGRESS) == CaseStatus.COMPLETED
        assert next_status(CaseStatus.COMPLETED) is None

    def test_open_statuses_exclude_completed(self):
        assert CaseStatus.COMPLETED not in OPEN_STATUSES
        assert len(OPEN_STATUSES) == 4


class TestLogEntry:
    def test_defaults(self):
        entry = LogEntry(timestamp="2026-01-01T00:00:00+00:00", actor=Actor(), status=CaseStatus.NEW)
        assert entry.version == 1
        assert entry.actor.role == "system"
        assert entry.note is None

    def test_frozen(self):
        entry = LogEntry(timestamp="2026-01-01T00:00:00+00:00", actor=Actor(), status=CaseStatus.NEW)
        with pytest.raises(ValidationError):
            entry.note = "edited"

    def test_rejects_unknown_status(self):
        with pytest.raises(ValidationError):
            LogEntry(timestamp="2026-01-01T00:00:00+00:00", actor=Actor(), status="cancelled")


class TestEmergencyCase:
    def test_defaults(self):
        case = EmergencyCase(
            id="c-1",
            patient_id="p-1",
            origin=ORIGIN,
            created_at="2026-01-01T00:00:00+00:00",
            updated_at="2026-01-01T00:00:00+00:00",
        )
        assert case.status == CaseStatus.NEW
        assert case.assigned_to_type == AssigneeType.NONE
        assert case.is_assigned is False
        assert case.priority == 1
        assert case.log == []

    def test_log_round_trips_through_json(self):
        case = EmergencyCase(
            id="c-1",
            patient_id="p-1",
            origin=ORIGIN,
            log=[LogEntry(timestamp="t", actor=Actor(id="u", role="frontliner"), status=CaseStatus.NEW)],
            created_at="t",
            updated_at="t",
        )
        restored = EmergencyCase.model_validate_json(case.model_dump_json())
        assert restored == case


class TestCaseRequests:
    def test_case_create_defaults(self):
        body = CaseCreate(patient_id="p-1", origin=ORIGIN)
        assert body.priority == 1
        assert body.actor_role == "patient"

    def test_case_create_priority_bounds(self):
        with pytest.raises(ValidationError):
            CaseCreate(patient_id="p-1", origin=ORIGIN, priority=0)
        with pytest.raises(ValidationError):
            CaseCreate(patient_id="p-1", origin=ORIGIN, priority=6)

    def test_case_create_requires_patient(self):
        with pytest.raises(ValidationError):
            CaseCreate(patient_id="", origin=ORIGIN)

    def test_status_update_accepts_ack(self):
        assert CaseStatusUpdate(status="ack").status == CaseStatus.ACKNOWLEDGED
        assert CaseStatusUpdate(status="in_progress").status == CaseStatus.IN_PROGRESS

    def test_status_update_rejects_unknown(self):
        with pytest.raises(ValidationError):
            CaseStatusUpdate(status="cancelled")


class TestCandidateType:
    def test_maps_to_assignee_type(self):
        assert CandidateType.FIELD_UNIT.assignee_type == AssigneeType.FIELD_UNIT
        assert CandidateType.FACILITY.assignee_type == AssigneeType.FACILITY


class TestAgentEvent:
    def test_defaults(self):
        event = AgentEvent(id="e-1", type="CaseCreated", created_at="t")
        assert event.status == EventStatus.PENDING
        assert event.attempts == 0
        assert event.triggered_by.agent == "system"
        assert event.is_terminal is False

    def test_terminal(self):
        assert AgentEvent(id="e", type="x", created_at="t", status=EventStatus.FAILED).is_terminal
        assert AgentEvent(id="e", type="x", created_at="t", status=EventStatus.COMPLETED).is_terminal
