"""Tests for agent chat sessions and their stored transcript."""

import pytest

from sehat.errors import SessionNotFound
from sehat.services.sessions import SessionStore


@pytest.fixture
def sessions(db):
    return SessionStore(db)


async def test_create_and_get(sessions):
    session = await sessions.create("triage", user_id="patient-1", language="urdu")

    stored = await sessions.get(session.id)
    assert stored == session
    assert stored.status == "active"
    assert stored.language == "urdu"


async def test_require_missing(sessions):
    assert await sessions.get("missing") is None
    with pytest.raises(SessionNotFound):
        await sessions.require("missing")


async def test_sessions_for_user(sessions):
    mine = await sessions.create("triage", user_id="patient-1")
    await sessions.create("triage", user_id="patient-2")
    await sessions.create("analytics")

    assert [s.id for s in await sessions.for_user("patient-1")] == [mine.id]


async def test_record_turn_stores_both_sides(sessions):
    session = await sessions.create("triage")

    await sessions.record_turn(session.id, "fever since yesterday", {"urgency": "bhu-visit", "symptoms": ["fever"]})
    await sessions.record_turn(session.id, "still hot", "noted")

    transcript = await sessions.messages(session.id)
    assert [m.sender_type for m in transcript] == ["user", "agent", "user", "agent"]
    assert transcript[0].content == "fever since yesterday"
    assert transcript[1].metadata["urgency"] == "bhu-visit"
    assert '"symptoms"' in transcript[1].content
    assert transcript[3].content == "noted"
    assert await sessions.messages("other-session") == []


async def test_record_turn_masks_pii(sessions):
    session = await sessions.create("triage")

    await sessions.record_turn(session.id, "call me on 03001234567", "ok")

    user_message = (await sessions.messages(session.id))[0]
    assert "03001234567" not in user_message.content
    assert user_message.metadata["pii_masked"] == 1


async def test_record_turn_touches_session(sessions):
    session = await sessions.create("triage")
    await sessions.record_turn(session.id, "hello", "hi")

    assert (await sessions.require(session.id)).updated_at >= session.updated_at
