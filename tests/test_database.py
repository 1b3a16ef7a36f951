"""Tests for database initialization, transactions and the demo seed."""

import asyncio

import pytest

import sehat.database as db_mod
from sehat.database import _seed_demo_responders, _sqlite_path_from_url
from sehat.errors import StoreUnavailable


async def test_init_creates_tables(db):
    """Test that init_db creates the expected tables."""
    rows = await db.fetch_all(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    tables = [row[0] for row in rows]
    for table in (
        "emergency_cases", "field_units", "facilities", "agent_events", "notifications",
        "agent_sessions", "agent_messages",
    ):
        assert table in tables


async def test_transaction_commits(db):
    async with db.transaction() as tx:
        await tx.execute(
            "INSERT INTO field_units (id, name, is_available, created_at) VALUES (?, ?, ?, ?)",
            ("unit-1", "Unit", 1, "2026-01-01T00:00:00+00:00"),
        )

    row = await db.fetch_one("SELECT name FROM field_units WHERE id = ?", ("unit-1",))
    assert row["name"] == "Unit"


async def test_transaction_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        async with db.transaction() as tx:
            await tx.execute(
                "INSERT INTO field_units (id, name, is_available, created_at) VALUES (?, ?, ?, ?)",
                ("unit-1", "Unit", 1, "2026-01-01T00:00:00+00:00"),
            )
            raise RuntimeError("abort")

    assert await db.fetch_one("SELECT id FROM field_units WHERE id = ?", ("unit-1",)) is None


async def test_reads_wait_for_an_open_transaction(db):
    reader = None
    with pytest.raises(RuntimeError):
        async with db.transaction() as tx:
            await tx.execute(
                "INSERT INTO field_units (id, name, is_available, created_at) VALUES (?, ?, ?, ?)",
                ("unit-1", "Unit", 1, "2026-01-01T00:00:00+00:00"),
            )
            reader = asyncio.create_task(db.fetch_one("SELECT id FROM field_units WHERE id = ?", ("unit-1",)))
            await asyncio.sleep(0.01)
            assert not reader.done()
            raise RuntimeError("abort")

    assert await reader is None


async def test_driver_errors_become_store_unavailable(db):
    with pytest.raises(StoreUnavailable):
        await db.fetch_all("SELECT * FROM no_such_table")


async def test_notifications_unique_per_event_and_recipient(db):
    insert = (
        "INSERT INTO notifications (event_id, recipient_type, recipient_id, message, created_at) "
        "VALUES (?, ?, ?, ?, ?) ON CONFLICT (event_id, recipient_id) DO NOTHING"
    )
    params = ("evt-1", "patient", "patient-1", "hello", "2026-01-01T00:00:00+00:00")
    await db.execute(insert, params)
    await db.execute(insert, params)
    await db.commit()

    rows = await db.fetch_all("SELECT id FROM notifications WHERE recipient_id = ?", ("patient-1",))
    assert len(rows) == 1


async def test_demo_seed_is_idempotent(db):
    await _seed_demo_responders(db)
    await _seed_demo_responders(db)

    units = await db.fetch_all("SELECT id, current_lat FROM field_units")
    facilities = await db.fetch_all("SELECT id, geocoded FROM facilities")
    assert len(units) == 4
    assert len(facilities) == 4
    assert any(row["current_lat"] is None for row in units)
    assert any(not row["geocoded"] for row in facilities)


async def test_get_db_returns_same_adapter(db):
    assert await db_mod.get_db() is db
    assert db.engine == "sqlite"
    assert db.lock_suffix == ""


class TestSqlitePathFromUrl:
    def test_relative(self):
        assert _sqlite_path_from_url("sqlite:///sehat.db") == "sehat.db"

    def test_absolute(self):
        assert _sqlite_path_from_url("sqlite:////var/data/sehat.db") == "/var/data/sehat.db"

    def test_empty(self):
        assert _sqlite_path_from_url("sqlite://") == ""
