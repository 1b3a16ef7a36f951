from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import AsyncIterator, Iterable, Iterator, Sequence
from urllib.parse import urlparse

import aiosqlite

from sehat.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL, SEED_DEMO_RESPONDERS
from sehat.errors import StoreUnavailable

try:  # Optional: only required when DATABASE_URL is set (Cloud SQL / Postgres)
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)

_PG_ERRORS: tuple[type[BaseException], ...] = (OSError,)
if asyncpg is not None:  # pragma: no cover - optional dependency
    _PG_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


@contextmanager
def _store_errors(engine: str, errors: tuple[type[BaseException], ...]) -> Iterator[None]:
    try:
        yield
    except errors as exc:
        logger.error("%s store operation failed: %s", engine, exc)
        raise StoreUnavailable(f"{engine} store unavailable: {exc}") from exc


class DatabaseAdapter:
    engine: str
    # Appended to single-row SELECTs inside a transaction to lock the row.
    lock_suffix: str = ""

    async def execute(self, query: str, params: Sequence | None = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def transaction(self):  # pragma: no cover - interface
        """Async context manager yielding an adapter bound to one transaction.

        Everything executed through the yielded adapter commits together or
        not at all.
        """
        raise NotImplementedError


@dataclass
class _SQLiteTransaction(DatabaseAdapter):
    """The shared connection while the adapter's lock is held by one transaction."""

    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        with _store_errors(self.engine, (sqlite3.Error,)):
            await self.conn.execute(query, params or ())

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        with _store_errors(self.engine, (sqlite3.Error,)):
            await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        with _store_errors(self.engine, (sqlite3.Error,)):
            cursor = await self.conn.execute(query, params or ())
            return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        with _store_errors(self.engine, (sqlite3.Error,)):
            cursor = await self.conn.execute(query, params or ())
            return await cursor.fetchall()

    async def commit(self) -> None:
        # Committed when the enclosing transaction block exits.
        return


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    # One connection is shared by every coroutine. Each call waits for any open
    # transaction, so nothing outside it can read rows it has not committed.

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        async with self._lock:
            await _SQLiteTransaction(self.conn).execute(query, params)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        async with self._lock:
            await _SQLiteTransaction(self.conn).executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        async with self._lock:
            return await _SQLiteTransaction(self.conn).fetch_one(query, params)

    async def fetch_all(self, query: str, params: Sequence | None = None):
        async with self._lock:
            return await _SQLiteTransaction(self.conn).fetch_all(query, params)

    async def commit(self) -> None:
        async with self._lock:
            with _store_errors(self.engine, (sqlite3.Error,)):
                await self.conn.commit()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        async with self._lock:
            with _store_errors(self.engine, (sqlite3.Error,)):
                await self.conn.executescript(script)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SQLiteTransaction]:
        # Not reentrant: code inside the block must use the yielded handle.
        async with self._lock:
            try:
                yield _SQLiteTransaction(self.conn)
            except BaseException:
                await self.conn.rollback()
                raise
            with _store_errors(self.engine, (sqlite3.Error,)):
                await self.conn.commit()


@dataclass
class _PostgresConnection(DatabaseAdapter):
    """A single pooled connection inside an open transaction."""

    conn: "asyncpg.Connection"  # type: ignore[name-defined]
    engine: str = "postgres"
    lock_suffix: str = " FOR UPDATE"

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        with _store_errors(self.engine, _PG_ERRORS):
            await self.conn.execute(PostgresAdapter._translate_query(query), *(params or ()))

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        with _store_errors(self.engine, _PG_ERRORS):
            await self.conn.executemany(PostgresAdapter._translate_query(query), seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        with _store_errors(self.engine, _PG_ERRORS):
            return await self.conn.fetchrow(PostgresAdapter._translate_query(query), *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        with _store_errors(self.engine, _PG_ERRORS):
            return await self.conn.fetch(PostgresAdapter._translate_query(query), *(params or ()))

    async def commit(self) -> None:
        # Committed when the enclosing transaction block exits.
        return


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        q = self._translate_query(query)
        with _store_errors(self.engine, _PG_ERRORS):
            async with self.pool.acquire() as conn:
                await conn.execute(q, *(params or ()))

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        with _store_errors(self.engine, _PG_ERRORS):
            async with self.pool.acquire() as conn:
                await conn.executemany(q, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        with _store_errors(self.engine, _PG_ERRORS):
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        with _store_errors(self.engine, _PG_ERRORS):
            async with self.pool.acquire() as conn:
                return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits per statement unless an explicit transaction is used.
        return

    async def close(self) -> None:
        await self.pool.close()

    async def executescript(self, script: str) -> None:
        # Not supported for Postgres; callers should split statements.
        raise NotImplementedError

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PostgresConnection]:
        with _store_errors(self.engine, _PG_ERRORS):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield _PostgresConnection(conn)


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL:
            if DATABASE_URL.startswith("sqlite"):
                sqlite_path = _sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH
                conn = await aiosqlite.connect(sqlite_path)
                conn.row_factory = aiosqlite.Row
                _db = SQLiteAdapter(conn)
                logger.info("Connected to SQLite database at %s", sqlite_path)
            else:
                if asyncpg is None:
                    raise RuntimeError(
                        "DATABASE_URL is set but asyncpg is not installed. "
                        "Install asyncpg or unset DATABASE_URL."
                    )
                pool = await asyncpg.create_pool(
                    dsn=DATABASE_URL,
                    min_size=1,
                    max_size=DATABASE_MAX_CONNECTIONS,
                )
                _db = PostgresAdapter(pool)
                logger.info("Connected to Postgres database")
        else:
            conn = await aiosqlite.connect(DATABASE_PATH)
            conn.row_factory = aiosqlite.Row
            _db = SQLiteAdapter(conn)
            logger.info("Connected to SQLite database at %s", DATABASE_PATH)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return path
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS emergency_cases (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        origin_lat REAL NOT NULL,
        origin_lng REAL NOT NULL,
        priority INTEGER NOT NULL DEFAULT 1,
        assigned_to_type TEXT NOT NULL DEFAULT 'none',
        assigned_to_id TEXT,
        status TEXT NOT NULL DEFAULT 'new',
        log TEXT NOT NULL DEFAULT '[]',
        acknowledged_by TEXT,
        acknowledged_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_cases_assignee
        ON emergency_cases (assigned_to_type, assigned_to_id);
    CREATE INDEX IF NOT EXISTS idx_cases_status ON emergency_cases (status);

    CREATE TABLE IF NOT EXISTS field_units (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        vehicle_type TEXT,
        organization TEXT,
        current_lat REAL,
        current_lng REAL,
        is_available INTEGER NOT NULL DEFAULT 1,
        last_seen_at TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS facilities (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        lat REAL,
        lng REAL,
        geocoded INTEGER NOT NULL DEFAULT 0,
        capabilities TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS agent_events (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        triggered_by TEXT NOT NULL DEFAULT '{}',
        session_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        handler_results TEXT NOT NULL DEFAULT '{}',
        error TEXT,
        created_at TEXT NOT NULL,
        claimed_at TEXT,
        processed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_events_status ON agent_events (status, created_at);
    CREATE INDEX IF NOT EXISTS idx_events_session ON agent_events (session_id);

    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL,
        recipient_type TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        case_id TEXT,
        message TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (event_id, recipient_id)
    );

    CREATE TABLE IF NOT EXISTS agent_sessions (
        id TEXT PRIMARY KEY,
        agent TEXT NOT NULL,
        user_id TEXT,
        language TEXT NOT NULL DEFAULT 'english',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_user ON agent_sessions (user_id);

    CREATE TABLE IF NOT EXISTS agent_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        sender_type TEXT NOT NULL,
        content TEXT NOT NULL,
        language TEXT NOT NULL DEFAULT 'english',
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_messages_session ON agent_messages (session_id, id);
"""

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS emergency_cases (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        origin_lat DOUBLE PRECISION NOT NULL,
        origin_lng DOUBLE PRECISION NOT NULL,
        priority INTEGER NOT NULL DEFAULT 1,
        assigned_to_type TEXT NOT NULL DEFAULT 'none',
        assigned_to_id TEXT,
        status TEXT NOT NULL DEFAULT 'new',
        log TEXT NOT NULL DEFAULT '[]',
        acknowledged_by TEXT,
        acknowledged_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_cases_assignee ON emergency_cases (assigned_to_type, assigned_to_id);",
    "CREATE INDEX IF NOT EXISTS idx_cases_status ON emergency_cases (status);",
    """
    CREATE TABLE IF NOT EXISTS field_units (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        vehicle_type TEXT,
        organization TEXT,
        current_lat DOUBLE PRECISION,
        current_lng DOUBLE PRECISION,
        is_available INTEGER NOT NULL DEFAULT 1,
        last_seen_at TEXT,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS facilities (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        lat DOUBLE PRECISION,
        lng DOUBLE PRECISION,
        geocoded INTEGER NOT NULL DEFAULT 0,
        capabilities TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_events (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        triggered_by TEXT NOT NULL DEFAULT '{}',
        session_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        handler_results TEXT NOT NULL DEFAULT '{}',
        error TEXT,
        created_at TEXT NOT NULL,
        claimed_at TEXT,
        processed_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_status ON agent_events (status, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_events_session ON agent_events (session_id);",
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id BIGSERIAL PRIMARY KEY,
        event_id TEXT NOT NULL,
        recipient_type TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        case_id TEXT,
        message TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (event_id, recipient_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_sessions (
        id TEXT PRIMARY KEY,
        agent TEXT NOT NULL,
        user_id TEXT,
        language TEXT NOT NULL DEFAULT 'english',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user ON agent_sessions (user_id);",
    """
    CREATE TABLE IF NOT EXISTS agent_messages (
        id BIGSERIAL PRIMARY KEY,
        session_id TEXT NOT NULL,
        sender_type TEXT NOT NULL,
        content TEXT NOT NULL,
        language TEXT NOT NULL DEFAULT 'english',
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_session ON agent_messages (session_id, id);",
]


async def init_db() -> None:
    db = await get_db()

    if db.engine == "sqlite":
        await db.executescript(SQLITE_SCHEMA)
    else:
        for stmt in POSTGRES_SCHEMA:
            await db.execute(stmt)

    await db.commit()

    if SEED_DEMO_RESPONDERS:
        await _seed_demo_responders(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_responders(db: DatabaseAdapter) -> None:
    """Seed Karachi-area field units and hospitals for local demos."""
    now = datetime.now(UTC).isoformat()

    field_units = [
        ("demo-unit-saddar", "Rescue 1122 Saddar", "ambulance", "Rescue 1122", 24.8556, 67.0300, 1, now, now),
        ("demo-unit-clifton", "Rescue 1122 Clifton", "ambulance", "Rescue 1122", 24.8138, 67.0300, 1, now, now),
        ("demo-unit-gulshan", "Edhi Gulshan", "ambulance", "Edhi Foundation", 24.9204, 67.0932, 1, now, now),
        ("demo-unit-korangi", "Chhipa Korangi", "motorbike", "Chhipa Welfare", None, None, 1, None, now),
    ]
    facilities = [
        ("demo-jpmc", "Jinnah Postgraduate Medical Centre", 24.8514, 67.0440, 1,
         json.dumps(["trauma", "cardiac", "emergency"]), now),
        ("demo-civil", "Civil Hospital Karachi", 24.8597, 67.0108, 1,
         json.dumps(["trauma", "burns", "emergency"]), now),
        ("demo-akuh", "Aga Khan University Hospital", 24.8924, 67.0743, 1,
         json.dumps(["cardiac", "stroke", "emergency"]), now),
        ("demo-abbasi", "Abbasi Shaheed Hospital", None, None, 0,
         json.dumps(["emergency"]), now),
    ]

    await db.executemany(
        """INSERT INTO field_units (
            id, name, vehicle_type, organization, current_lat, current_lng,
            is_available, last_seen_at, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT (id) DO NOTHING""",
        field_units,
    )
    await db.executemany(
        """INSERT INTO facilities (
            id, name, lat, lng, geocoded, capabilities, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?) ON CONFLICT (id) DO NOTHING""",
        facilities,
    )
    await db.commit()
