import json
import logging
from datetime import UTC, datetime

from sehat.database import DatabaseAdapter
from sehat.errors import EventNotFound
from sehat.models.event import AgentEvent, EventStatus, TriggeredBy

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, type, payload, triggered_by, session_id, status, attempts, handler_results, error, "
    "created_at, claimed_at, processed_at"
)


def _row_to_event(row) -> AgentEvent:
    return AgentEvent(
        id=row["id"],
        type=row["type"],
        payload=json.loads(row["payload"] or "{}"),
        triggered_by=TriggeredBy.model_validate(json.loads(row["triggered_by"] or "{}")),
        status=EventStatus(row["status"]),
        attempts=row["attempts"],
        handler_results=json.loads(row["handler_results"] or "{}"),
        error=row["error"],
        created_at=row["created_at"],
        claimed_at=row["claimed_at"],
        processed_at=row["processed_at"],
    )


class EventStore:
    """The durable event table behind the event bus."""

    def __init__(self, db: DatabaseAdapter) -> None:
        self._db = db

    async def insert(self, event: AgentEvent, conn: DatabaseAdapter | None = None) -> AgentEvent:
        if conn is None:
            async with self._db.transaction() as tx:
                return await self.insert(event, conn=tx)

        await conn.execute(
            f"INSERT INTO agent_events ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.type,
                json.dumps(event.payload),
                event.triggered_by.model_dump_json(),
                event.triggered_by.session_id,
                event.status.value,
                event.attempts,
                json.dumps(event.handler_results),
                event.error,
                event.created_at,
                event.claimed_at,
                event.processed_at,
            ),
        )
        return event

    async def get(self, event_id: str) -> AgentEvent | None:
        row = await self._db.fetch_one(f"SELECT {_COLUMNS} FROM agent_events WHERE id = ?", (event_id,))
        return _row_to_event(row) if row else None

    async def require(self, event_id: str) -> AgentEvent:
        event = await self.get(event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event

    async def list_events(
        self,
        *,
        status: EventStatus | None = None,
        event_type: str | None = None,
        session_id: str | None = None,
        limit: int = 200,
    ) -> list[AgentEvent]:
        clauses: list[str] = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if event_type:
            clauses.append("type = ?")
            params.append(event_type)
        if session_id:
            clauses.append("session_id = ?")
            params.append(session_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self._db.fetch_all(
            f"SELECT {_COLUMNS} FROM agent_events{where} ORDER BY created_at DESC, id LIMIT ?",
            params,
        )
        return [_row_to_event(row) for row in rows]

    async def recoverable_ids(self, stale_before: str | None = None) -> list[str]:
        """Pending events, plus processing ones whose claim went stale."""
        if stale_before is None:
            rows = await self._db.fetch_all(
                "SELECT id FROM agent_events WHERE status = ? ORDER BY created_at, id",
                (EventStatus.PENDING.value,),
            )
        else:
            rows = await self._db.fetch_all(
                "SELECT id FROM agent_events WHERE status = ? OR (status = ? AND claimed_at < ?) "
                "ORDER BY created_at, id",
                (EventStatus.PENDING.value, EventStatus.PROCESSING.value, stale_before),
            )
        return [row["id"] for row in rows]

    async def claim(self, event_id: str, stale_before: str | None = None) -> AgentEvent | None:
        """Move an event to ``processing`` unless another path already owns it.

        Returns None when the event is terminal or freshly claimed elsewhere.
        """
        async with self._db.transaction() as tx:
            row = await tx.fetch_one(
                f"SELECT {_COLUMNS} FROM agent_events WHERE id = ?{tx.lock_suffix}",
                (event_id,),
            )
            if not row:
                raise EventNotFound(event_id)
            event = _row_to_event(row)

            claimable = event.status == EventStatus.PENDING or (
                event.status == EventStatus.PROCESSING
                and stale_before is not None
                and (event.claimed_at or "") < stale_before
            )
            if not claimable:
                return None

            if event.status == EventStatus.PROCESSING:
                logger.warning("Reclaiming stale event %s (%s)", event.id, event.type)

            now = datetime.now(UTC).isoformat()
            await tx.execute(
                "UPDATE agent_events SET status = ?, attempts = ?, claimed_at = ? WHERE id = ?",
                (EventStatus.PROCESSING.value, event.attempts + 1, now, event_id),
            )
            return event.model_copy(update={
                "status": EventStatus.PROCESSING,
                "attempts": event.attempts + 1,
                "claimed_at": now,
            })

    async def finish(
        self,
        event_id: str,
        status: EventStatus,
        handler_results: dict[str, str],
        error: str | None = None,
    ) -> AgentEvent:
        now = datetime.now(UTC).isoformat()
        async with self._db.transaction() as tx:
            await tx.execute(
                "UPDATE agent_events SET status = ?, handler_results = ?, error = ?, processed_at = ? "
                "WHERE id = ? AND status = ?",
                (status.value, json.dumps(handler_results), error, now, event_id, EventStatus.PROCESSING.value),
            )
        return await self.require(event_id)

    async def requeue(self, event_id: str) -> AgentEvent | None:
        """Put a failed event back to ``pending``; returns None if it was not failed."""
        async with self._db.transaction() as tx:
            row = await tx.fetch_one(
                f"SELECT {_COLUMNS} FROM agent_events WHERE id = ?{tx.lock_suffix}",
                (event_id,),
            )
            if not row:
                raise EventNotFound(event_id)
            if row["status"] != EventStatus.FAILED.value:
                return None
            await tx.execute(
                "UPDATE agent_events SET status = ?, error = NULL, claimed_at = NULL, processed_at = NULL "
                "WHERE id = ?",
                (EventStatus.PENDING.value, event_id),
            )
        return await self.require(event_id)
