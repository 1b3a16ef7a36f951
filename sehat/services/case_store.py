import json
import logging
from collections.abc import Callable

from sehat.database import DatabaseAdapter
from sehat.errors import CaseNotFound
from sehat.models.case import AssigneeType, CaseStatus, EmergencyCase, LogEntry, OPEN_STATUSES
from sehat.models.geo import Coordinates

logger = logging.getLogger(__name__)

CaseMutator = Callable[[EmergencyCase], EmergencyCase]

_COLUMNS = (
    "id, patient_id, origin_lat, origin_lng, priority, assigned_to_type, assigned_to_id, "
    "status, log, acknowledged_by, acknowledged_at, created_at, updated_at"
)


def _row_to_case(row) -> EmergencyCase:
    raw_log = row["log"] or "[]"
    return EmergencyCase(
        id=row["id"],
        patient_id=row["patient_id"],
        origin=Coordinates(lat=row["origin_lat"], lng=row["origin_lng"]),
        priority=row["priority"],
        assigned_to_type=AssigneeType(row["assigned_to_type"]),
        assigned_to_id=row["assigned_to_id"],
        status=CaseStatus(row["status"]),
        log=[LogEntry.model_validate(item) for item in json.loads(raw_log)],
        acknowledged_by=row["acknowledged_by"],
        acknowledged_at=row["acknowledged_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _dump_log(case: EmergencyCase) -> str:
    return json.dumps([entry.model_dump(mode="json") for entry in case.log])


class CaseStore:
    """Durable emergency case records.

    Status and log live in the same row and are always written by the same
    UPDATE, so no reader can observe one without the other.
    """

    def __init__(self, db: DatabaseAdapter) -> None:
        self._db = db

    async def create(self, case: EmergencyCase, conn: DatabaseAdapter | None = None) -> EmergencyCase:
        if conn is None:
            async with self._db.transaction() as tx:
                return await self.create(case, conn=tx)

        await conn.execute(
            f"INSERT INTO emergency_cases ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                case.id,
                case.patient_id,
                case.origin.lat,
                case.origin.lng,
                case.priority,
                case.assigned_to_type.value,
                case.assigned_to_id,
                case.status.value,
                _dump_log(case),
                case.acknowledged_by,
                case.acknowledged_at,
                case.created_at,
                case.updated_at,
            ),
        )
        return case

    async def get(self, case_id: str) -> EmergencyCase | None:
        row = await self._db.fetch_one(f"SELECT {_COLUMNS} FROM emergency_cases WHERE id = ?", (case_id,))
        return _row_to_case(row) if row else None

    async def require(self, case_id: str) -> EmergencyCase:
        case = await self.get(case_id)
        if case is None:
            raise CaseNotFound(case_id)
        return case

    async def update_atomically(
        self,
        case_id: str,
        mutator: CaseMutator,
        conn: DatabaseAdapter | None = None,
    ) -> EmergencyCase:
        """Read, mutate and write back one case inside a single transaction.

        The mutator may raise to abort; the stored row is then left untouched.
        Returning the case unchanged skips the write.
        """
        if conn is None:
            async with self._db.transaction() as tx:
                return await self.update_atomically(case_id, mutator, conn=tx)

        row = await conn.fetch_one(
            f"SELECT {_COLUMNS} FROM emergency_cases WHERE id = ?{conn.lock_suffix}",
            (case_id,),
        )
        if not row:
            raise CaseNotFound(case_id)

        current = _row_to_case(row)
        updated = mutator(current)
        if updated == current:
            return current

        await conn.execute(
            """UPDATE emergency_cases SET
                assigned_to_type = ?, assigned_to_id = ?, status = ?, log = ?,
                acknowledged_by = ?, acknowledged_at = ?, updated_at = ?
            WHERE id = ?""",
            (
                updated.assigned_to_type.value,
                updated.assigned_to_id,
                updated.status.value,
                _dump_log(updated),
                updated.acknowledged_by,
                updated.acknowledged_at,
                updated.updated_at,
                case_id,
            ),
        )
        return updated

    async def list_cases(
        self,
        *,
        status: CaseStatus | None = None,
        assignee_type: AssigneeType | None = None,
        assignee_id: str | None = None,
        open_only: bool = False,
        limit: int = 200,
    ) -> list[EmergencyCase]:
        clauses: list[str] = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if assignee_type is not None:
            clauses.append("assigned_to_type = ?")
            params.append(assignee_type.value)
        if assignee_id is not None:
            clauses.append("assigned_to_id = ?")
            params.append(assignee_id)
        if open_only:
            placeholders = ", ".join("?" for _ in OPEN_STATUSES)
            clauses.append(f"status IN ({placeholders})")
            params.extend(s.value for s in OPEN_STATUSES)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self._db.fetch_all(
            f"SELECT {_COLUMNS} FROM emergency_cases{where} ORDER BY created_at DESC, id LIMIT ?",
            params,
        )
        return [_row_to_case(row) for row in rows]
