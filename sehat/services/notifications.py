from datetime import UTC, datetime

from sehat.database import DatabaseAdapter
from sehat.models.agent import Notification


class NotificationStore:
    def __init__(self, db: DatabaseAdapter) -> None:
        self._db = db

    async def add(
        self,
        event_id: str,
        recipient_type: str,
        recipient_id: str,
        message: str,
        case_id: str | None = None,
    ) -> None:
        """Insert once per (event, recipient); redelivered events are no-ops."""
        async with self._db.transaction() as tx:
            await tx.execute(
                """INSERT INTO notifications (
                    event_id, recipient_type, recipient_id, case_id, message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?) ON CONFLICT (event_id, recipient_id) DO NOTHING""",
                (event_id, recipient_type, recipient_id, case_id, message, datetime.now(UTC).isoformat()),
            )

    async def for_recipient(self, recipient_id: str, limit: int = 50) -> list[Notification]:
        rows = await self._db.fetch_all(
            "SELECT id, event_id, recipient_type, recipient_id, case_id, message, created_at "
            "FROM notifications WHERE recipient_id = ? ORDER BY id DESC LIMIT ?",
            (recipient_id, limit),
        )
        return [
            Notification(
                id=row["id"],
                event_id=row["event_id"],
                recipient_type=row["recipient_type"],
                recipient_id=row["recipient_id"],
                case_id=row["case_id"],
                message=row["message"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
