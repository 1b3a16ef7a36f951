import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sehat.database import DatabaseAdapter
from sehat.errors import SessionNotFound
from sehat.models.agent import AgentMessage, AgentSession
from sehat.services.pii import redact_pii

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = "id, agent, user_id, language, status, created_at, updated_at"
_MESSAGE_COLUMNS = "id, session_id, sender_type, content, language, metadata, created_at"


def _row_to_session(row) -> AgentSession:
    return AgentSession(
        id=row["id"],
        agent=row["agent"],
        user_id=row["user_id"],
        language=row["language"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row) -> AgentMessage:
    return AgentMessage(
        id=row["id"],
        session_id=row["session_id"],
        sender_type=row["sender_type"],
        content=row["content"],
        language=row["language"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
    )


def _as_text(output: str | dict[str, Any]) -> str:
    return output if isinstance(output, str) else json.dumps(output, ensure_ascii=False)


class SessionStore:
    """Chat sessions with one agent and their stored transcript.

    Transcript content is PII-masked before it is written.
    """

    def __init__(self, db: DatabaseAdapter) -> None:
        self._db = db

    async def create(self, agent: str, user_id: str | None = None, language: str = "english") -> AgentSession:
        now = datetime.now(UTC).isoformat()
        session = AgentSession(
            id=str(uuid.uuid4()),
            agent=agent,
            user_id=user_id,
            language=language,
            created_at=now,
            updated_at=now,
        )
        async with self._db.transaction() as tx:
            await tx.execute(
                f"INSERT INTO agent_sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.agent,
                    session.user_id,
                    session.language,
                    session.status,
                    session.created_at,
                    session.updated_at,
                ),
            )
        logger.info("Opened %s session %s", agent, session.id)
        return session

    async def get(self, session_id: str) -> AgentSession | None:
        row = await self._db.fetch_one(
            f"SELECT {_SESSION_COLUMNS} FROM agent_sessions WHERE id = ?", (session_id,)
        )
        return _row_to_session(row) if row else None

    async def require(self, session_id: str) -> AgentSession:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def for_user(self, user_id: str, limit: int = 50) -> list[AgentSession]:
        rows = await self._db.fetch_all(
            f"SELECT {_SESSION_COLUMNS} FROM agent_sessions WHERE user_id = ? "
            "ORDER BY created_at DESC, id LIMIT ?",
            (user_id, limit),
        )
        return [_row_to_session(row) for row in rows]

    async def record_turn(
        self,
        session_id: str,
        message: str,
        output: str | dict[str, Any],
        language: str = "english",
    ) -> list[AgentMessage]:
        """Store the user's message and the agent's reply together."""
        now = datetime.now(UTC).isoformat()
        turn = []
        for sender_type, text in (("user", message), ("agent", _as_text(output))):
            content, masked = redact_pii(text)
            metadata: dict[str, Any] = {"pii_masked": masked}
            if isinstance(output, dict) and sender_type == "agent" and "urgency" in output:
                metadata["urgency"] = output["urgency"]
            turn.append(AgentMessage(
                session_id=session_id,
                sender_type=sender_type,
                content=content,
                language=language,
                metadata=metadata,
                created_at=now,
            ))

        async with self._db.transaction() as tx:
            for item in turn:
                await tx.execute(
                    "INSERT INTO agent_messages (session_id, sender_type, content, language, metadata, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        item.session_id,
                        item.sender_type,
                        item.content,
                        item.language,
                        json.dumps(item.metadata),
                        item.created_at,
                    ),
                )
            await tx.execute(
                "UPDATE agent_sessions SET updated_at = ? WHERE id = ?", (now, session_id)
            )
        return turn

    async def messages(self, session_id: str, limit: int = 200) -> list[AgentMessage]:
        rows = await self._db.fetch_all(
            f"SELECT {_MESSAGE_COLUMNS} FROM agent_messages WHERE session_id = ? ORDER BY id LIMIT ?",
            (session_id, limit),
        )
        return [_row_to_message(row) for row in rows]
