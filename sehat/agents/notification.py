import logging

from sehat.models.agent import AgentContext
from sehat.models.event import AgentEvent, EventType
from sehat.services.agent_registry import Agent
from sehat.services.geo import format_eta
from sehat.services.notifications import NotificationStore
from sehat.services.pii import redact_pii

logger = logging.getLogger(__name__)

OPERATORS_RECIPIENT = "operators"

_STATUS_TEXT = {
    "assigned": "A responder has been assigned to your emergency.",
    "acknowledged": "Your responder has acknowledged the case.",
    "in_progress": "Help has reached you and care is under way.",
    "completed": "Your emergency case has been closed.",
}


def compose(event: AgentEvent) -> list[tuple[str, str, str]]:
    """(recipient_type, recipient_id, message) triples an event should produce."""
    p = event.payload
    case_id = p.get("case_id", "")
    out: list[tuple[str, str, str]] = []

    if event.type == EventType.CASE_ASSIGNED:
        eta_ms = p.get("eta_millis")
        eta = format_eta(eta_ms) if eta_ms is not None else "Unknown"
        if p.get("assigned_to_id"):
            out.append((
                p.get("assigned_to_type", "field_unit"),
                p["assigned_to_id"],
                f"New emergency case {case_id} (priority {p.get('priority', 1)}) assigned to you. "
                f"Estimated travel time {eta}.",
            ))
        if p.get("patient_id"):
            out.append(("patient", p["patient_id"], f"Help is on the way. Estimated arrival in {eta}."))

    elif event.type == EventType.CASE_STATUS_CHANGED:
        text = _STATUS_TEXT.get(p.get("to", ""))
        if text and p.get("patient_id"):
            if p.get("note"):
                text = f"{text} Note: {p['note']}"
            out.append(("patient", p["patient_id"], text))

    elif event.type == EventType.CASE_ACKNOWLEDGED:
        if p.get("patient_id"):
            out.append((
                "patient",
                p["patient_id"],
                f"Your case has been acknowledged by a {p.get('role', 'responder')}.",
            ))

    elif event.type == EventType.PATTERN_DETECTED:
        out.append(("operator", OPERATORS_RECIPIENT, p.get("description", "Unusual case cluster detected.")))

    elif event.type == EventType.EMERGENCY_REQUESTED:
        symptoms = ", ".join(p.get("symptoms") or []) or "unspecified symptoms"
        out.append((
            "operator",
            OPERATORS_RECIPIENT,
            f"Emergency reported in triage session {p.get('session_id') or 'unknown'}: {symptoms}.",
        ))

    return out


class NotificationAgent(Agent):
    name = "Notification Agent"
    description = "Tells patients, responders and operators about case changes"
    capabilities = ("notification", "anonymization")
    subscriptions = (
        EventType.CASE_ASSIGNED,
        EventType.CASE_STATUS_CHANGED,
        EventType.CASE_ACKNOWLEDGED,
        EventType.PATTERN_DETECTED,
        EventType.EMERGENCY_REQUESTED,
    )

    def __init__(self, store: NotificationStore) -> None:
        self._store = store

    async def handle(self, context: AgentContext, message: str, language: str = "english") -> str | dict:
        if context.event is None:
            # Direct turn: message is the recipient id to look up.
            notes = await self._store.for_recipient(message.strip())
            return {"recipient_id": message.strip(), "notifications": [n.message for n in notes]}

        event = context.event
        sent = 0
        for recipient_type, recipient_id, text in compose(event):
            safe_text, _ = redact_pii(text)
            await self._store.add(
                event.id, recipient_type, recipient_id, safe_text, case_id=event.payload.get("case_id")
            )
            sent += 1
        logger.info("Queued %d notification(s) for event %s (%s)", sent, event.id, event.type)
        return f"{sent} notification(s)"
