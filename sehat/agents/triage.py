import logging

from sehat.models.agent import AgentContext, TriageResult
from sehat.models.event import EventType, TriggeredBy
from sehat.services.agent_registry import Agent
from sehat.services.event_bus import EventBus
from sehat.services.llm import LLMClient, get_llm_client
from sehat.services.pii import redact_pii

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a medical triage assistant for a public health service in Pakistan.
Classify the urgency of the user's symptoms as one of: "self-care", "bhu-visit" (basic health unit),
or "emergency" (call 1122). Chest pain, difficulty breathing, severe bleeding, loss of
consciousness or severe trauma are always "emergency".
Return structured data only: urgency, symptoms (list), recommended_actions (list), reasoning.
Never give a diagnosis. Answer in the user's language when it is not English.
"""

EMERGENCY_KEYWORDS = (
    "chest pain", "difficulty breathing", "can't breathe", "cannot breathe", "unconscious",
    "not breathing", "severe bleeding", "seizure", "stroke", "accident", "poison", "1122",
)

BHU_KEYWORDS = (
    "fever", "cough", "diarrhea", "diarrhoea", "vomiting", "rash", "headache", "pain", "infection",
)


def classify_by_keywords(message: str) -> TriageResult:
    text = message.lower()
    emergency = [k for k in EMERGENCY_KEYWORDS if k in text]
    if emergency:
        return TriageResult(
            urgency="emergency",
            symptoms=emergency,
            recommended_actions=["Call 1122 or use the emergency button now", "Stay with the patient"],
            reasoning="Message mentions an emergency warning sign.",
        )
    bhu = [k for k in BHU_KEYWORDS if k in text]
    if bhu:
        return TriageResult(
            urgency="bhu-visit",
            symptoms=bhu,
            recommended_actions=["Visit the nearest basic health unit within 24 hours"],
            reasoning="Symptoms need a clinical check but show no emergency signs.",
        )
    return TriageResult(
        urgency="self-care",
        recommended_actions=["Rest, drink fluids and monitor symptoms"],
        reasoning="No warning signs recognised.",
    )


class TriageAgent(Agent):
    name = "Triage Agent"
    description = "Symptom assessment and urgency classification"
    capabilities = ("symptom_assessment", "urgency_classification", "emergency_detection")

    def __init__(self, llm: LLMClient | None = None, bus: EventBus | None = None) -> None:
        self._llm = llm
        self._bus = bus

    async def handle(self, context: AgentContext, message: str, language: str = "english") -> dict:
        # Symptoms leave the process only after identifiers are masked.
        safe_message, _ = redact_pii(message)
        result = await self._assess(context, safe_message, language)

        if result.urgency == "emergency" and self._bus is not None:
            await self._bus.emit(
                EventType.EMERGENCY_REQUESTED,
                {
                    "session_id": context.session_id,
                    "urgency": result.urgency,
                    "symptoms": result.symptoms,
                    "message": safe_message,
                    "language": language,
                },
                TriggeredBy(agent="triage", session_id=context.session_id),
            )
        return result.model_dump()

    async def _assess(self, context: AgentContext, safe_message: str, language: str) -> TriageResult:
        client = self._llm or get_llm_client()
        if not client.available():
            return classify_by_keywords(safe_message)

        try:
            result = await client.generate_json(
                system=SYSTEM_PROMPT,
                user=f"Language: {language}\n\nSymptoms: {safe_message}",
                response_model=TriageResult,
                max_tokens=512,
            )
        except Exception as e:
            logger.error("Triage LLM call failed for session %s: %s", context.session_id, e)
            return classify_by_keywords(safe_message)

        # Keyword red flags always escalate, whatever the model said.
        fallback = classify_by_keywords(safe_message)
        if fallback.urgency == "emergency" and result.urgency != "emergency":
            return fallback
        return result
