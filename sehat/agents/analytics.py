import logging
from collections import Counter

from sehat.models.agent import AgentContext
from sehat.models.event import AgentEvent, EventType
from sehat.services.agent_registry import Agent

logger = logging.getLogger(__name__)


class AnalyticsAgent(Agent):
    """Running dispatch metrics. Each event id is counted at most once."""

    name = "Analytics Agent"
    description = "Dispatch volume, assignment mix and response-time metrics"
    capabilities = ("metrics", "reporting")
    subscriptions = (
        EventType.CASE_CREATED,
        EventType.CASE_ASSIGNED,
        EventType.CASE_STATUS_CHANGED,
    )

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self.cases_created = 0
        self.cases_assigned = 0
        self.cases_completed = 0
        self.assignments_by_type: Counter[str] = Counter()
        self.transitions: Counter[str] = Counter()
        self._eta_total_ms = 0
        self._eta_samples = 0

    def record(self, event: AgentEvent) -> bool:
        if event.id in self._seen:
            return False
        self._seen.add(event.id)
        p = event.payload

        if event.type == EventType.CASE_CREATED:
            self.cases_created += 1
        elif event.type == EventType.CASE_ASSIGNED:
            self.cases_assigned += 1
            self.assignments_by_type[p.get("assigned_to_type", "unknown")] += 1
            if p.get("eta_millis") is not None:
                self._eta_total_ms += int(p["eta_millis"])
                self._eta_samples += 1
        elif event.type == EventType.CASE_STATUS_CHANGED:
            self.transitions[f"{p.get('from')}->{p.get('to')}"] += 1
            if p.get("to") == "completed":
                self.cases_completed += 1
        return True

    def snapshot(self) -> dict:
        mean_eta = self._eta_total_ms / self._eta_samples if self._eta_samples else None
        return {
            "cases_created": self.cases_created,
            "cases_assigned": self.cases_assigned,
            "cases_completed": self.cases_completed,
            "assignments_by_type": dict(self.assignments_by_type),
            "transitions": dict(self.transitions),
            "mean_eta_millis": round(mean_eta) if mean_eta is not None else None,
        }

    async def handle(self, context: AgentContext, message: str, language: str = "english") -> str | dict:
        if context.event is None:
            return self.snapshot()
        counted = self.record(context.event)
        if not counted:
            logger.debug("Event %s already counted", context.event.id)
        return "counted" if counted else "duplicate"
