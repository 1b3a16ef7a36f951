import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sehat.config import PATTERN_MIN_CASES, PATTERN_RADIUS_KM, PATTERN_WINDOW_MINUTES
from sehat.models.agent import AgentContext
from sehat.models.event import AgentEvent, EventType, TriggeredBy
from sehat.models.geo import Coordinates
from sehat.services.agent_registry import Agent
from sehat.services.event_bus import EventBus
from sehat.services.geo import distance_meters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Sighting:
    case_id: str
    at: datetime
    origin: Coordinates


@dataclass(frozen=True)
class ClusterAlert:
    center: Coordinates
    raised_at: datetime
    case_ids: tuple[str, ...]

    def as_dict(self) -> dict:
        return {
            "center": self.center.model_dump(),
            "raised_at": self.raised_at.isoformat(),
            "case_count": len(self.case_ids),
            "case_ids": list(self.case_ids),
        }


def _parse_time(value: str | None) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(value)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        except ValueError:
            pass
    return datetime.now(UTC)


class KnowledgeAgent(Agent):
    """Watches new cases for geographic clusters and raises ``PatternDetected``.

    State is in memory and keyed by case id, so a redelivered event is
    counted once. One alert is raised per cluster area per window.
    """

    name = "Knowledge Agent"
    description = "Outbreak and incident pattern monitoring"
    capabilities = ("pattern_detection", "outbreak_monitoring", "alert_escalation")
    subscriptions = (EventType.CASE_CREATED,)

    def __init__(
        self,
        bus: EventBus,
        *,
        window_minutes: int = PATTERN_WINDOW_MINUTES,
        radius_km: float = PATTERN_RADIUS_KM,
        min_cases: int = PATTERN_MIN_CASES,
    ) -> None:
        self._bus = bus
        self._window = timedelta(minutes=window_minutes)
        self._radius_m = radius_km * 1000
        self._min_cases = min_cases
        self._sightings: dict[str, _Sighting] = {}
        self._alerts: list[ClusterAlert] = []

    @property
    def alerts(self) -> list[ClusterAlert]:
        return list(self._alerts)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self._window
        self._sightings = {k: s for k, s in self._sightings.items() if s.at >= cutoff}
        self._alerts = [a for a in self._alerts if a.raised_at >= cutoff]

    async def handle(self, context: AgentContext, message: str, language: str = "english") -> str | dict:
        if context.event is None:
            self._prune(datetime.now(UTC))
            return {
                "tracked_cases": len(self._sightings),
                "alerts": [a.as_dict() for a in self._alerts],
            }
        alert = self.observe(context.event)
        if alert is not None:
            await self._bus.emit(
                EventType.PATTERN_DETECTED,
                {
                    **alert.as_dict(),
                    "description": (
                        f"{len(alert.case_ids)} emergencies within {self._radius_m / 1000:g} km "
                        f"in the last {int(self._window.total_seconds() // 60)} minutes"
                    ),
                },
                TriggeredBy(agent="knowledge", case_id=context.event.payload.get("case_id")),
            )
        return "alert raised" if alert else "no pattern"

    def observe(self, event: AgentEvent) -> ClusterAlert | None:
        payload = event.payload
        case_id = payload.get("case_id")
        origin = payload.get("origin")
        if not case_id or not origin:
            return None

        at = _parse_time(event.created_at)
        self._prune(max(at, datetime.now(UTC)))
        if case_id in self._sightings:
            return None

        sighting = _Sighting(case_id, at, Coordinates.model_validate(origin))
        self._sightings[case_id] = sighting

        nearby = [
            s for s in self._sightings.values()
            if distance_meters(sighting.origin, s.origin) <= self._radius_m
        ]
        if len(nearby) < self._min_cases:
            return None
        if any(distance_meters(a.center, sighting.origin) <= self._radius_m for a in self._alerts):
            return None

        alert = ClusterAlert(
            center=sighting.origin,
            raised_at=at,
            case_ids=tuple(sorted(s.case_id for s in nearby)),
        )
        self._alerts.append(alert)
        logger.warning(
            "Pattern detected: %d cases within %.0fm of (%.4f, %.4f)",
            len(nearby), self._radius_m, sighting.origin.lat, sighting.origin.lng,
        )
        return alert

    async def autonomous_actions(self) -> None:
        self._prune(datetime.now(UTC))
