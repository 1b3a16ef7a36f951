import asyncio
import logging
from typing import Any

from sehat.errors import AgentError, SessionAgentMismatch, UnknownAgent
from sehat.models.agent import AgentContext, AgentInfo
from sehat.models.event import AgentEvent
from sehat.services.event_bus import EventBus
from sehat.services.sessions import SessionStore

logger = logging.getLogger(__name__)


class Agent:
    """The single-capability contract every named consumer implements.

    ``handle`` serves both direct routing (an interactive turn) and event
    delivery, where ``context.event`` carries the event and ``message`` is
    its type. Event handling must be idempotent per event id.
    """

    name: str = ""
    description: str = ""
    capabilities: tuple[str, ...] = ()
    subscriptions: tuple[str, ...] = ()

    async def handle(
        self,
        context: AgentContext,
        message: str,
        language: str = "english",
    ) -> str | dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError

    async def autonomous_actions(self) -> None:
        """Optional proactive work, run periodically."""
        return


class AgentRegistry:
    """Name-keyed agents, reachable by direct routing or as event subscribers."""

    def __init__(self, bus: EventBus, sessions: SessionStore | None = None) -> None:
        self._bus = bus
        self._sessions = sessions
        self._agents: dict[str, Agent] = {}
        self._wired: set[tuple[str, str]] = set()
        self._autonomous_task: asyncio.Task | None = None

    def register(self, name: str, agent: Agent) -> None:
        if name in self._agents:
            logger.warning("Agent %s already registered, overwriting", name)
        self._agents[name] = agent
        logger.info("Registered agent: %s (capabilities: %s)", name, ", ".join(agent.capabilities) or "none")

        for event_type in agent.subscriptions:
            self._wire(name, event_type)

    def _wire(self, name: str, event_type: str) -> None:
        # Subscribe once per (name, type); the handler looks the agent up at
        # delivery time so a re-registration takes over the subscription.
        if (name, event_type) in self._wired:
            return
        self._wired.add((name, event_type))

        async def _handler(event: AgentEvent) -> None:
            agent = self._agents.get(name)
            if agent is None or event.type not in agent.subscriptions:
                return
            context = AgentContext(session_id=event.triggered_by.session_id, event=event)
            await self._invoke(name, agent, context, event.type, context.language)

        self._bus.subscribe(event_type, _handler, name=f"agent:{name}")

    def get(self, name: str) -> Agent | None:
        return self._agents.get(name)

    def agents(self) -> list[AgentInfo]:
        return [
            AgentInfo(
                name=name,
                description=agent.description,
                capabilities=list(agent.capabilities),
                subscriptions=list(agent.subscriptions),
            )
            for name, agent in self._agents.items()
        ]

    def find_by_capability(self, capability: str) -> list[str]:
        return [name for name, agent in self._agents.items() if capability in agent.capabilities]

    async def _invoke(
        self,
        name: str,
        agent: Agent,
        context: AgentContext,
        message: str,
        language: str,
    ) -> str | dict[str, Any]:
        try:
            return await agent.handle(context, message, language)
        except AgentError:
            raise
        except Exception as exc:
            raise AgentError(name, str(exc) or exc.__class__.__name__) from exc

    async def route(
        self,
        name: str,
        context: AgentContext,
        message: str,
        language: str = "english",
    ) -> str | dict[str, Any]:
        agent = self._agents.get(name)
        if agent is None:
            raise UnknownAgent(name)
        logger.info("Routing message to %s", name)
        return await self._invoke(name, agent, context, message, language)

    async def chat(
        self,
        name: str,
        message: str,
        session_id: str | None = None,
        language: str = "english",
    ) -> tuple[str | None, str | dict[str, Any]]:
        """Route one turn within a session and store it in the transcript.

        Without a ``session_id`` a new session is opened for the agent. A turn
        that fails is not recorded.
        """
        if self._sessions is None:
            context = AgentContext(session_id=session_id, language=language)
            return session_id, await self.route(name, context, message, language)

        if name not in self._agents:
            raise UnknownAgent(name)
        if session_id is None:
            session = await self._sessions.create(name, language=language)
        else:
            session = await self._sessions.require(session_id)
            if session.agent != name:
                raise SessionAgentMismatch(session.id, session.agent, name)

        context = AgentContext(session_id=session.id, language=language)
        output = await self.route(name, context, message, language)
        await self._sessions.record_turn(session.id, message, output, language)
        return session.id, output

    async def trigger_autonomous_actions(self) -> None:
        for name, agent in list(self._agents.items()):
            try:
                await agent.autonomous_actions()
            except Exception:
                logger.exception("Error in autonomous actions for %s", name)

    def start(self, interval: float) -> None:
        if self._autonomous_task is None:
            self._autonomous_task = asyncio.create_task(self._autonomous_loop(interval), name="agent-autonomy")

    async def stop(self) -> None:
        task, self._autonomous_task = self._autonomous_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _autonomous_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.trigger_autonomous_actions()
