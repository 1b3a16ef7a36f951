"""Durable, at-least-once event bus.

Every event is written to the ``agent_events`` table before any handler sees
it. In-process subscribers are then run in a background task, and a periodic
recovery scan picks up anything a crashed or restarted process never
finished. Both paths can observe the same event, so handlers MUST be
idempotent: running one twice for the same event id has to be harmless.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sehat.config import (
    EVENT_HANDLER_TIMEOUT_SECONDS,
    EVENT_PROCESSING_STALE_SECONDS,
    EVENT_RECOVERY_INTERVAL_SECONDS,
)
from sehat.database import DatabaseAdapter
from sehat.models.event import AgentEvent, EventStatus, TriggeredBy
from sehat.services.event_store import EventStore

logger = logging.getLogger(__name__)

EventHandler = Callable[[AgentEvent], Awaitable[None]]

RECOVERY_CONCURRENCY = 8


class EventBus:
    def __init__(
        self,
        store: EventStore,
        *,
        handler_timeout: float = EVENT_HANDLER_TIMEOUT_SECONDS,
        recovery_interval: float = EVENT_RECOVERY_INTERVAL_SECONDS,
        stale_after: float = EVENT_PROCESSING_STALE_SECONDS,
    ) -> None:
        self._store = store
        self._handler_timeout = handler_timeout
        self._recovery_interval = recovery_interval
        self._stale_after = stale_after
        self._handlers: dict[str, list[tuple[str, EventHandler]]] = {}
        self._listeners: set[asyncio.Queue] = set()
        self._inflight: set[asyncio.Task] = set()
        self._recovery_task: asyncio.Task | None = None

    @property
    def store(self) -> EventStore:
        return self._store

    # --- Subscriptions ---

    def subscribe(self, event_type: str, handler: EventHandler, name: str | None = None) -> None:
        """Register a handler for one event type. Intended for startup wiring."""
        label = name or getattr(handler, "__qualname__", repr(handler))
        self._handlers.setdefault(event_type, []).append((label, handler))
        logger.info("Handler %s registered for event type %s", label, event_type)

    def handlers_for(self, event_type: str) -> list[tuple[str, EventHandler]]:
        return list(self._handlers.get(event_type, []))

    def listen(self) -> asyncio.Queue:
        """Live feed of every event as it is emitted and finished (dispatch monitor)."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._listeners.add(queue)
        return queue

    def unlisten(self, queue: asyncio.Queue) -> None:
        self._listeners.discard(queue)

    def _broadcast(self, kind: str, event: AgentEvent) -> None:
        message = {"type": kind, "event": event.model_dump(mode="json")}
        for queue in self._listeners:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Event monitor queue full, dropping %s for %s", kind, event.id)

    # --- Emission ---

    @staticmethod
    def build(
        event_type: str,
        payload: dict[str, Any],
        triggered_by: TriggeredBy | None = None,
    ) -> AgentEvent:
        return AgentEvent(
            id=str(uuid.uuid4()),
            type=event_type,
            payload=payload,
            triggered_by=triggered_by or TriggeredBy(),
            created_at=datetime.now(UTC).isoformat(),
        )

    async def persist(self, event: AgentEvent, conn: DatabaseAdapter | None = None) -> AgentEvent:
        """Write the event as ``pending``; pass ``conn`` to join a caller's transaction."""
        return await self._store.insert(event, conn=conn)

    def deliver(self, event: AgentEvent) -> asyncio.Task:
        """Run in-process subscribers for an already persisted event in the background."""
        logger.info("Event emitted: %s by %s", event.type, event.triggered_by.agent)
        self._broadcast("emitted", event)
        task = asyncio.create_task(self._deliver_safely(event.id), name=f"event-{event.id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def emit(
        self,
        event_type: str,
        payload: dict[str, Any],
        triggered_by: TriggeredBy | None = None,
    ) -> AgentEvent:
        event = await self.persist(self.build(event_type, payload, triggered_by))
        self.deliver(event)
        return event

    async def _deliver_safely(self, event_id: str) -> None:
        try:
            await self.process(event_id)
        except Exception:
            # The event stays pending/processing and the recovery scan retries it.
            logger.exception("In-process delivery of event %s failed", event_id)

    # --- Processing ---

    async def _run_handler(self, label: str, handler: EventHandler, event: AgentEvent) -> tuple[str, str | None]:
        try:
            await asyncio.wait_for(handler(event), timeout=self._handler_timeout)
        except asyncio.TimeoutError:
            logger.error("Handler %s timed out on event %s (%s)", label, event.id, event.type)
            return label, f"timed out after {self._handler_timeout:g}s"
        except Exception as exc:
            logger.error("Handler %s failed on event %s (%s): %s", label, event.id, event.type, exc)
            return label, str(exc) or exc.__class__.__name__
        return label, None

    async def process(self, event_id: str, stale_before: str | None = None) -> AgentEvent | None:
        """Claim one event, run every handler for its type and record the outcome.

        Returns None when the event was already terminal or owned by another path.
        """
        event = await self._store.claim(event_id, stale_before=stale_before)
        if event is None:
            return None

        handlers = self.handlers_for(event.type)
        if not handlers:
            logger.warning("No handler registered for event %s (%s); marking failed", event.id, event.type)
            finished = await self._store.finish(
                event.id, EventStatus.FAILED, {}, error="no handler registered"
            )
            self._broadcast("finished", finished)
            return finished

        outcomes = await asyncio.gather(*(self._run_handler(label, h, event) for label, h in handlers))

        results = {label: ("completed" if err is None else f"failed: {err}") for label, err in outcomes}
        errors = [f"{label}: {err}" for label, err in outcomes if err is not None]
        status = EventStatus.FAILED if errors else EventStatus.COMPLETED
        finished = await self._store.finish(event.id, status, results, error="; ".join(errors) or None)
        if errors:
            logger.error("Event %s (%s) failed in %d handler(s)", event.id, event.type, len(errors))
        self._broadcast("finished", finished)
        return finished

    async def recover_pending(self) -> int:
        """One recovery pass; returns how many events this pass processed."""
        stale_before = (datetime.now(UTC) - timedelta(seconds=self._stale_after)).isoformat()
        event_ids = await self._store.recoverable_ids(stale_before)
        if not event_ids:
            return 0

        logger.info("Recovering %d unprocessed event(s)", len(event_ids))
        semaphore = asyncio.Semaphore(RECOVERY_CONCURRENCY)

        async def _one(event_id: str) -> bool:
            async with semaphore:
                return await self.process(event_id, stale_before=stale_before) is not None

        processed = await asyncio.gather(*(_one(event_id) for event_id in event_ids))
        return sum(processed)

    async def requeue(self, event_id: str) -> AgentEvent | None:
        """Operator remediation of a failed event; it is picked up by the next scan."""
        event = await self._store.requeue(event_id)
        if event is not None:
            logger.info("Event %s (%s) requeued by operator", event.id, event.type)
        return event

    # --- Background lifecycle ---

    def start(self) -> None:
        if self._recovery_task is not None:
            return
        self._recovery_task = asyncio.create_task(self._recovery_loop(), name="event-recovery")
        logger.info("Event recovery scan started (every %gs)", self._recovery_interval)

    async def stop(self) -> None:
        task, self._recovery_task = self._recovery_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.drain()

    async def drain(self) -> None:
        """Wait for in-process deliveries that are still running."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _recovery_loop(self) -> None:
        while True:
            try:
                await self.recover_pending()
            except Exception:
                logger.exception("Error processing pending events")
            await asyncio.sleep(self._recovery_interval)
