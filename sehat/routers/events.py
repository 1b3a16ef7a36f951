import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from sehat.dependencies import get_bus
from sehat.errors import EventNotFound
from sehat.models.event import AgentEvent, EventStatus
from sehat.services.event_bus import EventBus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])

MONITOR_PING_SECONDS = 10.0


@router.get("", response_model=list[AgentEvent])
async def list_events(
    status: EventStatus | None = Query(None),
    type: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    bus: EventBus = Depends(get_bus),
):
    """Recent events, newest first. Filter by ``status=failed`` to find ones needing attention."""
    return await bus.store.list_events(status=status, event_type=type, limit=limit)


@router.get("/{event_id}", response_model=AgentEvent)
async def get_event(event_id: str, bus: EventBus = Depends(get_bus)):
    try:
        return await bus.store.require(event_id)
    except EventNotFound:
        raise HTTPException(status_code=404, detail="Event not found") from None


@router.post("/{event_id}/requeue", response_model=AgentEvent)
async def requeue_event(event_id: str, bus: EventBus = Depends(get_bus)):
    """Send a failed event back to ``pending`` for the next recovery scan."""
    try:
        event = await bus.requeue(event_id)
    except EventNotFound:
        raise HTTPException(status_code=404, detail="Event not found") from None
    if event is None:
        raise HTTPException(status_code=409, detail="Only failed events can be requeued")
    return event


@router.websocket("/ws")
async def event_monitor_ws(websocket: WebSocket):
    """WebSocket for the live dispatch monitor.

    Messages are ``{"type": "emitted" | "finished", "event": {...}}``; a
    ``ping`` is sent when the bus has been quiet for ``MONITOR_PING_SECONDS``.
    """
    await websocket.accept()
    bus: EventBus = websocket.app.state.bus
    queue = bus.listen()
    logger.info("Event monitor client connected")

    try:
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=MONITOR_PING_SECONDS)
            except asyncio.TimeoutError:
                message = {"type": "ping"}

            try:
                await websocket.send_json(message)
            except Exception:
                logger.debug("Failed to send event to monitor client")
                break
    except WebSocketDisconnect:
        logger.info("Event monitor client disconnected")
    except asyncio.CancelledError:
        pass
    finally:
        bus.unlisten(queue)
