"""Tests for the event monitor WebSocket endpoint."""

import sehat.routers.events as events_router


def test_monitor_sends_ping_when_idle(client, monkeypatch):
    monkeypatch.setattr(events_router, "MONITOR_PING_SECONDS", 0.05)

    with client.websocket_connect("/api/events/ws") as ws:
        assert ws.receive_json() == {"type": "ping"}


def test_monitor_unregisters_listener_on_disconnect(client, services, monkeypatch):
    monkeypatch.setattr(events_router, "MONITOR_PING_SECONDS", 0.05)

    with client.websocket_connect("/api/events/ws") as ws:
        ws.receive_json()
        assert len(services.bus._listeners) == 1

    assert services.bus._listeners == set()
