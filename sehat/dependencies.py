from fastapi import Request

from sehat.services.agent_registry import AgentRegistry
from sehat.services.dispatch import DispatchEngine
from sehat.services.event_bus import EventBus
from sehat.services.notifications import NotificationStore
from sehat.services.responders import ResponderDirectory
from sehat.services.sessions import SessionStore


def get_dispatch(request: Request) -> DispatchEngine:
    return request.app.state.dispatch


def get_directory(request: Request) -> ResponderDirectory:
    return request.app.state.directory


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_registry(request: Request) -> AgentRegistry:
    return request.app.state.registry


def get_notifications(request: Request) -> NotificationStore:
    return request.app.state.notifications


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions
