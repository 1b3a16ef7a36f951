class StoreUnavailable(RuntimeError):
    """The case/event store could not complete an operation."""


class CaseNotFound(ValueError):
    def __init__(self, case_id: str) -> None:
        super().__init__(f"Case {case_id} not found")
        self.case_id = case_id


class ResponderNotFound(ValueError):
    def __init__(self, kind: str, responder_id: str) -> None:
        super().__init__(f"{kind} {responder_id} not found")
        self.kind = kind
        self.responder_id = responder_id


class EventNotFound(ValueError):
    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


class InvalidTransition(ValueError):
    """A status change outside the fixed case lifecycle."""

    def __init__(self, case_id: str, current: str, requested: str, allowed: str | None) -> None:
        expected = allowed or "none (case is closed)"
        super().__init__(
            f"Case {case_id} cannot move from '{current}' to '{requested}'; next allowed status is {expected}"
        )
        self.case_id = case_id
        self.current = current
        self.requested = requested
        self.allowed = allowed


class UnknownAgent(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Agent {name} not found")
        self.name = name


class AgentError(RuntimeError):
    """An agent failed to handle a routed turn or an event."""

    def __init__(self, agent: str, message: str) -> None:
        super().__init__(f"{agent}: {message}")
        self.agent = agent


class ResponderExists(ValueError):
    def __init__(self, kind: str, responder_id: str) -> None:
        super().__init__(f"{kind} {responder_id} already registered")
        self.kind = kind
        self.responder_id = responder_id


class SessionNotFound(ValueError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionAgentMismatch(ValueError):
    """A chat turn addressed to a different agent than the session was opened with."""

    def __init__(self, session_id: str, session_agent: str, requested: str) -> None:
        super().__init__(f"Session {session_id} is for {session_agent}, not {requested}")
        self.session_id = session_id
        self.session_agent = session_agent
        self.requested = requested
