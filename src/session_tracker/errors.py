"""Exception hierarchy shared by the session tracker components."""
from __future__ import annotations


class SessionTrackerError(RuntimeError):
    """Base class for errors raised by the session tracker core."""


class ConsolidationError(SessionTrackerError):
    """Raised when a session's consolidated artifacts could not be written."""

    def __init__(self, session_id: int, message: str) -> None:
        super().__init__(f"Session {session_id}: {message}")
        self.session_id = session_id


class SessionNotFoundError(SessionTrackerError, LookupError):
    """Raised when a session identifier cannot be resolved."""

    def __init__(self, session_id: object, lookup: str = "session registry") -> None:
        super().__init__(f"Session {session_id} not found in {lookup}")
        self.session_id = session_id
        self.lookup = lookup


class SessionStateError(SessionTrackerError):
    """Raised when a session lifecycle transition is not allowed."""


class ArchiveError(SessionTrackerError):
    """Raised when an export archive could not be produced."""


class BrokerUnavailableError(SessionTrackerError):
    """Raised when the telemetry broker gave up reconnecting."""


__all__ = [
    "ArchiveError",
    "BrokerUnavailableError",
    "ConsolidationError",
    "SessionNotFoundError",
    "SessionStateError",
    "SessionTrackerError",
]
