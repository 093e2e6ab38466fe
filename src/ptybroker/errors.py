"""Broker errors. Each one is scoped to a single request and carries the
message reported back to the requesting client."""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for failures reported to a client as an ``error`` event."""


class CapacityExceeded(BrokerError):
    """Creating a session would exceed ``max_sessions``."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Max {limit} sessions. Kill one first.")


class SessionNotFound(BrokerError):
    """No alive session has this id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class ProcessSpawnFailure(BrokerError):
    """The shell process could not be started."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Failed to start shell: {reason}")
