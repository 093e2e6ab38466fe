"""Wire protocol: named events exchanged with terminal clients.

Every message is an event name plus a JSON-compatible payload. On the
websocket a message travels as ``{"event": <name>, "data": <payload>}``.
Outbound messages go through an ``Outbox``: a per-connection queue that
the transport drains, so the broker never waits on a client.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(enum.StrEnum):
    # Client -> server
    LIST_SESSIONS = "list-sessions"
    CREATE_SESSION = "create-session"
    ATTACH = "attach"
    INPUT = "input"
    RESIZE = "resize"
    KILL_SESSION = "kill-session"
    RENAME_SESSION = "rename-session"
    # Server -> client
    SESSIONS = "sessions"
    SESSION_CREATED = "session-created"
    ATTACHED = "attached"
    OUTPUT = "output"
    SESSION_EXITED = "session-exited"
    DETACHED = "detached"
    ERROR = "error"


@dataclass
class Message:
    """A message on the wire."""

    event: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}

    @classmethod
    def from_dict(cls, frame: Any) -> Message:
        """Parse an inbound frame.

        Raises:
            ValueError: the frame is not an object with a string ``event``.
        """
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            raise ValueError("frame must be an object with a string 'event'")
        return cls(event=frame["event"], data=frame.get("data"))


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class SessionInfo(BaseModel):
    """Externally visible view of a session."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    connected: bool
    created_at: int = Field(alias="createdAt")


class CreateSessionRequest(BaseModel):
    name: str | None = None


class ResizeRequest(BaseModel):
    cols: int
    rows: int


class RenameSessionRequest(BaseModel):
    id: str
    name: str


def session_list_payload(sessions: list[SessionInfo]) -> list[dict[str, Any]]:
    return [s.model_dump(by_alias=True) for s in sessions]


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


OUTBOX_SIZE = 256


class Outbox:
    """Fire-and-forget outbound queue for one connection.

    ``send`` never blocks and never raises. After ``close()`` the reader
    receives a ``None`` sentinel and later sends are silently dropped.

    The queue holds at most ``maxsize`` messages. A send that finds it full
    marks the outbox overflowed and closes it: queued messages are
    discarded and the reader gets the sentinel straight away.
    """

    def __init__(self, maxsize: int = OUTBOX_SIZE) -> None:
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue(maxsize)
        self._closed: bool = False
        self._overflowed: bool = False

    def send(self, event: str, data: Any = None) -> bool:
        """Queue a message. Returns False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(Message(event=event, data=data))
        except asyncio.QueueFull:
            self._overflowed = True
            self.close()
            return False
        return True

    def send_error(self, message: str) -> None:
        self.send(EventType.ERROR, message)

    async def get(self) -> Message | None:
        return await self._queue.get()

    def get_nowait(self) -> Message | None:
        return self._queue.get_nowait()

    def drain(self) -> list[Message]:
        """Pop every queued message without waiting."""
        messages: list[Message] = []
        while not self._queue.empty():
            msg = self._queue.get_nowait()
            if msg is not None:
                messages.append(msg)
        return messages

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        """Signal the reader that the connection is going away."""
        if self._closed:
            return
        self._closed = True
        if self._overflowed:
            while not self._queue.empty():
                self._queue.get_nowait()
        elif self._queue.full():
            # Make room for the sentinel
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        return self._overflowed
