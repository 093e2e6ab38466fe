"""Connection handler: the per-connection protocol state machine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import ValidationError

from ptybroker.broker.session import Session
from ptybroker.errors import BrokerError
from ptybroker.session.wire import (
    CreateSessionRequest,
    EventType,
    Message,
    Outbox,
    RenameSessionRequest,
    ResizeRequest,
    session_list_payload,
)

if TYPE_CHECKING:
    from ptybroker.broker.broker import Broker
    from ptybroker.broker.table import SessionTable

logger = logging.getLogger(__name__)


class ConnectionHandler:
    """Translates one client's requests into session table operations.

    The connection's current session is not stored here: it is whatever
    session the table records this connection as attached to.
    """

    def __init__(self, broker: Broker, connection_id: str, outbox: Outbox) -> None:
        self.broker = broker
        self.connection_id = connection_id
        self.outbox = outbox
        self._routes: dict[str, Callable[[Any], Awaitable[None]]] = {
            EventType.LIST_SESSIONS: self.list_sessions,
            EventType.CREATE_SESSION: self.create_session,
            EventType.ATTACH: self.attach,
            EventType.INPUT: self.input,
            EventType.RESIZE: self.resize,
            EventType.KILL_SESSION: self.kill_session,
            EventType.RENAME_SESSION: self.rename_session,
        }

    @property
    def table(self) -> SessionTable:
        return self.broker.table

    @property
    def current_session(self) -> Session | None:
        return self.table.session_for(self.connection_id)

    @property
    def current_session_id(self) -> str | None:
        session = self.current_session
        return session.id if session else None

    async def handle(self, message: Message) -> None:
        """Dispatch one inbound message. Failures go back as ``error`` events."""
        if self.outbox.closed:
            # Disconnected; nothing may attach to this id again
            return
        route = self._routes.get(message.event)
        if route is None:
            logger.debug(
                "Ignoring unknown event %r from %s", message.event, self.connection_id
            )
            return
        try:
            await route(message.data)
        except BrokerError as e:
            self.outbox.send_error(str(e))
        except ValidationError:
            self.outbox.send_error(f"Invalid {message.event} payload")
        except Exception:
            logger.exception(
                "Error handling %s from %s", message.event, self.connection_id
            )
            self.outbox.send_error(f"Internal error handling {message.event}")
        if self.outbox.overflowed:
            self.broker.drop_slow(self.connection_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def list_sessions(self, data: Any = None) -> None:
        self.outbox.send(EventType.SESSIONS, session_list_payload(self.table.list()))

    async def create_session(self, data: Any = None) -> None:
        """Create a session and attach this connection to it."""
        request = CreateSessionRequest.model_validate(data or {})
        session = await self.table.create(request.name, attach_to=self.connection_id)
        self.outbox.send(
            EventType.SESSION_CREATED, {"id": session.id, "name": session.name}
        )
        self._acknowledge_attach(session)
        self.broker.broadcast_sessions()

    async def attach(self, data: Any) -> None:
        if not isinstance(data, str):
            self.outbox.send_error("Invalid attach payload")
            return
        session, displaced = self.table.attach(data, self.connection_id)
        if displaced is not None:
            self.broker.send(displaced, EventType.DETACHED, {"id": session.id})
        self._acknowledge_attach(session)

    async def input(self, data: Any) -> None:
        # No attachment means a keystroke raced a detach: drop it.
        session = self.current_session
        if session is None or not isinstance(data, str):
            return
        session.process.write(data)

    async def resize(self, data: Any) -> None:
        session = self.current_session
        if session is None:
            return
        try:
            size = ResizeRequest.model_validate(data)
        except ValidationError:
            return
        session.process.resize(max(size.cols, 1), max(size.rows, 1))

    async def kill_session(self, data: Any) -> None:
        if not isinstance(data, str):
            self.outbox.send_error("Invalid kill-session payload")
            return
        if self.table.kill(data) is not None:
            self.broker.broadcast_sessions()

    async def rename_session(self, data: Any) -> None:
        request = RenameSessionRequest.model_validate(data)
        if self.table.rename(request.id, request.name):
            self.broker.broadcast_sessions()

    def disconnect(self) -> None:
        self.broker.disconnect(self.connection_id)

    def _acknowledge_attach(self, session: Session) -> None:
        self.outbox.send(EventType.ATTACHED, {"id": session.id, "name": session.name})
        replay = session.buffer.contents()
        if replay:
            self.outbox.send(EventType.OUTPUT, replay)
