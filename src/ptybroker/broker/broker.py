"""Broker: connects client connections to the shared session table."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ptybroker.broker.handler import ConnectionHandler
from ptybroker.broker.session import Session
from ptybroker.broker.table import SessionTable, Spawner
from ptybroker.config import BrokerConfig
from ptybroker.pty.process import PTYProcess
from ptybroker.session.wire import EventType, Outbox, session_list_payload

logger = logging.getLogger(__name__)


class Broker:
    """Registry of live connections around one ``SessionTable``.

    The broker is the table's observer: it routes session output and exit
    notifications to whichever connection is attached, and broadcasts the
    session list when membership changes. Every send is fire-and-forget;
    a connection that has already gone is skipped.
    """

    def __init__(
        self, config: BrokerConfig | None = None, spawner: Spawner = PTYProcess
    ) -> None:
        self.config = config or BrokerConfig()
        self.table = SessionTable(self.config, observer=self, spawner=spawner)
        self._connections: dict[str, ConnectionHandler] = {}

    def connect(self, outbox: Outbox | None = None) -> ConnectionHandler:
        """Register a new connection and return its handler."""
        connection_id = uuid.uuid4().hex
        outbox = outbox or Outbox(self.config.outbox_size)
        handler = ConnectionHandler(self, connection_id, outbox)
        self._connections[connection_id] = handler
        logger.info("Connection %s opened", connection_id)
        return handler

    def disconnect(self, connection_id: str) -> None:
        """Drop a connection. Its session, if any, keeps running unattached."""
        handler = self._connections.pop(connection_id, None)
        if handler is None:
            return
        session = self.table.detach(connection_id)
        handler.outbox.close()
        if session is not None:
            logger.info(
                "Connection %s disconnected (session %s preserved)",
                connection_id,
                session.id,
            )
        else:
            logger.info("Connection %s disconnected", connection_id)

    def send(self, connection_id: str, event: str, data: Any = None) -> None:
        handler = self._connections.get(connection_id)
        if handler is None:
            return
        self._deliver(handler, event, data)

    def broadcast_sessions(self) -> None:
        payload = session_list_payload(self.table.list())
        for handler in list(self._connections.values()):
            self._deliver(handler, EventType.SESSIONS, payload)

    def _deliver(self, handler: ConnectionHandler, event: str, data: Any) -> None:
        if not handler.outbox.send(event, data) and handler.outbox.overflowed:
            self.drop_slow(handler.connection_id)

    def drop_slow(self, connection_id: str) -> None:
        """Disconnect a client whose outbox overflowed."""
        if connection_id in self._connections:
            logger.warning(
                "Connection %s is not keeping up, dropping it", connection_id
            )
            self.disconnect(connection_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def shutdown(self) -> None:
        """Kill all sessions and close every connection's outbox."""
        await self.table.shutdown()
        for connection_id in list(self._connections):
            self.disconnect(connection_id)

    # ------------------------------------------------------------------
    # TableObserver
    # ------------------------------------------------------------------

    def session_output(self, session: Session, connection_id: str, data: str) -> None:
        self.send(connection_id, EventType.OUTPUT, data)

    def session_killed(self, session: Session, connection_id: str | None) -> None:
        if connection_id is not None:
            self.send(connection_id, EventType.DETACHED, {"id": session.id})

    def session_exited(
        self,
        session: Session,
        connection_id: str | None,
        exit_code: int | None,
        signal: int | None,
    ) -> None:
        if connection_id is not None:
            self.send(
                connection_id,
                EventType.SESSION_EXITED,
                {"id": session.id, "exitCode": exit_code, "signal": signal},
            )
        self.broadcast_sessions()
