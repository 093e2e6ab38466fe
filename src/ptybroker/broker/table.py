"""Session table: the authoritative set of alive shell sessions."""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import uuid
from typing import Callable, Protocol

from ptybroker.broker.session import Session, ShellProcess
from ptybroker.config import BrokerConfig
from ptybroker.errors import CapacityExceeded, SessionNotFound
from ptybroker.pty.buffer import RingBuffer
from ptybroker.pty.process import PTYProcess
from ptybroker.session.wire import SessionInfo

logger = logging.getLogger(__name__)

ID_MASK = 0xFFFFFFFF

Spawner = Callable[..., ShellProcess]


class TableObserver(Protocol):
    """Receives session events that must reach a connection."""

    def session_output(self, session: Session, connection_id: str, data: str) -> None: ...

    def session_killed(self, session: Session, connection_id: str | None) -> None: ...

    def session_exited(
        self,
        session: Session,
        connection_id: str | None,
        exit_code: int | None,
        signal: int | None,
    ) -> None: ...


class SessionTable:
    """Owns every alive session and the connection <-> session relation.

    The table ensures:
    - At most ``max_sessions`` sessions are alive at once
    - Ids are unique and never reused for the life of the table
    - A session is in the table exactly while it is alive; process exit
      removes it immediately
    - A connection is attached to at most one session and each session
      has at most one attached connection

    All methods except ``create`` and ``shutdown`` are synchronous and
    never await, so on the broker's event loop each one runs as a single
    uninterrupted step. ``create`` holds a lock across the spawn so that
    concurrent creates cannot overshoot the capacity check.
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        observer: TableObserver | None = None,
        spawner: Spawner = PTYProcess,
    ) -> None:
        self.config = config or BrokerConfig()
        self.observer = observer
        self._spawner = spawner
        self._sessions: dict[str, Session] = {}
        # Ids count up from a random start, so none repeats for 2**32 creates
        self._id_base = uuid.uuid4().int & ID_MASK
        self._id_counter = itertools.count()
        self._lock = asyncio.Lock()

    @property
    def max_sessions(self) -> int:
        return self.config.max_sessions

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def create(
        self, name: str | None = None, *, attach_to: str | None = None
    ) -> Session:
        """Spawn a shell and register it as a new session.

        Args:
            name: Display label. Defaults to ``"Shell N"``, N being one more
                than the number of alive sessions.
            attach_to: Connection id to attach in the same step, if any.

        Raises:
            CapacityExceeded: ``max_sessions`` sessions are already alive.
            ProcessSpawnFailure: the shell could not be started; the table
                is left unchanged.
        """
        async with self._lock:
            alive = len(self._sessions)
            if alive >= self.max_sessions:
                raise CapacityExceeded(self.max_sessions)

            session = Session(
                id=self._new_id(),
                name=name or f"Shell {alive + 1}",
                buffer=RingBuffer(self.config.scrollback_buffer_size),
            )
            process = self._spawner(
                self.config.command,
                cwd=self.config.cwd,
                cols=self.config.cols,
                rows=self.config.rows,
                on_data=functools.partial(self._on_data, session),
                on_exit=functools.partial(self._on_exit, session),
            )
            await process.spawn()

            session.process = process
            self._sessions[session.id] = session
            if attach_to is not None:
                self._bind(session, attach_to)

        logger.info(
            "Created session %s %r pid=%s",
            session.id,
            session.name,
            getattr(process, "pid", None),
        )
        return session

    def get(self, session_id: str) -> Session:
        """Look up an alive session.

        Raises:
            SessionNotFound: no alive session has this id.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def list(self) -> list[SessionInfo]:
        """Snapshot of alive sessions in creation order."""
        return [s.info() for s in self._sessions.values()]

    def kill(self, session_id: str) -> Session | None:
        """Terminate a session and remove it.

        The formerly attached connection, if any, is reported to the
        observer. Unknown or already removed ids are a no-op returning None.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        connection_id = self._retire(session)
        if session.process is not None:
            session.process.kill()
        logger.info("Killed session %s", session_id)
        if self.observer is not None:
            self.observer.session_killed(session, connection_id)
        return session

    def rename(self, session_id: str, name: str) -> bool:
        """Relabel an alive session. Returns False if there is none."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.name = name
        return True

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Kill every session and wait (bounded) for the processes to go."""
        sessions = list(self._sessions.values())
        for session in sessions:
            self.kill(session.id)
        waits = [
            asyncio.ensure_future(s.process.wait()) for s in sessions if s.process is not None
        ]
        if waits:
            _done, pending = await asyncio.wait(waits, timeout=timeout)
            for task in pending:
                task.cancel()
        logger.info("All sessions shut down")

    # ------------------------------------------------------------------
    # Attachment
    # ------------------------------------------------------------------

    def attach(self, session_id: str, connection_id: str) -> tuple[Session, str | None]:
        """Attach a connection to a session, last attacher wins.

        The connection is first released from any other session it held.

        Returns:
            (session, displaced) where ``displaced`` is the connection that
            previously held the session, or None.

        Raises:
            SessionNotFound: no alive session has this id. Nothing changes.
        """
        session = self.get(session_id)
        previous = self._bind(session, connection_id)
        displaced = previous if previous != connection_id else None
        logger.info("Connection %s attached to session %s", connection_id, session_id)
        return session, displaced

    def detach(self, connection_id: str) -> Session | None:
        """Release whatever session the connection holds. The shell keeps running."""
        session = self.session_for(connection_id)
        if session is not None:
            session.attachment = None
        return session

    def session_for(self, connection_id: str) -> Session | None:
        for session in self._sessions.values():
            if session.attachment == connection_id:
                return session
        return None

    def _bind(self, session: Session, connection_id: str) -> str | None:
        current = self.session_for(connection_id)
        if current is not None and current is not session:
            current.attachment = None
        previous = session.attachment
        session.attachment = connection_id
        return previous

    # ------------------------------------------------------------------
    # Process events
    # ------------------------------------------------------------------

    def _on_data(self, session: Session, data: str) -> None:
        if not session.alive:
            return
        session.buffer.append(data)
        if session.attachment is not None and self.observer is not None:
            self.observer.session_output(session, session.attachment, data)

    def _on_exit(self, session: Session, exit_code: int | None, signal: int | None) -> None:
        if self._sessions.get(session.id) is not session:
            # Already removed by kill()
            return
        del self._sessions[session.id]
        connection_id = self._retire(session)
        logger.info(
            "Session %s exited: code=%s signal=%s", session.id, exit_code, signal
        )
        if self.observer is not None:
            self.observer.session_exited(session, connection_id, exit_code, signal)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _retire(self, session: Session) -> str | None:
        """Mark a removed session dead and clear its attachment."""
        connection_id = session.attachment
        session.alive = False
        session.attachment = None
        return connection_id

    def _new_id(self) -> str:
        return f"{(self._id_base + next(self._id_counter)) & ID_MASK:08x}"

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
