"""Session: one managed shell process and its scrollback."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol

from ptybroker.pty.buffer import RingBuffer
from ptybroker.session.wire import SessionInfo


class ShellProcess(Protocol):
    """What a session needs from its process (``PTYProcess`` or a test double)."""

    async def spawn(self) -> None: ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> None: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class Session:
    """A shell process owned by the broker, independent of any connection.

    ``attachment`` is the id of the connection currently receiving output,
    or ``None``. It is the only record of the connection <-> session
    relation; only ``SessionTable`` assigns it.
    """

    id: str
    name: str
    buffer: RingBuffer
    process: ShellProcess | None = None
    attachment: str | None = None
    alive: bool = True
    created_at: int = field(default_factory=_now_ms)

    @property
    def connected(self) -> bool:
        return self.attachment is not None

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            name=self.name,
            connected=self.connected,
            created_at=self.created_at,
        )
