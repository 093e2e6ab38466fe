"""PTY process: one interactive shell bound to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import Callable

from ptybroker.errors import ProcessSpawnFailure

logger = logging.getLogger(__name__)

READ_CHUNK = 65536
KILL_GRACE_SECONDS = 2.0

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None, int | None], None]


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY process."""

    PENDING = "pending"  # Constructed, spawn() not called yet
    RUNNING = "running"
    KILLING = "killing"  # Hangup sent, waiting for the reaper
    EXITED = "exited"


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PTYProcess:
    """A shell process attached to a pseudo-terminal.

    Output is read from the non-blocking master fd by an event-loop reader
    and handed to ``on_data`` as decoded text, chunk by chunk, in the order
    the process wrote it. A reaper task waits for the process; once it is
    gone, any output still sitting in the pty is drained through
    ``on_data`` and then ``on_exit(exit_code, signal)`` fires exactly once.

    ``write``, ``resize`` and ``kill`` never raise: a process that has
    already exited simply ignores them.
    """

    def __init__(
        self,
        command: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        cols: int = 80,
        rows: int = 24,
        on_data: DataCallback | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self.command = list(command)
        self.cwd = cwd or os.getcwd()
        self.env = dict(env or {})
        self.cols = max(cols, 1)
        self.rows = max(rows, 1)
        self._on_data = on_data
        self._on_exit = on_exit

        self._status = PTYStatus.PENDING
        self._proc: asyncio.subprocess.Process | None = None
        self._master_fd: int = -1
        self._pgid: int = 0
        self._reading = False
        self._pending_input = bytearray()
        self._writer_registered = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reaper: asyncio.Task | None = None
        self._kill_timer: asyncio.TimerHandle | None = None

    async def spawn(self) -> None:
        """Start the process in a new pty with its own session.

        Raises:
            ProcessSpawnFailure: the pty could not be opened or the command
                could not be executed. Nothing is left open in that case.
        """
        if self._status is not PTYStatus.PENDING:
            raise RuntimeError("PTY process already spawned")

        env = {
            **os.environ,
            **self.env,
            "TERM": "xterm-256color",
            "COLORTERM": "truecolor",
        }

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise ProcessSpawnFailure(str(e)) from e

        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise ProcessSpawnFailure(str(e)) from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        os.set_blocking(master_fd, False)
        try:
            self._pgid = os.getpgid(self._proc.pid)
        except ProcessLookupError:
            self._pgid = self._proc.pid
        self._status = PTYStatus.RUNNING

        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._reaper = self._loop.create_task(self._reap())

        logger.info(
            "PTY started: pid=%d cols=%d rows=%d cmd=%s",
            self._proc.pid,
            self.cols,
            self.rows,
            " ".join(self.command),
        )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave fd is closed; the reaper finishes up.
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._emit(self._decoder.decode(data))

    def _drain(self) -> None:
        """Read whatever output is still buffered in the pty."""
        while True:
            try:
                data = os.read(self._master_fd, READ_CHUNK)
            except OSError:
                break
            if not data:
                break
            self._emit(self._decoder.decode(data))
        self._emit(self._decoder.decode(b"", final=True))

    def _emit(self, text: str) -> None:
        if not text or self._on_data is None:
            return
        try:
            self._on_data(text)
        except Exception:
            logger.exception("Error in on_data callback for pid %s", self.pid)

    def _stop_reading(self) -> None:
        if not self._reading:
            return
        self._reading = False
        self._loop.remove_reader(self._master_fd)

    async def _reap(self) -> None:
        assert self._proc is not None
        returncode = await self._proc.wait()

        self._stop_reading()
        self._stop_writing()
        self._drain()
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None
        self._status = PTYStatus.EXITED

        if returncode >= 0:
            exit_code, sig = returncode, None
        else:
            exit_code, sig = None, -returncode
        logger.info("PTY exited: pid=%d code=%s signal=%s", self.pid, exit_code, sig)

        if self._on_exit:
            try:
                self._on_exit(exit_code, sig)
            except Exception:
                logger.exception("Error in on_exit callback for pid %s", self.pid)

    # ------------------------------------------------------------------
    # Input and control
    # ------------------------------------------------------------------

    def write(self, data: str) -> None:
        """Queue input for the process. No-op once the process is gone."""
        if self._status is not PTYStatus.RUNNING or not data:
            return
        self._pending_input += data.encode("utf-8", errors="replace")
        self._flush_input()

    def _flush_input(self) -> None:
        while self._pending_input:
            try:
                written = os.write(self._master_fd, self._pending_input)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug("PTY write failed (pid %s): %s", self.pid, e)
                self._pending_input.clear()
                break
            del self._pending_input[:written]

        if self._pending_input and not self._writer_registered:
            self._loop.add_writer(self._master_fd, self._flush_input)
            self._writer_registered = True
        elif not self._pending_input:
            self._stop_writing()

    def _stop_writing(self) -> None:
        if not self._writer_registered:
            return
        self._writer_registered = False
        self._loop.remove_writer(self._master_fd)

    def resize(self, cols: int, rows: int) -> None:
        """Set the terminal size, clamped to at least 1x1."""
        cols = max(int(cols), 1)
        rows = max(int(rows), 1)
        if self._status is not PTYStatus.RUNNING:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except (OSError, struct.error) as e:
            logger.debug("PTY resize to %dx%d failed (pid %s): %s", cols, rows, self.pid, e)
            return
        self.cols, self.rows = cols, rows

    def kill(self) -> None:
        """Hang up the process group, escalating to SIGKILL after a grace period.

        Idempotent: killing a process that is already dying or gone does
        nothing.
        """
        if self._status is not PTYStatus.RUNNING:
            return
        self._status = PTYStatus.KILLING
        self._pending_input.clear()
        self._stop_writing()
        self._signal_group(signal.SIGHUP)
        self._kill_timer = self._loop.call_later(
            KILL_GRACE_SECONDS, self._signal_group, signal.SIGKILL
        )

    def _signal_group(self, sig: int) -> None:
        if self._status is PTYStatus.EXITED:
            return
        try:
            os.killpg(self._pgid, sig)
            logger.debug("Sent %s to pgid %d", signal.Signals(sig).name, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error signalling pgid %d: %s", self._pgid, e)

    async def wait(self) -> None:
        """Wait until the process has exited and ``on_exit`` has fired."""
        if self._reaper is not None:
            await asyncio.shield(self._reaper)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def alive(self) -> bool:
        return self._status is PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status
