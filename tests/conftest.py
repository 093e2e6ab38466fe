"""Shared fixtures: an in-memory stand-in for the PTY process."""

from __future__ import annotations

import asyncio
import signal
from typing import Any

import pytest

from ptybroker.broker.broker import Broker
from ptybroker.broker.table import SessionTable
from ptybroker.config import BrokerConfig
from ptybroker.errors import ProcessSpawnFailure


class FakeProcess:
    """Records input/resizes and lets tests drive output and exit by hand."""

    def __init__(
        self,
        command: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        cols: int = 80,
        rows: int = 24,
        on_data: Any = None,
        on_exit: Any = None,
        fail: bool = False,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self._on_data = on_data
        self._on_exit = on_exit
        self._fail = fail
        self.alive = False
        self.exited = False
        self.written: list[str] = []
        self.sizes: list[tuple[int, int]] = []
        self.kill_calls = 0

    async def spawn(self) -> None:
        # Yield like a real spawn so concurrent creates interleave
        await asyncio.sleep(0)
        if self._fail:
            raise ProcessSpawnFailure("no pty devices left")
        self.alive = True

    def write(self, data: str) -> None:
        if self.alive:
            self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        if self.alive:
            self.sizes.append((cols, rows))

    def kill(self) -> None:
        self.kill_calls += 1
        if self.alive:
            self.exit(None, signal.SIGHUP)

    def emit(self, text: str) -> None:
        self._on_data(text)

    def exit(self, exit_code: int | None = 0, sig: int | None = None) -> None:
        if self.exited:
            return
        self.alive = False
        self.exited = True
        self._on_exit(exit_code, sig)

    async def wait(self) -> None:
        return None


class FakeSpawner:
    """Spawner for SessionTable that keeps every process it made."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.fail_next = False

    def __call__(self, command: list[str], **kwargs: Any) -> FakeProcess:
        process = FakeProcess(command, fail=self.fail_next, **kwargs)
        self.fail_next = False
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def config() -> BrokerConfig:
    return BrokerConfig(max_sessions=5, scrollback_buffer_size=100, cwd="/tmp")


@pytest.fixture
def table(config: BrokerConfig, spawner: FakeSpawner) -> SessionTable:
    return SessionTable(config, spawner=spawner)


@pytest.fixture
def broker(config: BrokerConfig, spawner: FakeSpawner) -> Broker:
    return Broker(config, spawner=spawner)
