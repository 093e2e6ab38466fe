"""Tests for the attach/detach protocol (Broker + ConnectionHandler)."""

from __future__ import annotations

import pytest

from ptybroker.broker.broker import Broker
from ptybroker.config import BrokerConfig
from ptybroker.session.wire import Message


def events(handler) -> list[tuple[str, object]]:
    """Drain a connection's outbox into (event, data) pairs."""
    return [(str(m.event), m.data) for m in handler.outbox.drain()]


async def send(handler, event: str, data: object = None) -> None:
    await handler.handle(Message(event=event, data=data))


async def create(handler, name: str | None = None) -> str:
    await send(handler, "create-session", {"name": name} if name else {})
    created = [d for e, d in events(handler) if e == "session-created"]
    return created[-1]["id"]


# ---------------------------------------------------------------------------
# list / create
# ---------------------------------------------------------------------------


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_list_empty(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "list-sessions")
        assert events(conn) == [("sessions", [])]

    @pytest.mark.asyncio
    async def test_create_acks_attaches_and_broadcasts(self, broker) -> None:
        conn = broker.connect()
        other = broker.connect()
        await send(conn, "create-session", {"name": "work"})
        received = events(conn)
        assert [e for e, _ in received] == ["session-created", "attached", "sessions"]
        session_id = received[0][1]["id"]
        assert received[0][1] == {"id": session_id, "name": "work"}
        assert received[1][1] == {"id": session_id, "name": "work"}
        listing = received[2][1]
        assert listing[0]["id"] == session_id
        assert listing[0]["connected"] is True
        assert "createdAt" in listing[0]
        # Everyone gets the broadcast
        assert [e for e, _ in events(other)] == ["sessions"]
        assert conn.current_session_id == session_id

    @pytest.mark.asyncio
    async def test_create_without_payload(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "create-session")
        created = events(conn)[0]
        assert created[0] == "session-created"
        assert created[1]["name"] == "Shell 1"

    @pytest.mark.asyncio
    async def test_create_moves_creator_off_previous_session(self, broker) -> None:
        conn = broker.connect()
        first = await create(conn)
        second = await create(conn)
        assert conn.current_session_id == second
        assert broker.table.get(first).attachment is None

    @pytest.mark.asyncio
    async def test_capacity_error_names_limit(self, spawner) -> None:
        broker = Broker(BrokerConfig(max_sessions=1), spawner=spawner)
        conn = broker.connect()
        s1 = await create(conn)
        await send(conn, "create-session")
        assert events(conn) == [("error", "Max 1 sessions. Kill one first.")]
        await send(conn, "kill-session", s1)
        events(conn)
        await send(conn, "create-session")
        assert events(conn)[0][0] == "session-created"

    @pytest.mark.asyncio
    async def test_spawn_failure_reported(self, broker, spawner) -> None:
        conn = broker.connect()
        spawner.fail_next = True
        await send(conn, "create-session")
        assert events(conn) == [("error", "Failed to start shell: no pty devices left")]
        assert len(broker.table) == 0

    @pytest.mark.asyncio
    async def test_invalid_create_payload(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "create-session", {"name": 42})
        assert events(conn) == [("error", "Invalid create-session payload")]


# ---------------------------------------------------------------------------
# attach / takeover / replay
# ---------------------------------------------------------------------------


class TestAttach:
    @pytest.mark.asyncio
    async def test_attach_unknown(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "attach", "missing")
        assert events(conn) == [("error", "Session missing not found")]
        assert conn.current_session_id is None

    @pytest.mark.asyncio
    async def test_attach_unknown_keeps_current(self, broker) -> None:
        conn = broker.connect()
        session_id = await create(conn)
        await send(conn, "attach", "missing")
        assert conn.current_session_id == session_id

    @pytest.mark.asyncio
    async def test_invalid_attach_payload(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "attach", {"id": 1})
        assert events(conn) == [("error", "Invalid attach payload")]

    @pytest.mark.asyncio
    async def test_takeover_detaches_previous_first(self, broker) -> None:
        x = broker.connect()
        y = broker.connect()
        session_id = await create(x)
        events(y)
        await send(y, "attach", session_id)
        assert events(x) == [("detached", {"id": session_id})]
        assert events(y)[0] == ("attached", {"id": session_id, "name": "Shell 1"})
        assert x.current_session_id is None
        assert y.current_session_id == session_id

    @pytest.mark.asyncio
    async def test_reattach_replays_buffer_as_one_chunk(self, broker, spawner) -> None:
        conn = broker.connect()
        session_id = await create(conn)
        spawner.last.emit("A")
        spawner.last.emit("B")
        assert events(conn) == [("output", "A"), ("output", "B")]

        conn.disconnect()
        again = broker.connect()
        await send(again, "attach", session_id)
        spawner.last.emit("C")
        assert events(again) == [
            ("attached", {"id": session_id, "name": "Shell 1"}),
            ("output", "AB"),
            ("output", "C"),
        ]

    @pytest.mark.asyncio
    async def test_attach_with_empty_buffer_sends_no_output(self, broker) -> None:
        x = broker.connect()
        y = broker.connect()
        session_id = await create(x)
        await send(y, "attach", session_id)
        assert [e for e, _ in events(y)] == ["sessions", "attached"]

    @pytest.mark.asyncio
    async def test_replay_is_bounded_by_capacity(self, spawner) -> None:
        broker = Broker(BrokerConfig(scrollback_buffer_size=10), spawner=spawner)
        x = broker.connect()
        session_id = await create(x)
        spawner.last.emit("0123456789ABCDE")
        y = broker.connect()
        await send(y, "attach", session_id)
        assert events(y)[-1] == ("output", "56789ABCDE")

    @pytest.mark.asyncio
    async def test_output_only_to_attached_connection(self, broker, spawner) -> None:
        x = broker.connect()
        y = broker.connect()
        session_id = await create(x)
        await send(y, "attach", session_id)
        events(x)
        events(y)
        spawner.last.emit("hello")
        assert events(x) == []
        assert events(y) == [("output", "hello")]

    @pytest.mark.asyncio
    async def test_switching_sessions(self, broker, spawner) -> None:
        conn = broker.connect()
        first = await create(conn)
        first_process = spawner.last
        await create(conn)
        second_process = spawner.last
        await send(conn, "attach", first)
        events(conn)
        second_process.emit("from second")
        first_process.emit("from first")
        assert events(conn) == [("output", "from first")]


# ---------------------------------------------------------------------------
# input / resize
# ---------------------------------------------------------------------------


class TestInputResize:
    @pytest.mark.asyncio
    async def test_input_forwarded(self, broker, spawner) -> None:
        conn = broker.connect()
        await create(conn)
        await send(conn, "input", "ls\r")
        assert spawner.last.written == ["ls\r"]

    @pytest.mark.asyncio
    async def test_input_without_attachment_dropped(self, broker, spawner) -> None:
        conn = broker.connect()
        await send(conn, "input", "ls\r")
        assert events(conn) == []

    @pytest.mark.asyncio
    async def test_input_after_takeover_dropped(self, broker, spawner) -> None:
        x = broker.connect()
        y = broker.connect()
        session_id = await create(x)
        await send(y, "attach", session_id)
        events(x)
        await send(x, "input", "rm -rf build\r")
        await send(y, "input", "pwd\r")
        assert spawner.last.written == ["pwd\r"]
        assert events(x) == []

    @pytest.mark.asyncio
    async def test_non_string_input_dropped(self, broker, spawner) -> None:
        conn = broker.connect()
        await create(conn)
        await send(conn, "input", {"keys": "x"})
        assert spawner.last.written == []
        assert events(conn) == []

    @pytest.mark.asyncio
    async def test_resize_forwarded_and_clamped(self, broker, spawner) -> None:
        conn = broker.connect()
        await create(conn)
        await send(conn, "resize", {"cols": 120, "rows": 40})
        await send(conn, "resize", {"cols": 0, "rows": -3})
        assert spawner.last.sizes == [(120, 40), (1, 1)]

    @pytest.mark.asyncio
    async def test_resize_without_attachment_dropped(self, broker, spawner) -> None:
        conn = broker.connect()
        await send(conn, "resize", {"cols": 120, "rows": 40})
        assert events(conn) == []

    @pytest.mark.asyncio
    async def test_malformed_resize_dropped(self, broker, spawner) -> None:
        conn = broker.connect()
        await create(conn)
        await send(conn, "resize", {"cols": "wide"})
        assert spawner.last.sizes == []
        assert events(conn) == []


# ---------------------------------------------------------------------------
# kill / rename / exit / disconnect
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_kill_notifies_attached_and_broadcasts(self, broker, spawner) -> None:
        x = broker.connect()
        y = broker.connect()
        session_id = await create(x)
        events(x)
        events(y)
        await send(y, "kill-session", session_id)
        assert events(x) == [("detached", {"id": session_id}), ("sessions", [])]
        assert events(y) == [("sessions", [])]
        assert spawner.last.kill_calls == 1
        assert x.current_session_id is None

    @pytest.mark.asyncio
    async def test_kill_twice_single_removal(self, broker, spawner) -> None:
        conn = broker.connect()
        session_id = await create(conn)
        events(conn)
        await send(conn, "kill-session", session_id)
        await send(conn, "kill-session", session_id)
        assert events(conn) == [("detached", {"id": session_id}), ("sessions", [])]
        assert spawner.last.kill_calls == 1

    @pytest.mark.asyncio
    async def test_kill_unknown_is_silent(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "kill-session", "missing")
        assert events(conn) == []

    @pytest.mark.asyncio
    async def test_rename_broadcasts(self, broker) -> None:
        x = broker.connect()
        y = broker.connect()
        session_id = await create(x)
        events(y)
        await send(x, "rename-session", {"id": session_id, "name": "logs"})
        listing = events(y)
        assert listing[0][0] == "sessions"
        assert listing[0][1][0]["name"] == "logs"

    @pytest.mark.asyncio
    async def test_rename_unknown_is_silent(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "rename-session", {"id": "missing", "name": "x"})
        assert events(conn) == []

    @pytest.mark.asyncio
    async def test_rename_to_empty_name(self, broker) -> None:
        conn = broker.connect()
        session_id = await create(conn, "logs")
        events(conn)
        await send(conn, "rename-session", {"id": session_id, "name": ""})
        [(event, listing)] = events(conn)
        assert event == "sessions"
        assert listing[0]["name"] == ""

    @pytest.mark.asyncio
    async def test_rename_invalid_payload(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "rename-session", "logs")
        assert events(conn) == [("error", "Invalid rename-session payload")]

    @pytest.mark.asyncio
    async def test_process_exit_notifies_and_broadcasts(self, broker, spawner) -> None:
        x = broker.connect()
        y = broker.connect()
        session_id = await create(x)
        events(x)
        events(y)
        spawner.last.exit(130)
        assert events(x) == [
            ("session-exited", {"id": session_id, "exitCode": 130, "signal": None}),
            ("sessions", []),
        ]
        assert events(y) == [("sessions", [])]
        assert len(broker.table) == 0

    @pytest.mark.asyncio
    async def test_output_before_exit_delivered_first(self, broker, spawner) -> None:
        conn = broker.connect()
        await create(conn)
        events(conn)
        spawner.last.emit("logout\r\n")
        spawner.last.exit(0)
        assert [e for e, _ in events(conn)] == ["output", "session-exited", "sessions"]

    @pytest.mark.asyncio
    async def test_disconnect_preserves_session(self, broker, spawner) -> None:
        conn = broker.connect()
        session_id = await create(conn)
        conn.disconnect()
        assert conn.outbox.closed
        session = broker.table.get(session_id)
        assert session.alive
        assert session.attachment is None
        assert spawner.last.kill_calls == 0
        spawner.last.emit("still running")
        assert session.buffer.contents() == "still running"

    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, broker) -> None:
        conn = broker.connect()
        conn.disconnect()
        conn.disconnect()
        assert broker.connection_count == 0

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, broker) -> None:
        conn = broker.connect()
        await send(conn, "reboot")
        assert events(conn) == []

    @pytest.mark.asyncio
    async def test_shutdown_kills_sessions_and_closes_connections(
        self, broker, spawner
    ) -> None:
        conn = broker.connect()
        await create(conn)
        await broker.shutdown()
        assert len(broker.table) == 0
        assert spawner.last.kill_calls == 1
        assert conn.outbox.closed


# ---------------------------------------------------------------------------
# slow clients
# ---------------------------------------------------------------------------


class TestSlowClient:
    @pytest.mark.asyncio
    async def test_full_outbox_drops_connection(self, spawner) -> None:
        broker = Broker(BrokerConfig(outbox_size=8, cwd="/tmp"), spawner=spawner)
        conn = broker.connect()
        session_id = await create(conn)
        for i in range(1000):
            spawner.last.emit(f"line {i}\r\n")

        assert conn.outbox.overflowed
        assert conn.outbox.closed
        assert conn.outbox.drain() == []
        assert broker.connection_count == 0
        session = broker.table.get(session_id)
        assert session.alive
        assert session.attachment is None
        assert spawner.last.kill_calls == 0
        assert session.buffer.contents().endswith("line 999\r\n")

    @pytest.mark.asyncio
    async def test_other_connections_unaffected(self, spawner) -> None:
        broker = Broker(BrokerConfig(outbox_size=4, cwd="/tmp"), spawner=spawner)
        slow = broker.connect()
        fast = broker.connect()
        for _ in range(5):
            await send(slow, "list-sessions")
        assert slow.outbox.overflowed
        assert broker.connection_count == 1
        await send(fast, "list-sessions")
        assert events(fast) == [("sessions", [])]

    @pytest.mark.asyncio
    async def test_dropped_connection_cannot_attach(self, broker) -> None:
        conn = broker.connect()
        conn.disconnect()
        await send(conn, "create-session", {"name": "late"})
        assert len(broker.table) == 0
        assert events(conn) == []
