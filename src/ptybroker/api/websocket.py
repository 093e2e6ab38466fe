"""WebSocket transport: exposes the broker to terminal clients.

One websocket is one connection. Inbound frames are JSON objects
``{"event": ..., "data": ...}`` dispatched to the connection's handler;
outbound messages are pumped from its ``Outbox`` by a writer task so the
broker never waits on a slow client.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import (
    APIRouter,
    FastAPI,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from ptybroker.broker.broker import Broker
from ptybroker.broker.handler import ConnectionHandler
from ptybroker.broker.table import Spawner
from ptybroker.config import BrokerConfig
from ptybroker.pty.process import PTYProcess
from ptybroker.session.wire import Message

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/health")
async def health(request: Request) -> dict:
    broker: Broker = request.app.state.broker
    return {"ok": True, "sessions": len(broker.table)}


async def _pump_outbox(websocket: WebSocket, handler: ConnectionHandler) -> None:
    """Forward queued messages to the client until the outbox closes."""
    while True:
        message = await handler.outbox.get()
        if message is None:
            break
        try:
            await websocket.send_json(message.to_dict())
        except Exception as e:
            # Client is gone; the receive loop sees the disconnect.
            logger.debug("Send to %s failed: %s", handler.connection_id, e)
            break
    if handler.outbox.overflowed:
        try:
            await websocket.close(
                code=status.WS_1008_POLICY_VIOLATION, reason="Client too slow"
            )
        except Exception as e:
            logger.debug("Close of %s failed: %s", handler.connection_id, e)


async def terminal_ws(websocket: WebSocket) -> None:
    """Serve one terminal client for the lifetime of its websocket."""
    broker: Broker = websocket.app.state.broker
    await websocket.accept()
    handler = broker.connect()
    writer = asyncio.create_task(_pump_outbox(websocket, handler))

    try:
        while True:
            frame = await websocket.receive_json()
            try:
                message = Message.from_dict(frame)
            except ValueError as e:
                handler.outbox.send_error(str(e))
                continue
            await handler.handle(message)
            if handler.outbox.closed:
                break
    except WebSocketDisconnect:
        pass
    except (ValueError, KeyError) as e:
        # receive_json() on a non-JSON or binary frame
        logger.warning("Dropping connection %s: %s", handler.connection_id, e)
    finally:
        handler.disconnect()
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass


def create_app(
    config: BrokerConfig | None = None, spawner: Spawner = PTYProcess
) -> FastAPI:
    """Build the FastAPI app serving the broker.

    The broker lives exactly as long as the app: it is created on startup
    and every session is killed on shutdown.
    """
    config = config or BrokerConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.broker = Broker(config, spawner=spawner)
        logger.info(
            "Broker ready: max_sessions=%d scrollback=%d shell=%s",
            config.max_sessions,
            config.scrollback_buffer_size,
            " ".join(config.command),
        )
        try:
            yield
        finally:
            await app.state.broker.shutdown()

    app = FastAPI(title="ptybroker", lifespan=lifespan)
    app.include_router(router)
    app.add_api_websocket_route(config.ws_path, terminal_ws)
    return app
