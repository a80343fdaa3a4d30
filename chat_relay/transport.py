import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .protocol import make_envelope, parse_envelope

HEARTBEAT_INTERVAL = 20
HEARTBEAT_TIMEOUT = 20


class ClientConnection:
    def __init__(self, ws, connection_id: str):
        self.ws = ws
        self.connection_id = connection_id
        self.alive = True

    async def send(self, raw: str) -> bool:
        if not self.alive:
            return False
        try:
            await self.ws.send(raw)
            return True
        except ConnectionClosed:
            self.alive = False
            logging.info("Send to closed connection %s skipped", self.connection_id)
        except Exception as e:
            logging.warning("Failed to send to %s: %s", self.connection_id, e)
        return False


class WebSocketTransport:
    """Owns the live websocket table and feeds frames to an event handler.

    The handler is any object with ``on_open``, ``on_event`` and ``on_close``
    coroutines. Frames from one connection are handled one at a time, in the
    order they arrive.
    """

    def __init__(self, handler=None):
        self.handler = handler
        self.connections: Dict[str, ClientConnection] = {}
        self._server = None

    def bind(self, handler):
        self.handler = handler

    def new_connection_id(self) -> str:
        return uuid.uuid4().hex

    async def handle_connection(self, ws, path: Optional[str] = None):
        conn = ClientConnection(ws, self.new_connection_id())
        self.connections[conn.connection_id] = conn
        await self.handler.on_open(conn.connection_id)
        try:
            async for raw in ws:
                frame = parse_envelope(raw)
                if frame is None:
                    logging.warning("Dropping non-JSON frame from %s", conn.connection_id)
                    continue
                await self.handler.on_event(conn.connection_id, frame["type"], frame.get("payload"))
        except ConnectionClosed:
            logging.info("Connection closed: %s", conn.connection_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logging.exception("Error in receive loop for %s: %s", conn.connection_id, e)
        finally:
            conn.alive = False
            self.connections.pop(conn.connection_id, None)
            await self.handler.on_close(conn.connection_id)

    # ---- Outbound ----
    async def emit_to(self, connection_id: str, event: str, payload: Any) -> bool:
        conn = self.connections.get(connection_id)
        if conn is None:
            logging.debug("emit_to unknown connection %s (%s)", connection_id, event)
            return False
        return await conn.send(make_envelope(event, payload, to_id=connection_id))

    async def emit_all(self, event: str, payload: Any) -> int:
        raw = make_envelope(event, payload)
        delivered = 0
        for conn in list(self.connections.values()):
            if await conn.send(raw):
                delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self.connections)

    # ---- Server lifecycle ----
    async def serve(self, host: str, port: int, origins: Optional[List[str]] = None,
                    ping_interval: Optional[float] = HEARTBEAT_INTERVAL,
                    ping_timeout: Optional[float] = HEARTBEAT_TIMEOUT):
        self._server = await websockets.serve(
            self.handle_connection,
            host,
            port,
            origins=origins or None,
            ping_interval=ping_interval,
            ping_timeout=ping_timeout,
        )
        logging.info("[SERVER] Chat server listening on ws://%s:%s", host, port)
        return self._server

    async def close(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
