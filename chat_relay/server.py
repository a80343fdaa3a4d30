import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .database import StorageError
from .event_types import (
    ClientEventType,
    ServerEventType,
    SEND_FAILED_TEXT,
    SYSTEM_SENDER_ID,
)
from .tables import PresenceRegistry, RegistryChange


class ValidationError(ValueError):
    """Inbound payload is malformed; the event is dropped."""


class ConnectionStatus(Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    CLOSED = "closed"


@dataclass
class ConnectionState:
    connection_id: str
    status: ConnectionStatus = ConnectionStatus.UNREGISTERED
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Message:
    sender_id: str
    text: str
    timestamp: int
    id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "senderId": self.sender_id,
            "text": self.text,
            "timestamp": self.timestamp,
        }
        if self.id is not None:
            payload["id"] = self.id
        return payload


def current_time_millis() -> int:
    return int(time.time() * 1000)


class BroadcastHandler:
    """Per-connection event dispatch plus the persist-then-broadcast pipeline.

    ``transport`` must provide coroutines ``emit_to(connection_id, event, payload)``
    and ``emit_all(event, payload)``. ``message_log`` must provide a coroutine
    ``append(message) -> id`` that raises StorageError on failure.

    Registry mutations never await, so each one completes inside a single
    event-loop turn.
    """

    def __init__(self, registry: PresenceRegistry, message_log, transport, clock: Callable[[], int] = current_time_millis):
        self.registry = registry
        self.message_log = message_log
        self.transport = transport
        self.clock = clock
        self.connections: Dict[str, ConnectionState] = {}
        self._last_timestamp = 0

    # ---- Transport callbacks ----
    async def on_open(self, connection_id: str):
        self.connections[connection_id] = ConnectionState(connection_id)
        logging.info("[CONNECTION] New connection: %s | Total online: %s", connection_id, len(self.registry))

    async def on_event(self, connection_id: str, name: str, payload: Any):
        try:
            if name == ClientEventType.REGISTER:
                await self.handle_register(connection_id, payload)
            elif name == ClientEventType.SEND_MESSAGE:
                if not isinstance(payload, dict):
                    await self.reject(connection_id, name, "payload is not an object")
                    return
                await self.handle_send_message(connection_id, payload.get("senderId"), payload.get("text"))
            else:
                logging.info("Unknown event %r from %s; dropping", name, connection_id)
        except Exception:
            logging.exception("[ERROR] Error handling %s from %s", name, connection_id)

    async def on_close(self, connection_id: str):
        state = self.connections.pop(connection_id, None)
        if state is not None:
            state.status = ConnectionStatus.CLOSED
        try:
            await self.handle_disconnect(connection_id)
        except Exception:
            logging.exception("[ERROR] Error handling disconnect of %s", connection_id)

    # ---- Operations ----
    async def handle_register(self, connection_id: str, user_id: Any) -> Optional[RegistryChange]:
        try:
            validate_user_id(user_id)
        except ValidationError as e:
            await self.reject(connection_id, ClientEventType.REGISTER, str(e))
            return None

        previous = self.registry.connection_for(user_id)
        change = self.registry.register(user_id, connection_id)
        if change.reconnect:
            logging.info("[RECONNECT] User %s reconnected with new connection %s (was %s)", user_id, connection_id, previous)
        else:
            logging.info("[REGISTER] User registered: %s on %s", change.user_id, connection_id)

        state = self.connections.get(connection_id)
        if state is not None:
            state.status = ConnectionStatus.REGISTERED
            state.user_id = user_id
        logging.info("[STATUS] Total online users: %s", len(change.roster))
        await self.transport.emit_all(ServerEventType.ROSTER_UPDATE, change.to_payload())
        return change

    async def handle_send_message(self, connection_id: str, sender_id: Any, text: Any) -> Optional[Message]:
        try:
            validate_message(sender_id, text)
        except ValidationError as e:
            await self.reject(connection_id, ClientEventType.SEND_MESSAGE, str(e))
            return None

        state = self.connections.get(connection_id)
        if state is not None and state.status is ConnectionStatus.UNREGISTERED:
            logging.info("Message from unregistered connection %s accepted", connection_id)

        message = Message(sender_id=sender_id, text=text, timestamp=self.admission_timestamp())
        logging.info('[MESSAGE] From %s: "%s"', sender_id, text[:50])

        try:
            message_id = await self.message_log.append(message)
        except StorageError as e:
            logging.error("[ERROR] Error saving message from %s: %s", sender_id, e)
            failure = Message(
                sender_id=SYSTEM_SENDER_ID,
                text=SEND_FAILED_TEXT,
                timestamp=self.clock(),
            )
            await self.transport.emit_to(connection_id, ServerEventType.MESSAGE_BROADCAST, failure.to_payload())
            return None

        stored = replace(message, id=message_id)
        logging.info("[STORE] Message saved with ID: %s", message_id)
        await self.transport.emit_all(ServerEventType.MESSAGE_BROADCAST, stored.to_payload())
        logging.info("[BROADCAST] Message sent to all %s online users", len(self.registry))
        return stored

    async def handle_disconnect(self, connection_id: str) -> RegistryChange:
        change = self.registry.remove(connection_id)
        if change.changed:
            logging.info("[DISCONNECT] User disconnected: %s (%s)", change.user_id, connection_id)
        else:
            logging.info("[DISCONNECT] Unregistered connection closed: %s", connection_id)
        logging.info("[STATUS] Total online users: %s", len(change.roster))
        # sent even when nothing changed so every roster converges
        await self.transport.emit_all(ServerEventType.ROSTER_UPDATE, change.to_payload())
        return change

    async def reject(self, connection_id: str, event: str, reason: str):
        """Drop policy for malformed events: logged only, the client hears nothing."""
        logging.warning("[WARNING] Dropping %s from %s: %s", event, connection_id, reason)

    # ---- Helpers ----
    def admission_timestamp(self) -> int:
        # never goes backwards, even if the wall clock does
        ts = max(self.clock(), self._last_timestamp)
        self._last_timestamp = ts
        return ts

    def connection_state(self, connection_id: str) -> Optional[ConnectionState]:
        return self.connections.get(connection_id)


def validate_user_id(user_id: Any):
    if not isinstance(user_id, str):
        raise ValidationError("userId must be a string")
    if not user_id.strip():
        raise ValidationError("userId is empty")


def validate_message(sender_id: Any, text: Any):
    if not isinstance(sender_id, str) or not sender_id:
        raise ValidationError("senderId is missing")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("text is empty")
