from __future__ import annotations

import asyncio
from typing import Any

import pytest

from chat_relay.database import StorageError
from chat_relay.server import BroadcastHandler
from chat_relay.tables import PresenceRegistry


class FakeTransport:
    """Records emits; tracks which connections are open."""

    def __init__(self) -> None:
        self.open: list[str] = []
        self.sent: list[tuple[str, str, Any]] = []  # (target, event, payload)

    def connect(self, connection_id: str) -> None:
        self.open.append(connection_id)

    def disconnect(self, connection_id: str) -> None:
        self.open.remove(connection_id)

    async def emit_to(self, connection_id: str, event: str, payload: Any) -> bool:
        if connection_id not in self.open:
            return False
        self.sent.append((connection_id, event, payload))
        return True

    async def emit_all(self, event: str, payload: Any) -> int:
        for connection_id in self.open:
            self.sent.append((connection_id, event, payload))
        return len(self.open)

    def received(self, connection_id: str, event: str | None = None) -> list[Any]:
        return [p for target, e, p in self.sent if target == connection_id and (event is None or e == event)]


class FakeMessageLog:
    def __init__(self) -> None:
        self.appended: list[Any] = []
        self.fail = False
        self.gate: asyncio.Event | None = None

    async def append(self, message: Any) -> str:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise StorageError("store unreachable")
        self.appended.append(message)
        return f"msg-{len(self.appended)}"


@pytest.fixture
def registry() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def message_log() -> FakeMessageLog:
    return FakeMessageLog()


@pytest.fixture
def handler(registry, message_log, transport) -> BroadcastHandler:
    return BroadcastHandler(registry, message_log, transport)
