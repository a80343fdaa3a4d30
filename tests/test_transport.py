from __future__ import annotations

import asyncio
import json
from typing import Any

from websockets.exceptions import ConnectionClosed

from chat_relay.server import BroadcastHandler
from chat_relay.tables import PresenceRegistry
from chat_relay.transport import WebSocketTransport


class FakeWebSocket:
    def __init__(self, frames: list[str], fail_send: bool = False) -> None:
        self._frames = list(frames)
        self.sent: list[dict[str, Any]] = []
        self.fail_send = fail_send
        self.release = asyncio.Event()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self._frames:
            return self._frames.pop(0)
        await self.release.wait()
        raise StopAsyncIteration

    async def send(self, raw: str) -> None:
        if self.fail_send:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(raw))


class RecordingHandler:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def on_open(self, connection_id):
        self.calls.append(("open", connection_id))

    async def on_event(self, connection_id, name, payload):
        self.calls.append(("event", connection_id, name, payload))

    async def on_close(self, connection_id):
        self.calls.append(("close", connection_id))


def test_frames_are_dispatched_in_order_between_open_and_close():
    handler = RecordingHandler()
    transport = WebSocketTransport(handler)
    ws = FakeWebSocket([
        json.dumps({"type": "newUser", "payload": "alice"}),
        "garbage",
        json.dumps({"type": "sendMessage", "payload": {"senderId": "alice", "text": "hi"}}),
    ])
    ws.release.set()

    asyncio.run(transport.handle_connection(ws))

    (open_call, *events, close_call) = handler.calls
    connection_id = open_call[1]
    assert open_call == ("open", connection_id)
    assert events == [
        ("event", connection_id, "newUser", "alice"),
        ("event", connection_id, "sendMessage", {"senderId": "alice", "text": "hi"}),
    ]
    assert close_call == ("close", connection_id)
    assert len(transport) == 0


def test_emit_all_skips_broken_connection():
    async def scenario():
        transport = WebSocketTransport(RecordingHandler())
        good, bad = FakeWebSocket([]), FakeWebSocket([], fail_send=True)
        tasks = [asyncio.create_task(transport.handle_connection(ws)) for ws in (good, bad)]
        await asyncio.sleep(0)
        delivered = await transport.emit_all("usersOnline", [])
        good.release.set()
        bad.release.set()
        await asyncio.gather(*tasks)
        return good, delivered

    good, delivered = asyncio.run(scenario())

    assert delivered == 1
    assert good.sent[0]["type"] == "usersOnline"


def test_emit_to_unknown_connection_is_noop():
    transport = WebSocketTransport(RecordingHandler())

    assert asyncio.run(transport.emit_to("nobody", "newMessage", {})) is False


def test_full_pipeline_over_transport(tmp_path):
    from chat_relay.database import MessageLog

    async def scenario():
        registry = PresenceRegistry()
        transport = WebSocketTransport()
        transport.bind(BroadcastHandler(registry, MessageLog(str(tmp_path / "chat.db")), transport))
        alice = FakeWebSocket([json.dumps({"type": "newUser", "payload": "alice"})])
        bob = FakeWebSocket([json.dumps({"type": "newUser", "payload": "bob"})])
        alice_task = asyncio.create_task(transport.handle_connection(alice))
        await asyncio.sleep(0)
        bob_task = asyncio.create_task(transport.handle_connection(bob))
        await asyncio.sleep(0)

        alice_id = registry.connection_for("alice")
        await transport.handler.on_event(alice_id, "sendMessage", {"senderId": "alice", "text": "hi"})

        alice.release.set()
        await alice_task
        bob.release.set()
        await bob_task
        return alice, bob

    alice, bob = asyncio.run(scenario())

    bob_types = [frame["type"] for frame in bob.sent]
    assert bob_types == ["usersOnline", "newMessage", "usersOnline"]
    message = bob.sent[1]["payload"]
    assert message["senderId"] == "alice" and message["text"] == "hi" and message["id"]
    assert bob.sent[2]["payload"] == [{"connectionId": bob.sent[0]["payload"][1]["connectionId"], "userId": "bob"}]
    assert alice.sent[0]["payload"] == [{"connectionId": alice.sent[0]["payload"][0]["connectionId"], "userId": "alice"}]


def test_deeply_nested_frame_does_not_end_the_connection():
    handler = RecordingHandler()
    transport = WebSocketTransport(handler)
    ws = FakeWebSocket(["[" * 200000, json.dumps({"type": "newUser", "payload": "alice"})])
    ws.release.set()

    asyncio.run(transport.handle_connection(ws))

    connection_id = handler.calls[0][1]
    assert handler.calls == [
        ("open", connection_id),
        ("event", connection_id, "newUser", "alice"),
        ("close", connection_id),
    ]
