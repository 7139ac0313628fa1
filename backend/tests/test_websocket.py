"""Tests for the UI event fan-out."""

import asyncio
import json

import pytest

from api import websocket as ws_module
from api.websocket import ConnectionManager


class FakeSocket:
    """Stands in for a FastAPI WebSocket; records what was sent."""

    def __init__(self, fail=False, delay=0.0):
        self.accepted = False
        self.sent = []
        self._fail = fail
        self._delay = delay

    async def accept(self):
        self.accepted = True

    async def send_text(self, message):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(message))

    def events(self):
        return [m["event"] for m in self.sent]


@pytest.mark.asyncio
async def test_connect_sends_state_snapshot_first():
    manager = ConnectionManager(snapshot=lambda: {"mode": {"kind": "solo"}})
    client = FakeSocket()
    await manager.connect(client)

    assert client.accepted
    assert client.sent == [{"event": "state", "seq": 1, "data": {"mode": {"kind": "solo"}}}]

    await manager.handle_event("mode_changed", {"kind": "paired"})
    assert client.events() == ["state", "mode_changed"]
    assert client.sent[1]["seq"] == 2


@pytest.mark.asyncio
async def test_clients_can_opt_out_of_beats():
    manager = ConnectionManager()
    everything = FakeSocket()
    quiet = FakeSocket()
    await manager.connect(everything)
    await manager.connect(quiet, beats=False)

    await manager.handle_event("beat", {"phase": "primary"})
    await manager.handle_event("heart_rate", {"rate": 70})

    assert everything.events() == ["beat", "heart_rate"]
    assert quiet.events() == ["heart_rate"]


@pytest.mark.asyncio
async def test_failing_and_slow_clients_are_dropped(monkeypatch):
    monkeypatch.setattr(ws_module, "SEND_TIMEOUT", 0.05)
    manager = ConnectionManager()
    healthy = FakeSocket()
    await manager.connect(healthy)
    await manager.connect(FakeSocket(fail=True))
    await manager.connect(FakeSocket(delay=1.0))
    assert manager.connection_count == 3

    await manager.broadcast("peer_state_changed", {"state": "terminated"})

    assert manager.connection_count == 1
    assert healthy.events() == ["peer_state_changed"]

    await manager.disconnect(healthy)
    assert manager.connection_count == 0
