"""WebSocket fan-out of runtime events to local UI clients."""

import asyncio
import json
import logging
from typing import Callable

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Beats arrive several times a second; everything else is worth logging.
QUIET_EVENTS = {"beat", "heart_rate"}

SEND_TIMEOUT = 1.0  # a client slower than this misses the event and is dropped


class ConnectionManager:
    """
    Tracks connected UI clients and pushes runtime events to them.

    Every client first receives a ``state`` event with the current runtime
    snapshot, then a numbered stream of events. Clients that only render
    state changes can opt out of per-beat traffic when connecting.
    """

    def __init__(self, snapshot: Callable[[], dict] | None = None) -> None:
        self._snapshot = snapshot
        self._clients: list[tuple[WebSocket, bool]] = []  # (socket, wants beats)
        self._lock = asyncio.Lock()
        self._sequence = 0

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    def _envelope(self, event: str, data: dict) -> str:
        self._sequence += 1
        return json.dumps({"event": event, "seq": self._sequence, "data": data})

    async def connect(self, websocket: WebSocket, beats: bool = True) -> None:
        await websocket.accept()
        if self._snapshot is not None:
            await websocket.send_text(self._envelope("state", self._snapshot()))
        async with self._lock:
            self._clients.append((websocket, beats))
        logger.info(f"UI client connected (beats={beats}). Total: {len(self._clients)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients = [c for c in self._clients if c[0] is not websocket]
        logger.info(f"UI client disconnected. Total: {len(self._clients)}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Send one event to every interested client; drop the ones that fail."""
        async with self._lock:
            targets = [ws for ws, beats in self._clients if beats or event != "beat"]
        if not targets:
            return
        message = self._envelope(event, data)
        results = await asyncio.gather(
            *(self._send(ws, message) for ws in targets), return_exceptions=True
        )
        dead = [ws for ws, ok in zip(targets, results) if ok is not True]
        if dead:
            async with self._lock:
                self._clients = [c for c in self._clients if all(c[0] is not ws for ws in dead)]

    async def _send(self, websocket: WebSocket, message: str) -> bool:
        try:
            await asyncio.wait_for(websocket.send_text(message), timeout=SEND_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Dropping UI client: send timed out")
            return False
        except Exception as e:
            logger.debug(f"Dropping UI client: {e}")
            return False
        return True

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event handler compatible with DeviceRuntime.on_event()."""
        if event_type not in QUIET_EVENTS:
            logger.debug(f"Event {event_type}: {data}")
        await self.broadcast(event_type, data)
