"""Fire-and-forget delivery of signaling events to connected clients."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..schemas.auth import Identity
from ..schemas.signaling import SignalEvent

SendCallable = Callable[[dict], Awaitable[None]]

OUTBOX_LIMIT = 256

logger = logging.getLogger(__name__)


@dataclass(eq=False, slots=True)
class SignalingConnection:
    """Connection handle for one authenticated client channel.

    Outbound frames are queued and written by :meth:`pump`, so enqueueing never
    blocks the caller and frames reach the client in the order they were queued.
    """

    connection_id: str
    identity: Identity
    send: SendCallable
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_LIMIT))
    closed: bool = False
    replaced: bool = False

    def enqueue(self, message: dict) -> bool:
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Outbox full for connection %s; dropping %s", self.connection_id, message.get("type"))
            return False
        return True

    def close(self) -> None:
        """Stop accepting frames and let the writer exit once the queue drains."""

        if self.closed:
            return
        self.closed = True
        try:
            self.outbox.put_nowait(None)
        except asyncio.QueueFull:
            # Oldest pending frame is discarded so the sentinel always fits.
            self.outbox.get_nowait()
            self.outbox.put_nowait(None)

    def pending(self) -> list[dict]:
        """Remove and return queued frames without sending them."""

        frames: list[dict] = []
        while not self.outbox.empty():
            frame = self.outbox.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    async def pump(self) -> None:
        """Write queued frames to the channel until closed or the channel fails."""

        while True:
            message = await self.outbox.get()
            if message is None:
                return
            try:
                await self.send(message)
            except Exception as exc:  # noqa: BLE001 - any send failure means the channel is gone
                logger.info("Send failed on connection %s: %s", self.connection_id, exc)
                self.closed = True
                return


class SignalingRelay:
    """Forward tagged messages to connection handles without inspecting them."""

    def relay(self, connection: SignalingConnection | None, kind: SignalEvent, payload: Any = None) -> bool:
        """Queue ``payload`` for ``connection``; stale or missing handles are dropped."""

        if connection is None or connection.closed:
            logger.info("Dropping %s for stale connection", kind.value)
            return False

        message = {"type": kind.value, "payload": payload if payload is not None else {}}
        return connection.enqueue(message)

    def broadcast(self, connections: list[SignalingConnection], kind: SignalEvent, build: Callable[[SignalingConnection], Any]) -> int:
        """Relay a per-recipient payload to every connection; return the delivered count."""

        delivered = 0
        for connection in connections:
            if self.relay(connection, kind, build(connection)):
                delivered += 1
        return delivered
