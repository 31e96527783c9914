"""Channel lifecycle and inbound event dispatch for signaling clients."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict
from uuid import uuid4

from pydantic import ValidationError

from ..schemas import signaling as schemas
from ..schemas.auth import Identity
from .calls import CallCoordinator, coordinator as call_coordinator
from .relay import SendCallable, SignalingConnection

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Open, close and route events for one channel per authenticated client."""

    def __init__(self, coordinator: CallCoordinator) -> None:
        self._coordinator = coordinator
        self._open: Dict[str, SignalingConnection] = {}

    def active_count(self) -> int:
        return len(self._open)

    async def open(self, identity: Identity, send: SendCallable) -> SignalingConnection:
        """Create a handle for a freshly accepted channel and announce the identity."""

        connection = SignalingConnection(connection_id=str(uuid4()), identity=identity, send=send)
        self._open[connection.connection_id] = connection
        logger.info("Connection %s opened for %s", connection.connection_id, identity.id)
        await self._coordinator.connect(connection)
        return connection

    async def close(self, connection: SignalingConnection) -> bool:
        """Tear down ``connection``; only the first call for a handle has any effect."""

        if self._open.pop(connection.connection_id, None) is None:
            return False
        connection.close()
        await self._coordinator.disconnect(connection)
        logger.info("Connection %s closed for %s", connection.connection_id, connection.identity.id)
        return True

    async def handle_text(self, connection: SignalingConnection, raw: str) -> None:
        """Decode one text frame and dispatch it; undecodable frames are dropped."""

        try:
            message = json.loads(raw)
        except (ValueError, RecursionError):
            logger.warning("Dropping non-JSON frame from %s", connection.connection_id)
            return
        await self.handle_message(connection, message)

    async def handle_message(self, connection: SignalingConnection, message: Any) -> None:
        if connection.connection_id not in self._open:
            logger.warning("Dropping frame on closed connection %s", connection.connection_id)
            return
        if not isinstance(message, dict):
            logger.warning("Dropping non-object frame from %s", connection.connection_id)
            return

        envelope = {
            "type": message.get("type"),
            "payload": message.get("payload", message.get("data")),
        }
        try:
            parsed = schemas.SignalEnvelope.model_validate(envelope)
            event = schemas.SignalEvent(parsed.type)
        except (ValidationError, ValueError):
            logger.warning("Dropping unknown event %r from %s", envelope["type"], connection.connection_id)
            return

        payload = parsed.payload if parsed.payload is not None else {}
        try:
            await self._dispatch(connection, event, payload)
        except ValidationError as exc:
            logger.warning(
                "Dropping malformed %s from %s: %s", event.value, connection.connection_id, exc.errors()
            )

    async def _dispatch(self, connection: SignalingConnection, event: schemas.SignalEvent, payload: Any) -> None:
        if event is schemas.SignalEvent.USER_ONLINE:
            await self._coordinator.connect(connection)
        elif event is schemas.SignalEvent.CALL_USER:
            request = schemas.CallUserPayload.model_validate(payload)
            await self._coordinator.initiate(connection, request.to, request.offer)
        elif event is schemas.SignalEvent.CALL_ACCEPTED:
            request = schemas.CallAcceptedPayload.model_validate(payload)
            await self._coordinator.accept(connection, request.answer)
        elif event is schemas.SignalEvent.CALL_REJECTED:
            schemas.PeerPayload.model_validate(payload)
            await self._coordinator.reject(connection)
        elif event is schemas.SignalEvent.ICE_CANDIDATE:
            request = schemas.IceCandidatePayload.model_validate(payload)
            await self._coordinator.relay_ice(connection, request.candidate)
        elif event is schemas.SignalEvent.END_CALL:
            schemas.PeerPayload.model_validate(payload)
            await self._coordinator.end(connection)
        else:
            logger.warning("Dropping server-only event %s from %s", event.value, connection.connection_id)


manager = ConnectionManager(call_coordinator)
