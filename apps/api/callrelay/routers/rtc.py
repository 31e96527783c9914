"""Signaling WebSocket endpoint and client bootstrap info."""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from ..core.config import settings
from ..services import auth as auth_service
from ..services.connections import manager as connection_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/info", tags=["meta"])
async def client_info() -> dict[str, object]:
    """Tell browser clients where to signal and which ICE servers to use."""

    return {
        "websocket_path": settings.websocket_path,
        "ice_servers": [{"urls": url} for url in settings.ice_servers],
    }


@router.websocket(settings.websocket_path)
async def signaling_endpoint(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    """Presence, call control and opaque SDP / ICE relay for one client."""

    try:
        identity = auth_service.decode_token(token)
    except auth_service.AuthError as exc:
        logger.info("Rejecting signaling connection: %s", exc)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
        return

    await websocket.accept()
    connection = await connection_manager.open(identity, websocket.send_json)
    writer = asyncio.create_task(connection.pump())

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
            raw = message.get("text")
            if raw is None:
                logger.warning("Dropping non-text frame from %s", connection.connection_id)
                continue
            await connection_manager.handle_text(connection, raw)
    except WebSocketDisconnect:
        pass
    except Exception:  # noqa: BLE001 - an errored channel is torn down like a closed one
        logger.exception("Signaling channel %s failed", connection.connection_id)
    finally:
        # Teardown must complete even if this handler is being cancelled.
        await asyncio.shield(connection_manager.close(connection))
        await writer
