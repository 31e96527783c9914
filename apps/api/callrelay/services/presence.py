"""Registry of online identities and their live connections."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from ..schemas.auth import Identity
from ..schemas.signaling import SignalEvent
from .relay import SignalingConnection, SignalingRelay

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PresenceEntry:
    identity: Identity
    connection: SignalingConnection
    since: datetime


class PresenceRegistry:
    """Map identity ids to connection handles and announce roster changes.

    Not safe for concurrent use on its own; the call coordinator serializes
    every mutation.
    """

    def __init__(self, relay: SignalingRelay) -> None:
        self._relay = relay
        self._entries: Dict[str, PresenceEntry] = {}

    def register(self, identity: Identity, connection: SignalingConnection) -> list[Identity]:
        """Insert ``identity`` bound to ``connection``; the latest connection wins."""

        stale = self._entries.pop(identity.id, None)
        if stale is not None and stale.connection is not connection:
            logger.info("Evicting stale connection %s for %s", stale.connection.connection_id, identity.id)

        for other_id in [key for key, entry in self._entries.items() if entry.connection is connection]:
            self._entries.pop(other_id, None)

        self._entries[identity.id] = PresenceEntry(
            identity=identity,
            connection=connection,
            since=datetime.now(timezone.utc),
        )
        logger.info("User online: %s (%s)", identity.name, identity.id)
        self._broadcast()
        return self.snapshot()

    def unregister(self, connection: SignalingConnection) -> bool:
        """Remove the entry owned by ``connection``; returns False when none matched."""

        for identity_id, entry in self._entries.items():
            if entry.connection is connection:
                del self._entries[identity_id]
                logger.info("User offline: %s (%s)", entry.identity.name, identity_id)
                self._broadcast()
                return True
        return False

    def lookup(self, identity_id: str) -> Optional[SignalingConnection]:
        entry = self._entries.get(identity_id)
        return entry.connection if entry else None

    def snapshot(self) -> list[Identity]:
        return [entry.identity for entry in self._entries.values()]

    def roster_for(self, identity_id: str | None) -> list[dict]:
        """Serialized roster as seen by ``identity_id`` (which is left out)."""

        return [
            {**entry.identity.model_dump(), "since": entry.since.isoformat()}
            for entry in self._entries.values()
            if entry.identity.id != identity_id
        ]

    def _broadcast(self) -> None:
        connections = [entry.connection for entry in self._entries.values()]
        self._relay.broadcast(
            connections,
            SignalEvent.USERS_UPDATED,
            lambda connection: self.roster_for(connection.identity.id),
        )
