"""Authoritative call state machine for one-to-one calls.

Each identity is in exactly one of the :class:`CallState` values. States are not
stored per identity: they are derived from the pending or active
:class:`CallSession` the identity belongs to, so the two participants of a call
can never disagree. Every operation runs under a single lock that also guards
the presence registry, and every operation checks that the invoking connection
is the one currently registered for its identity before touching a session.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from ..schemas.auth import Identity
from ..schemas.signaling import CallErrorCode, CallState, SignalEvent
from .presence import PresenceRegistry
from .relay import SignalingConnection, SignalingRelay

SessionPhase = Literal["pending", "active"]

logger = logging.getLogger(__name__)


@dataclass(eq=False, slots=True)
class CallSession:
    caller: Identity
    callee: Identity
    phase: SessionPhase = "pending"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def includes(self, identity_id: str) -> bool:
        return identity_id in (self.caller.id, self.callee.id)

    def peer_of(self, identity_id: str) -> Identity:
        return self.callee if identity_id == self.caller.id else self.caller

    def state_of(self, identity_id: str) -> CallState:
        if not self.includes(identity_id):
            return CallState.IDLE
        if self.phase == "active":
            return CallState.IN_CALL
        return CallState.CALLING if identity_id == self.caller.id else CallState.RINGING


class CallCoordinator:
    """Own presence and call sessions and apply signaling transitions."""

    def __init__(self, relay: SignalingRelay | None = None) -> None:
        self.relay = relay or SignalingRelay()
        self.presence = PresenceRegistry(self.relay)
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()

    # -- read side ---------------------------------------------------------

    def state_of(self, identity_id: str) -> CallState:
        session = self._sessions.get(identity_id)
        return session.state_of(identity_id) if session else CallState.IDLE

    def session_for(self, identity_id: str) -> Optional[CallSession]:
        return self._sessions.get(identity_id)

    def session_count(self) -> int:
        return len({id(session) for session in self._sessions.values()})

    def online(self, exclude: str | None = None) -> list[Identity]:
        return [identity for identity in self.presence.snapshot() if identity.id != exclude]

    # -- presence ----------------------------------------------------------

    async def connect(self, connection: SignalingConnection) -> list[Identity]:
        """Register ``connection`` as the live handle for its identity.

        A handle that was evicted by a newer connection for the same identity
        stays evicted; its registration attempts leave presence untouched.
        """

        async with self._lock:
            identity = connection.identity
            if connection.replaced:
                logger.warning("Ignoring registration from replaced connection %s", connection.connection_id)
                return self.presence.snapshot()
            current = self.presence.lookup(identity.id)
            if current is not None and current is not connection:
                # The replacing client has no negotiation context for a call held by the old one.
                self._teardown(identity.id, SignalEvent.CALL_ENDED)
                current.replaced = True
            return self.presence.register(identity, connection)

    async def disconnect(self, connection: SignalingConnection) -> None:
        """End any call of the departing identity, then drop its presence entry.

        A connection that was already replaced by a newer one for the same
        identity leaves the newer connection's call untouched.
        """

        async with self._lock:
            identity = connection.identity
            if self.presence.lookup(identity.id) is connection:
                ended = self._teardown(identity.id, SignalEvent.CALL_ENDED)
                if ended is not None:
                    logger.info("Call %s <-> %s ended by disconnect", ended.caller.id, ended.callee.id)
            self.presence.unregister(connection)

    # -- transitions -------------------------------------------------------

    async def initiate(self, connection: SignalingConnection, target_id: str, offer: Any) -> bool:
        async with self._lock:
            caller = self._current_identity(connection, "call-user")
            if caller is None:
                return False

            target_connection = self.presence.lookup(target_id)
            reason = self._unavailable_reason(caller.id, target_id, target_connection)
            if reason is not None:
                logger.info("Call from %s to %s unavailable: %s", caller.id, target_id, reason)
                self.relay.relay(
                    connection,
                    SignalEvent.CALL_ERROR,
                    {"code": CallErrorCode.UNAVAILABLE.value, "reason": reason, "to": target_id},
                )
                return False

            session = CallSession(caller=caller, callee=target_connection.identity)
            self._sessions[caller.id] = session
            self._sessions[target_id] = session

            logger.info("Call from %s to %s", caller.name, session.callee.name)
            self.relay.relay(
                target_connection,
                SignalEvent.INCOMING_CALL,
                {"from": caller.model_dump(), "offer": offer},
            )
            return True

    async def accept(self, connection: SignalingConnection, answer: Any) -> bool:
        async with self._lock:
            callee = self._current_identity(connection, "call-accepted")
            if callee is None:
                return False

            session = self._sessions.get(callee.id)
            if session is None:
                logger.info("Accept from %s after session ended", callee.id)
                self._report_session_gone(connection)
                return False
            if session.state_of(callee.id) is not CallState.RINGING:
                logger.warning("Ignoring accept from %s in state %s", callee.id, session.state_of(callee.id).value)
                return False

            session.phase = "active"
            logger.info("Call accepted by %s", callee.name)
            self.relay.relay(
                self.presence.lookup(session.caller.id),
                SignalEvent.CALL_ACCEPTED,
                {"answer": answer},
            )
            return True

    async def reject(self, connection: SignalingConnection) -> bool:
        async with self._lock:
            callee = self._current_identity(connection, "call-rejected")
            if callee is None:
                return False

            session = self._sessions.get(callee.id)
            if session is None:
                logger.info("Reject from %s after session ended", callee.id)
                self._report_session_gone(connection)
                return False
            if session.state_of(callee.id) is not CallState.RINGING:
                logger.warning("Ignoring reject from %s in state %s", callee.id, session.state_of(callee.id).value)
                return False

            logger.info("Call rejected by %s", callee.name)
            self._teardown(callee.id, SignalEvent.CALL_REJECTED)
            return True

    async def relay_ice(self, connection: SignalingConnection, candidate: Any) -> bool:
        async with self._lock:
            sender = self._current_identity(connection, "ice-candidate")
            if sender is None:
                return False

            session = self._sessions.get(sender.id)
            if session is None:
                logger.debug("Dropping late candidate from %s", sender.id)
                return False

            peer = session.peer_of(sender.id)
            return self.relay.relay(
                self.presence.lookup(peer.id),
                SignalEvent.ICE_CANDIDATE,
                {"candidate": candidate},
            )

    async def end(self, connection: SignalingConnection) -> bool:
        """Hang up from any non-idle state; a no-op when there is nothing to end."""

        async with self._lock:
            sender = self._current_identity(connection, "end-call")
            if sender is None:
                return False

            ended = self._teardown(sender.id, SignalEvent.CALL_ENDED)
            if ended is None:
                logger.debug("End from %s with no session", sender.id)
                return False
            logger.info("Call ended by %s", sender.name)
            return True

    # -- helpers (lock held) -----------------------------------------------

    def _current_identity(self, connection: SignalingConnection, event: str) -> Optional[Identity]:
        identity = connection.identity
        if self.presence.lookup(identity.id) is not connection:
            logger.warning("Dropping %s from unregistered connection %s", event, connection.connection_id)
            return None
        return identity

    def _unavailable_reason(
        self, caller_id: str, target_id: str, target_connection: Optional[SignalingConnection]
    ) -> Optional[str]:
        if target_id == caller_id:
            return "self"
        if target_connection is None:
            return "offline"
        if self.state_of(target_id) is not CallState.IDLE:
            return "busy"
        if self.state_of(caller_id) is not CallState.IDLE:
            return "caller-busy"
        return None

    def _teardown(self, identity_id: str, notify: SignalEvent) -> Optional[CallSession]:
        """Destroy the session of ``identity_id`` and tell the other participant.

        Both participants are idle once the session is removed, whether or not
        the notification reaches the peer.
        """

        session = self._sessions.get(identity_id)
        if session is None:
            return None
        self._sessions.pop(session.caller.id, None)
        self._sessions.pop(session.callee.id, None)

        peer = session.peer_of(identity_id)
        self.relay.relay(self.presence.lookup(peer.id), notify, {})
        return session

    def _report_session_gone(self, connection: SignalingConnection) -> None:
        self.relay.relay(connection, SignalEvent.CALL_ERROR, {"code": CallErrorCode.SESSION_GONE.value})


coordinator = CallCoordinator()
