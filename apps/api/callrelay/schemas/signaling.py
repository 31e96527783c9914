"""Wire contracts for the signaling channel.

Every frame on the socket is a JSON object ``{"type": <event>, "payload": ...}``.
Negotiation payloads (offers, answers, candidates) are carried as opaque values.
"""
from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, Field


class SignalEvent(str, enum.Enum):
    USER_ONLINE = "user-online"
    USERS_UPDATED = "users-updated"
    CALL_USER = "call-user"
    INCOMING_CALL = "incoming-call"
    CALL_ACCEPTED = "call-accepted"
    CALL_REJECTED = "call-rejected"
    ICE_CANDIDATE = "ice-candidate"
    END_CALL = "end-call"
    CALL_ENDED = "call-ended"
    CALL_ERROR = "call-error"


class CallErrorCode(str, enum.Enum):
    UNAVAILABLE = "unavailable"
    SESSION_GONE = "session-gone"


class CallState(str, enum.Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    IN_CALL = "in_call"


class SignalEnvelope(BaseModel):
    type: str
    payload: Any = None


class CallUserPayload(BaseModel):
    to: str = Field(..., min_length=1, description="Identity id of the callee")
    offer: Any
    caller: dict[str, Any] | None = Field(default=None, description="Advisory only, never trusted")


class CallAcceptedPayload(BaseModel):
    answer: Any
    to: str | None = None


class IceCandidatePayload(BaseModel):
    candidate: Any
    to: str | None = None


class PeerPayload(BaseModel):
    """Payload for reject / end events; the target is resolved from the session."""

    to: str | None = None
