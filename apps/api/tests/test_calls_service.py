"""Tests for the call state machine."""
from __future__ import annotations

import asyncio

import pytest

from callrelay.schemas.auth import Identity
from callrelay.schemas.signaling import CallState
from callrelay.services.calls import CallCoordinator
from callrelay.services.relay import SignalingConnection


async def _noop_send(message: dict) -> None:
    return None


def make_connection(user_id: str, suffix: str = "1") -> SignalingConnection:
    identity = Identity(id=user_id, name=user_id.upper())
    return SignalingConnection(connection_id=f"{user_id}-{suffix}", identity=identity, send=_noop_send)


def frames(connection: SignalingConnection, kind: str | None = None) -> list[dict]:
    pending = connection.pending()
    if kind is None:
        return pending
    return [frame for frame in pending if frame["type"] == kind]


async def online(coordinator: CallCoordinator, *user_ids: str) -> list[SignalingConnection]:
    connections = [make_connection(user_id) for user_id in user_ids]
    for connection in connections:
        await coordinator.connect(connection)
    for connection in connections:
        connection.pending()
    return connections


def assert_session_invariant(coordinator: CallCoordinator, *user_ids: str) -> None:
    for user_id in user_ids:
        session = coordinator.session_for(user_id)
        state = coordinator.state_of(user_id)
        if session is None:
            assert state is CallState.IDLE
            continue
        pair = {coordinator.state_of(session.caller.id), coordinator.state_of(session.callee.id)}
        assert pair in ({CallState.CALLING, CallState.RINGING}, {CallState.IN_CALL})


@pytest.mark.asyncio
async def test_full_call_scenario():
    coordinator = CallCoordinator()
    alice, bob = make_connection("a"), make_connection("b")

    await coordinator.connect(alice)
    await coordinator.connect(bob)
    assert [u["id"] for u in frames(alice, "users-updated")[-1]["payload"]] == ["b"]
    assert [u["id"] for u in frames(bob, "users-updated")[-1]["payload"]] == ["a"]

    assert await coordinator.initiate(alice, "b", "O1")
    incoming = frames(bob)
    assert incoming == [{"type": "incoming-call", "payload": {"from": {"id": "a", "name": "A", "email": None}, "offer": "O1"}}]
    assert coordinator.state_of("a") is CallState.CALLING
    assert coordinator.state_of("b") is CallState.RINGING

    assert await coordinator.accept(bob, "A1")
    assert frames(alice) == [{"type": "call-accepted", "payload": {"answer": "A1"}}]
    assert coordinator.state_of("a") is CallState.IN_CALL
    assert coordinator.state_of("b") is CallState.IN_CALL

    assert await coordinator.relay_ice(alice, "cand1")
    assert frames(bob) == [{"type": "ice-candidate", "payload": {"candidate": "cand1"}}]

    assert await coordinator.end(bob)
    assert frames(alice) == [{"type": "call-ended", "payload": {}}]
    assert coordinator.state_of("a") is CallState.IDLE
    assert coordinator.state_of("b") is CallState.IDLE
    assert coordinator.session_count() == 0


@pytest.mark.asyncio
async def test_initiate_to_offline_target_is_unavailable_for_caller_only():
    coordinator = CallCoordinator()
    (alice,) = await online(coordinator, "a")

    assert not await coordinator.initiate(alice, "ghost", "O1")

    error = frames(alice, "call-error")
    assert error[0]["payload"]["code"] == "unavailable"
    assert error[0]["payload"]["reason"] == "offline"
    assert coordinator.session_count() == 0
    assert coordinator.state_of("a") is CallState.IDLE


@pytest.mark.asyncio
async def test_initiate_to_busy_target_is_unavailable():
    coordinator = CallCoordinator()
    alice, bob, carol = await online(coordinator, "a", "b", "c")

    await coordinator.initiate(alice, "b", "O1")
    bob.pending()

    assert not await coordinator.initiate(carol, "b", "O2")
    assert frames(carol, "call-error")[0]["payload"]["reason"] == "busy"
    assert frames(bob) == []
    assert coordinator.state_of("c") is CallState.IDLE
    assert coordinator.session_for("b").caller.id == "a"


@pytest.mark.asyncio
async def test_calling_yourself_is_unavailable():
    coordinator = CallCoordinator()
    (alice,) = await online(coordinator, "a")

    assert not await coordinator.initiate(alice, "a", "O1")
    assert frames(alice, "call-error")[0]["payload"]["reason"] == "self"


@pytest.mark.asyncio
async def test_glare_yields_one_session():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    first = await coordinator.initiate(alice, "b", "OA")
    second = await coordinator.initiate(bob, "a", "OB")

    assert first and not second
    assert coordinator.session_count() == 1
    assert frames(bob, "call-error")[0]["payload"]["code"] == "unavailable"
    assert coordinator.session_for("a").caller.id == "a"
    assert_session_invariant(coordinator, "a", "b")


@pytest.mark.asyncio
async def test_concurrent_glare_yields_one_session():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    results = await asyncio.gather(
        coordinator.initiate(alice, "b", "OA"),
        coordinator.initiate(bob, "a", "OB"),
    )

    assert sorted(results) == [False, True]
    assert coordinator.session_count() == 1
    assert_session_invariant(coordinator, "a", "b")


@pytest.mark.asyncio
async def test_accept_after_caller_disconnect_reports_session_gone():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    await coordinator.disconnect(alice)
    bob_frames = frames(bob)
    assert {"type": "call-ended", "payload": {}} in bob_frames
    assert coordinator.state_of("b") is CallState.IDLE

    assert not await coordinator.accept(bob, "A1")
    assert frames(bob) == [{"type": "call-error", "payload": {"code": "session-gone"}}]
    assert coordinator.state_of("b") is CallState.IDLE
    assert coordinator.session_count() == 0


@pytest.mark.asyncio
async def test_caller_disconnect_while_ringing_releases_callee():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    assert coordinator.state_of("b") is CallState.RINGING

    await coordinator.disconnect(alice)

    kinds = [frame["type"] for frame in frames(bob)]
    assert "call-ended" in kinds
    assert kinds[-1] == "users-updated"
    assert coordinator.state_of("b") is CallState.IDLE
    assert coordinator.presence.lookup("a") is None


@pytest.mark.asyncio
async def test_reject_notifies_caller_and_resets_both():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    assert await coordinator.reject(bob)

    assert frames(alice) == [{"type": "call-rejected", "payload": {}}]
    assert coordinator.state_of("a") is CallState.IDLE
    assert coordinator.state_of("b") is CallState.IDLE

    assert not await coordinator.reject(bob)
    assert frames(bob, "call-error")[0]["payload"]["code"] == "session-gone"


@pytest.mark.asyncio
async def test_only_the_callee_may_accept_or_reject():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    bob.pending()

    assert not await coordinator.accept(alice, "A1")
    assert not await coordinator.reject(alice)
    assert frames(bob) == []
    assert coordinator.state_of("a") is CallState.CALLING
    assert coordinator.state_of("b") is CallState.RINGING


@pytest.mark.asyncio
async def test_outsider_cannot_touch_a_session():
    coordinator = CallCoordinator()
    alice, bob, carol = await online(coordinator, "a", "b", "c")

    await coordinator.initiate(alice, "b", "O1")
    await coordinator.accept(bob, "A1")
    alice.pending()
    bob.pending()

    assert not await coordinator.end(carol)
    assert not await coordinator.relay_ice(carol, "cand")
    assert frames(alice) == [] and frames(bob) == []
    assert coordinator.state_of("a") is CallState.IN_CALL


@pytest.mark.asyncio
async def test_duplicate_accept_is_ignored():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    assert await coordinator.accept(bob, "A1")
    alice.pending()

    assert not await coordinator.accept(bob, "A2")
    assert frames(alice) == []
    assert coordinator.state_of("b") is CallState.IN_CALL


@pytest.mark.asyncio
async def test_late_candidate_is_dropped_silently():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    assert not await coordinator.relay_ice(alice, "cand")
    assert frames(alice) == [] and frames(bob) == []


@pytest.mark.asyncio
async def test_candidates_flow_while_ringing():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    bob.pending()

    assert await coordinator.relay_ice(alice, {"candidate": "c1"})
    assert await coordinator.relay_ice(bob, {"candidate": "c2"})
    assert frames(bob) == [{"type": "ice-candidate", "payload": {"candidate": {"candidate": "c1"}}}]
    assert frames(alice) == [{"type": "ice-candidate", "payload": {"candidate": {"candidate": "c2"}}}]


@pytest.mark.asyncio
async def test_end_is_idempotent():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    assert not await coordinator.end(alice)

    await coordinator.initiate(alice, "b", "O1")
    results = await asyncio.gather(coordinator.end(alice), coordinator.end(alice), coordinator.end(bob))

    assert results.count(True) == 1
    assert frames(bob, "call-ended") == [{"type": "call-ended", "payload": {}}]
    assert coordinator.state_of("a") is CallState.IDLE
    assert coordinator.state_of("b") is CallState.IDLE


@pytest.mark.asyncio
async def test_caller_can_cancel_before_answer():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    bob.pending()
    assert await coordinator.end(alice)

    assert frames(bob) == [{"type": "call-ended", "payload": {}}]
    assert coordinator.session_count() == 0


@pytest.mark.asyncio
async def test_disconnect_twice_is_safe():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    await asyncio.gather(coordinator.disconnect(bob), coordinator.disconnect(bob))

    assert frames(alice, "call-ended") == [{"type": "call-ended", "payload": {}}]
    assert coordinator.presence.lookup("b") is None
    assert coordinator.state_of("a") is CallState.IDLE


@pytest.mark.asyncio
async def test_notification_failure_still_resets_both_sides():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")

    await coordinator.initiate(alice, "b", "O1")
    await coordinator.accept(bob, "A1")
    alice.close()

    assert await coordinator.end(bob)
    assert coordinator.state_of("a") is CallState.IDLE
    assert coordinator.state_of("b") is CallState.IDLE


@pytest.mark.asyncio
async def test_reconnect_replaces_connection_and_ends_stale_call():
    coordinator = CallCoordinator()
    alice, bob = await online(coordinator, "a", "b")
    await coordinator.initiate(alice, "b", "O1")
    await coordinator.accept(bob, "A1")
    bob.pending()

    alice_again = make_connection("a", suffix="2")
    await coordinator.connect(alice_again)

    assert frames(bob, "call-ended") == [{"type": "call-ended", "payload": {}}]
    assert coordinator.presence.lookup("a") is alice_again
    assert coordinator.state_of("a") is CallState.IDLE

    # The replaced connection can no longer act for the identity.
    assert not await coordinator.initiate(alice, "b", "O2")
    await coordinator.disconnect(alice)
    assert coordinator.presence.lookup("a") is alice_again


@pytest.mark.asyncio
async def test_replaced_connection_cannot_reclaim_identity():
    coordinator = CallCoordinator()
    stale, bob = await online(coordinator, "a", "b")
    fresh = make_connection("a", suffix="2")
    await coordinator.connect(fresh)
    await coordinator.initiate(fresh, "b", "O1")
    bob.pending()

    await coordinator.connect(stale)

    assert coordinator.presence.lookup("a") is fresh
    assert coordinator.state_of("a") is CallState.CALLING
    assert coordinator.state_of("b") is CallState.RINGING
    assert bob.pending() == []


@pytest.mark.asyncio
async def test_session_invariant_holds_through_mixed_sequence():
    coordinator = CallCoordinator()
    a, b, c, d = await online(coordinator, "a", "b", "c", "d")
    ids = ("a", "b", "c", "d")

    steps = [
        coordinator.initiate(a, "b", "o"),
        coordinator.initiate(c, "b", "o"),
        coordinator.initiate(c, "d", "o"),
        coordinator.accept(d, "x"),
        coordinator.reject(b),
        coordinator.initiate(b, "a", "o"),
        coordinator.end(c),
        coordinator.accept(a, "x"),
        coordinator.disconnect(b),
        coordinator.end(a),
    ]
    for step in steps:
        await step
        assert_session_invariant(coordinator, *ids)

    assert coordinator.session_count() == 0
