"""
Unit tests for room fan-out and the signaling relay on the in-process backend.
"""

import pytest

from conftest import FakeSocket


@pytest.mark.unit
@pytest.mark.asyncio
async def test_join_announces_new_peer_to_existing_members_only(relay):
    a, b = FakeSocket("a"), FakeSocket("b")

    assert await relay.join("a", "r1", a.send) == 0
    assert await relay.join("b", "r1", b.send) == 1

    assert a.frames == [{"type": "new-peer", "room_id": "r1", "payload": "b"}]
    assert b.frames == []


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["call-offer", "call-answer", "ice-candidate"])
async def test_relay_forwards_payload_unchanged_and_skips_sender(relay, kind):
    a, b, c = FakeSocket("a"), FakeSocket("b"), FakeSocket("c")
    for name, socket in (("a", a), ("b", b), ("c", c)):
        await relay.join(name, "r1", socket.send)
    payload = {"sdp": "x", "nested": [1, {"weird": None}]}

    delivered = await relay.relay("a", kind, payload, "r1")

    assert delivered == 2
    assert a.of_type(kind) == []
    assert b.of_type(kind) == [{"type": kind, "room_id": "r1", "payload": payload}]
    assert c.of_type(kind) == [{"type": kind, "room_id": "r1", "payload": payload}]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_relay_stays_inside_room(relay):
    a, b, outsider = FakeSocket("a"), FakeSocket("b"), FakeSocket("outsider")
    await relay.join("a", "r1", a.send)
    await relay.join("b", "r1", b.send)
    await relay.join("outsider", "r2", outsider.send)

    await relay.relay("a", "call-offer", {"sdp": "x"}, "r1")

    assert outsider.frames == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_relay_rejects_non_signaling_kind(relay):
    with pytest.raises(ValueError):
        await relay.relay("a", "audio-chunk", b"", "r1")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_departure_skips_private_room_and_leaves_all(relay, room_backend):
    a, b = FakeSocket("a"), FakeSocket("b")
    await relay.join("a", "r1", a.send)
    await relay.join("a", "a", a.send)
    await relay.join("b", "r1", b.send)

    await relay.announce_departure("a", ["r1", "a"])

    assert b.of_type("peer-disconnected") == [{"type": "peer-disconnected", "room_id": "r1", "payload": "a"}]
    assert room_backend.get_rooms("a") == set()
    assert room_backend.get_users_in_room("r1") == {"b"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_broken_member_is_dropped_without_failing_broadcast(relay, room_backend):
    a, b, broken = FakeSocket("a"), FakeSocket("b"), FakeSocket("broken", broken=True)
    await relay.join("a", "r1", a.send)
    await relay.join("broken", "r1", broken.send)
    await relay.join("b", "r1", b.send)

    delivered = await relay.relay("a", "ice-candidate", {"candidate": "c"}, "r1")

    assert delivered == 1
    assert len(b.of_type("ice-candidate")) == 1
    assert room_backend.get_users_in_room("r1") == {"a", "b"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_room_is_forgotten(room_backend):
    a = FakeSocket("a")
    await room_backend.join("r1", "a", a.send)
    await room_backend.leave("r1", "a")

    assert room_backend.room_connections == {}
    assert room_backend.connection_rooms == {}
