"""
Unit tests for the capture pipeline that sits between inbound events and the store.
"""

import base64

import pytest

from recording.pipeline import CapturePipeline, decode_chunk
from recording.store import RecordingSessionStore


@pytest.mark.unit
def test_decode_chunk_formats():
    assert decode_chunk(base64.b64encode(b"\x01\x02\x03").decode()) == b"\x01\x02\x03"
    assert decode_chunk([1, 2, 255]) == b"\x01\x02\xff"
    assert decode_chunk(b"raw") == b"raw"
    assert decode_chunk("not base64!!") is None
    assert decode_chunk([1, 256]) is None
    assert decode_chunk({"data": 1}) is None
    assert decode_chunk(None) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_chunk_stop(store, transcoder):
    pipeline = CapturePipeline()
    errors = []

    async def notify(message):
        errors.append(message)

    session = await pipeline.start(store, "r1", notify)
    assert session is not None
    assert await pipeline.chunk(store, "r1", base64.b64encode(b"x" * 10).decode()) is True
    assert await pipeline.chunk(store, "r1", list(range(10))) is True

    outcome = await pipeline.stop(store, "r1")

    assert outcome.ok
    assert transcoder.sizes_seen == [20]
    assert errors == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_open_failure_is_reported_not_raised(tmp_path, transcoder):
    blocker = tmp_path / "recordings"
    blocker.write_text("")
    store = RecordingSessionStore("conn-a", transcoder, recordings_dir=str(blocker))
    errors = []

    async def notify(message):
        errors.append(message)

    assert await CapturePipeline().start(store, "r1", notify) is None
    assert len(errors) == 1
    assert "recordings" in errors[0]
    assert "r1" not in store


@pytest.mark.unit
@pytest.mark.asyncio
async def test_undecodable_chunk_is_dropped(store):
    pipeline = CapturePipeline()
    await store.start("r1")

    assert await pipeline.chunk(store, "r1", "%%%") is False
    assert store.get("r1").bytes_written == 0

    await store.finalize("r1")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stop_without_session(store, transcoder):
    assert await CapturePipeline().stop(store, "r1") is None
    assert transcoder.calls == []
