"""
Pytest configuration and shared fixtures.

The fakes here stand in for the two collaborators that touch the outside
world: the ffmpeg transcoder and the websocket a frame is sent on. Both
append to a shared event log so tests can assert on ordering directly.
"""

import asyncio
import os
from typing import List, Optional

import pytest

from backend import LocalRoomBackend
from connection import Connection, ConnectionController
from recording.errors import TranscodeFailure
from recording.store import RecordingSessionStore
from recording.transcoder import output_path_for
from signaling import SignalingRelay


class FakeTranscoder:
    """Copies the capture to the encoded path and records what it saw."""

    def __init__(self, events: Optional[list] = None, fail: bool = False):
        self.events = events if events is not None else []
        self.fail = fail
        self.calls: List[str] = []
        # size of the input file at the moment convert() was called
        self.sizes_seen: List[int] = []
        self.gate: Optional[asyncio.Event] = None

    async def validate(self) -> bool:
        return True

    async def convert(self, input_path: str, codec: str) -> str:
        self.calls.append(input_path)
        self.sizes_seen.append(os.path.getsize(input_path))
        self.events.append(("transcode-start", input_path))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            self.events.append(("transcode-failed", input_path))
            raise TranscodeFailure("FFmpeg exited with code 1", returncode=1, stderr="Invalid data found")
        output_path = output_path_for(input_path, codec)
        with open(input_path, "rb") as src, open(output_path, "wb") as dst:
            dst.write(src.read() or b"\x00")
        self.events.append(("transcode-done", input_path))
        return output_path


class FakeSocket:
    """Collects outbound frames for one connection."""

    def __init__(self, name: str, events: Optional[list] = None, broken: bool = False):
        self.name = name
        self.events = events if events is not None else []
        self.broken = broken
        self.frames: List[dict] = []

    async def send(self, message: dict) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.frames.append(message)
        self.events.append(("send", self.name, message["type"]))

    def of_type(self, kind: str) -> List[dict]:
        return [frame for frame in self.frames if frame["type"] == kind]


@pytest.fixture
def events():
    return []


@pytest.fixture
def transcoder(events):
    return FakeTranscoder(events)


@pytest.fixture
def recordings_dir(tmp_path):
    return str(tmp_path / "recordings")


@pytest.fixture
def store(transcoder, recordings_dir):
    return RecordingSessionStore(connection_id="conn-a", transcoder=transcoder, recordings_dir=recordings_dir)


@pytest.fixture
def room_backend():
    return LocalRoomBackend()


@pytest.fixture
def relay(room_backend):
    return SignalingRelay(room_backend)


@pytest.fixture
def make_controller(relay, transcoder, recordings_dir, events):
    """Build a controller plus its fake socket for a given connection id."""

    def factory(connection_id: str, broken: bool = False):
        socket = FakeSocket(connection_id, events, broken=broken)
        store = RecordingSessionStore(connection_id=connection_id, transcoder=transcoder, recordings_dir=recordings_dir)
        connection = Connection(id=connection_id, send=socket.send, recordings=store)
        return ConnectionController(connection, relay), socket

    return factory
