import asyncio
import os
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiofiles
import aiofiles.os

from logging_config import get_logger
from recording.errors import FlushFailure, OpenFailure, RecordingError, TranscodeFailure

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

MAX_OPEN_ATTEMPTS = 100


def safe_room_component(room_id: str) -> str:
    """Room ids are opaque; keep them from escaping the recordings directory."""
    cleaned = _UNSAFE_CHARS.sub("_", room_id).strip(".")
    return cleaned or "_"


@dataclass
class RecordingSession:
    """One open capture for a (connection, room) pair."""

    room_id: str
    path: str
    sink: object  # aiofiles binary file handle
    created_at: int  # ms since epoch, also part of the file name
    bytes_written: int = 0


@dataclass
class FinalizeOutcome:
    room_id: str
    raw_path: str
    encoded_path: Optional[str] = None
    error: Optional[RecordingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.encoded_path is not None


@dataclass
class RecordingSessionStore:
    """
    Per-connection map of room id -> open RecordingSession.

    Owned by exactly one Connection. Operations on a single room arrive in
    order from that connection's event stream; finalizes for distinct rooms
    may run concurrently.
    """

    connection_id: str
    transcoder: object  # anything with `async convert(input_path, codec) -> str`
    recordings_dir: str = "recordings"
    raw_ext: str = "webm"
    codec: str = "mulaw"
    delete_raw_after_transcode: bool = False
    sessions: Dict[str, RecordingSession] = field(default_factory=dict)
    _last_stamp: Dict[str, int] = field(default_factory=dict)

    def get(self, room_id: str) -> Optional[RecordingSession]:
        return self.sessions.get(room_id)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def _next_stamp(self, name: str) -> int:
        now = int(time.time() * 1000)
        stamp = max(now, self._last_stamp.get(name, 0) + 1)
        self._last_stamp[name] = stamp
        return stamp

    def capture_path(self, room_id: str, stamp: int) -> str:
        return os.path.join(self.recordings_dir, f"audio-{safe_room_component(room_id)}-{stamp}.{self.raw_ext}")

    async def _open_new_capture(self, room_id: str):
        """Create a capture file no other session is using. Returns (stamp, path, sink)."""
        # Distinct room ids can clean to the same name, and other connections share the directory
        name = safe_room_component(room_id)
        for _ in range(MAX_OPEN_ATTEMPTS):
            stamp = self._next_stamp(name)
            path = self.capture_path(room_id, stamp)
            try:
                sink = await aiofiles.open(path, "xb")
            except FileExistsError:
                logger.debug(f"Capture file {path} already exists, trying next stamp")
                continue
            except OSError as e:
                raise OpenFailure(f"Cannot open capture file {path}: {e}") from e
            return stamp, path, sink
        raise OpenFailure(f"Cannot find a free capture file name for room {room_id} in {self.recordings_dir}")

    async def start(self, room_id: str) -> RecordingSession:
        """
        Open a new capture for room_id.

        An already open capture for the same room is finalized first (flush and
        transcode included) so there is never more than one open sink per room.

        Raises:
            OpenFailure: the directory or file could not be created
        """
        if room_id in self.sessions:
            logger.info(f"Connection {self.connection_id} restarted recording in room {room_id}, finalizing previous segment")
            await self.finalize(room_id)

        try:
            await aiofiles.os.makedirs(self.recordings_dir, exist_ok=True)
        except OSError as e:
            raise OpenFailure(f"Cannot create recordings directory {self.recordings_dir}: {e}") from e

        stamp, path, sink = await self._open_new_capture(room_id)
        session = RecordingSession(room_id=room_id, path=path, sink=sink, created_at=stamp)
        self.sessions[room_id] = session
        logger.info(f"Started recording for {self.connection_id} in room {room_id}: {path}")
        return session

    async def append(self, room_id: str, data: bytes) -> bool:
        """Append to the open capture. Returns False when the chunk was dropped."""
        session = self.sessions.get(room_id)
        if session is None:
            logger.warning(f"Dropping {len(data)} byte chunk from {self.connection_id}: no open recording in room {room_id}")
            return False
        await session.sink.write(data)
        session.bytes_written += len(data)
        logger.debug(f"Appended {len(data)} bytes to {session.path} ({session.bytes_written} total)")
        return True

    async def finalize(self, room_id: str) -> Optional[FinalizeOutcome]:
        """
        Close, transcode and forget the capture for room_id.

        The entry leaves the store whether or not transcoding succeeds; the raw
        capture stays on disk for recovery. Returns None when nothing was open.
        Failures are reported in the outcome, never raised.
        """
        session = self.sessions.pop(room_id, None)
        if session is None:
            logger.debug(f"No open recording for {self.connection_id} in room {room_id}, nothing to finalize")
            return None

        outcome = FinalizeOutcome(room_id=room_id, raw_path=session.path)

        # All bytes must be on disk before ffmpeg reads the file
        try:
            await session.sink.close()
        except Exception as e:
            outcome.error = FlushFailure(f"Could not flush {session.path}: {e}")
            logger.error(f"Finalize failed for {self.connection_id} in room {room_id}: {outcome.error}", exc_info=True)
            return outcome

        logger.info(f"Finished recording for {self.connection_id} in room {room_id} ({session.bytes_written} bytes), transcoding...")

        try:
            outcome.encoded_path = await self.transcoder.convert(session.path, self.codec)
        except RecordingError as e:
            outcome.error = e
            details = f" (exit code {e.returncode})" if getattr(e, "returncode", None) is not None else ""
            logger.error(f"Transcode failed for {session.path}{details}: {e}")
            stderr = getattr(e, "stderr", "")
            if stderr:
                logger.error(f"FFmpeg error output:\n{stderr}")
            return outcome
        except Exception as e:
            outcome.error = TranscodeFailure(f"Unexpected transcoder error: {e}")
            logger.error(f"Transcode failed for {session.path}: {e}", exc_info=True)
            return outcome

        if self.delete_raw_after_transcode:
            try:
                await aiofiles.os.remove(session.path)
                logger.debug(f"Removed raw capture {session.path}")
            except OSError as e:
                logger.warning(f"Could not remove raw capture {session.path}: {e}")

        return outcome

    async def finalize_all(self) -> List[FinalizeOutcome]:
        """Finalize every open capture concurrently and wait for all of them."""
        room_ids = list(self.sessions)
        if not room_ids:
            return []
        logger.info(f"Finalizing {len(room_ids)} open recording(s) for {self.connection_id}")
        results = await asyncio.gather(*(self.finalize(room_id) for room_id in room_ids))
        return [outcome for outcome in results if outcome is not None]
