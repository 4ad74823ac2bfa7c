import base64
import binascii
from typing import Any, Awaitable, Callable, Optional

from logging_config import get_logger
from recording.errors import OpenFailure
from recording.store import FinalizeOutcome, RecordingSession, RecordingSessionStore

logger = get_logger(__name__)

ErrorNotifier = Callable[[str], Awaitable[None]]


def decode_chunk(payload: Any) -> Optional[bytes]:
    """
    Turn an audio-chunk payload into bytes.

    Accepts raw bytes, base64 text, or a list of byte values. Returns None
    when the payload cannot be decoded.
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
    if isinstance(payload, list):
        try:
            return bytes(payload)
        except (TypeError, ValueError):
            return None
    return None


class CapturePipeline:
    """
    Drives a connection's RecordingSessionStore from start / chunk / stop events.

    Holds no state of its own. Nothing here raises into the event loop of the
    connection: open failures go back to the client as recording-error, bad or
    late chunks are logged and dropped, finalize reports through its outcome.
    """

    async def start(self, store: RecordingSessionStore, room_id: str, notify_error: ErrorNotifier) -> Optional[RecordingSession]:
        try:
            return await store.start(room_id)
        except OpenFailure as e:
            logger.error(f"Could not start recording for {store.connection_id} in room {room_id}: {e}")
            await notify_error(str(e))
            return None

    async def chunk(self, store: RecordingSessionStore, room_id: str, payload: Any) -> bool:
        data = decode_chunk(payload)
        if data is None:
            logger.warning(f"Dropping undecodable audio chunk from {store.connection_id} in room {room_id}")
            return False
        try:
            return await store.append(room_id, data)
        except OSError as e:
            logger.error(f"Write failed for {store.connection_id} in room {room_id}: {e}")
            return False

    async def stop(self, store: RecordingSessionStore, room_id: str) -> Optional[FinalizeOutcome]:
        outcome = await store.finalize(room_id)
        if outcome is None:
            logger.warning(f"recording-done from {store.connection_id} for room {room_id} without an open recording")
        elif outcome.ok:
            logger.info(f"Recording segment for room {room_id} encoded: {outcome.encoded_path}")
        return outcome
