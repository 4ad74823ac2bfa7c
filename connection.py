from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from backend import Sender
from logging_config import get_logger
from recording.pipeline import CapturePipeline
from recording.store import FinalizeOutcome, RecordingSessionStore
from schemas.signaling import InboundMessage, RecordingErrorPayload
from signaling import RELAYED_KINDS, SignalingRelay, outbound

logger = get_logger(__name__)


class ConnectionState(Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Connection:
    """One transport-level client session and the recordings it owns."""

    id: str
    send: Sender
    recordings: RecordingSessionStore
    rooms: Set[str] = field(default_factory=set)
    # target of binary audio frames: the room of the latest start-recording
    recording_room: Optional[str] = None
    state: ConnectionState = ConnectionState.ACTIVE


class ConnectionController:
    """
    Dispatches one connection's inbound events and runs its teardown.

    Events are handled one at a time in arrival order, which is what keeps
    start -> chunk* -> stop ordered for each room.
    """

    def __init__(self, connection: Connection, relay: SignalingRelay, pipeline: Optional[CapturePipeline] = None):
        self.connection = connection
        self.relay = relay
        self.pipeline = pipeline or CapturePipeline()
        self._handlers: Dict[str, Callable[[InboundMessage], Awaitable[None]]] = {
            "join-room": self.on_join_room,
            "start-recording": self.on_start_recording,
            "audio-chunk": self.on_audio_chunk,
            "recording-done": self.on_recording_done,
        }
        for kind in RELAYED_KINDS:
            self._handlers[kind] = self.on_signal

    @property
    def closed(self) -> bool:
        return self.connection.state is ConnectionState.CLOSED

    async def handle(self, raw: dict) -> None:
        """Handle one decoded inbound frame. Malformed or unknown frames are logged and ignored."""
        if self.closed:
            logger.warning(f"Ignoring message for closed connection {self.connection.id}")
            return
        try:
            message = InboundMessage.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed message from {self.connection.id}: {e.errors()}")
            return

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning(f"Ignoring unknown message type '{message.type}' from {self.connection.id}")
            return
        if not message.room_id:
            logger.warning(f"Ignoring {message.type} from {self.connection.id}: room_id is required")
            return

        await handler(message)

    async def on_join_room(self, message: InboundMessage) -> None:
        self.connection.rooms.add(message.room_id)
        await self.relay.join(self.connection.id, message.room_id, self.connection.send)

    async def on_signal(self, message: InboundMessage) -> None:
        await self.relay.relay(self.connection.id, message.type, message.payload, message.room_id)

    async def on_start_recording(self, message: InboundMessage) -> None:
        room_id = message.room_id
        session = await self.pipeline.start(self.connection.recordings, room_id, lambda msg: self.send_recording_error(room_id, msg))
        if session is not None:
            self.connection.recording_room = room_id

    async def on_audio_chunk(self, message: InboundMessage) -> None:
        await self.pipeline.chunk(self.connection.recordings, message.room_id, message.payload)

    async def on_recording_done(self, message: InboundMessage) -> None:
        if self.connection.recording_room == message.room_id:
            self.connection.recording_room = None
        await self.pipeline.stop(self.connection.recordings, message.room_id)

    async def handle_binary(self, data: bytes) -> None:
        """A binary frame is raw audio for the room of the latest start-recording."""
        if self.closed:
            logger.warning(f"Ignoring binary frame for closed connection {self.connection.id}")
            return
        room_id = self.connection.recording_room
        if room_id is None:
            logger.warning(f"Dropping {len(data)} byte binary frame from {self.connection.id}: no recording started")
            return
        await self.pipeline.chunk(self.connection.recordings, room_id, data)

    async def send_recording_error(self, room_id: str, message: str) -> None:
        frame = outbound("recording-error", room_id, RecordingErrorPayload(message=message).model_dump())
        try:
            await self.connection.send(frame)
        except Exception as e:
            logger.warning(f"Could not deliver recording-error to {self.connection.id}: {e}")

    async def close(self) -> List[FinalizeOutcome]:
        """
        Tear the connection down.

        Every open recording is finalized (flush and transcode) before any room
        hears peer-disconnected. Calling close twice is a no-op.
        """
        if self.closed:
            return []
        self.connection.state = ConnectionState.CLOSED
        logger.info(f"User disconnected: {self.connection.id}")

        try:
            outcomes = await self.connection.recordings.finalize_all()
        except Exception as e:
            logger.error(f"Abandoning recording cleanup for {self.connection.id}: {e}", exc_info=True)
            outcomes = []

        rooms = self.connection.rooms | self.relay.backend.get_rooms(self.connection.id)
        try:
            await self.relay.announce_departure(self.connection.id, rooms)
        finally:
            self.connection.rooms.clear()
        logger.info(f"Cleaned up connection {self.connection.id} ({len(outcomes)} recording(s) finalized, {len(rooms)} room(s) notified)")
        return outcomes
