from typing import Any, Iterable

from backend import LocalRoomBackend, Sender
from logging_config import get_logger

logger = get_logger(__name__)

# Connection-setup messages forwarded verbatim to the rest of a room
RELAYED_KINDS = ("call-offer", "call-answer", "ice-candidate")


def outbound(kind: str, room_id: str, payload: Any) -> dict:
    return {"type": kind, "room_id": room_id, "payload": payload}


class SignalingRelay:
    """
    Forwards signaling traffic between members of a room.

    Payloads are opaque and never inspected. The sender is always excluded
    from its own broadcasts. All room state lives in the backend.
    """

    def __init__(self, backend: LocalRoomBackend):
        self.backend = backend

    async def join(self, connection_id: str, room_id: str, send: Sender) -> int:
        await self.backend.join(room_id, connection_id, send)
        logger.info(f"User {connection_id} joined room {room_id}")
        return await self.backend.broadcast(room_id, outbound("new-peer", room_id, connection_id), exclude=connection_id)

    async def relay(self, connection_id: str, kind: str, payload: Any, room_id: str) -> int:
        if kind not in RELAYED_KINDS:
            raise ValueError(f"Not a relayed message kind: {kind}")
        logger.debug(f"Relaying {kind} from {connection_id} to room {room_id}")
        return await self.backend.broadcast(room_id, outbound(kind, room_id, payload), exclude=connection_id)

    async def announce_departure(self, connection_id: str, room_ids: Iterable[str]) -> None:
        """
        Tell every room the connection was in that it left, then drop its memberships.

        A failed announcement is logged and the remaining rooms are still
        notified. Memberships are dropped even when announcing fails.
        """
        room_ids = list(room_ids)
        try:
            for room_id in room_ids:
                # Some transports put each connection in a private room named after it
                if room_id == connection_id:
                    continue
                try:
                    await self.backend.broadcast(room_id, outbound("peer-disconnected", room_id, connection_id), exclude=connection_id)
                except Exception as e:
                    logger.error(f"Could not announce departure of {connection_id} to room {room_id}: {e}")
        finally:
            for room_id in room_ids:
                try:
                    await self.backend.leave(room_id, connection_id)
                except Exception as e:
                    logger.error(f"Could not remove {connection_id} from room {room_id}: {e}")
