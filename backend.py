import asyncio
import json
from typing import Awaitable, Callable, Dict, Optional, Set

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, ROOM_BACKEND
from redis_keys import REDIS_USERS_KEY, REDIS_ROOM_CHANNEL, REDIS_CONN_ROOMS_KEY
from logging_config import get_logger

logger = get_logger(__name__)

# Delivers one outbound frame to one connection (websocket.send_json in production)
Sender = Callable[[dict], Awaitable[None]]


class LocalRoomBackend:
    """Room membership and fan-out for connections held by this process."""

    def __init__(self):
        # Format: {room_id: {connection_id: sender}}
        self.room_connections: Dict[str, Dict[str, Sender]] = {}
        # Format: {connection_id: {room_id, ...}}
        self.connection_rooms: Dict[str, Set[str]] = {}

    async def join(self, room_id: str, connection_id: str, send: Sender) -> None:
        self.room_connections.setdefault(room_id, {})[connection_id] = send
        self.connection_rooms.setdefault(connection_id, set()).add(room_id)
        logger.debug(f"Added connection {connection_id} to room {room_id} (local connections: {len(self.room_connections[room_id])})")

    async def leave(self, room_id: str, connection_id: str) -> None:
        self._forget(room_id, connection_id)

    def _forget(self, room_id: str, connection_id: str) -> None:
        members = self.room_connections.get(room_id)
        if members is not None:
            members.pop(connection_id, None)
            if not members:
                del self.room_connections[room_id]
                logger.debug(f"No more local connections in room {room_id}")
        rooms = self.connection_rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self.connection_rooms[connection_id]

    def get_rooms(self, connection_id: str) -> Set[str]:
        return set(self.connection_rooms.get(connection_id, set()))

    def get_users_in_room(self, room_id: str) -> Set[str]:
        return set(self.room_connections.get(room_id, {}))

    async def broadcast(self, room_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """Send message to every member of room_id except `exclude`. Returns the number of deliveries."""
        return await self._deliver_local(room_id, message, exclude)

    async def _deliver_local(self, room_id: str, message: dict, exclude: Optional[str]) -> int:
        targets = [
            (conn_id, send)
            for conn_id, send in self.room_connections.get(room_id, {}).items()
            if conn_id != exclude
        ]
        if not targets:
            logger.debug(f"No recipients for {message.get('type', 'unknown')} in room {room_id}")
            return 0

        results = await asyncio.gather(*(send(message) for _, send in targets), return_exceptions=True)

        delivered = 0
        for (conn_id, _), result in zip(targets, results):
            if isinstance(result, Exception):
                # Connection might be closed, drop it from the room
                logger.warning(f"Error sending to connection {conn_id} in room {room_id}: {result}")
                await self.leave(room_id, conn_id)
            else:
                delivered += 1
        logger.debug(f"Broadcasted {message.get('type', 'unknown')} to {delivered} connections in room {room_id}")
        return delivered

    async def close(self) -> None:
        self.room_connections.clear()
        self.connection_rooms.clear()


class RedisRoomBackend(LocalRoomBackend):
    """
    Room substrate shared by several server instances.

    Membership is mirrored in Redis sets and every broadcast goes through the
    room's pub/sub channel. Each instance listens on the channels of rooms it
    has local connections in and delivers to those connections only, so the
    local registry inherited from LocalRoomBackend stays per instance.
    """

    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT, password: Optional[str] = REDIS_PASSWORD):
        super().__init__()
        logger.info(f"Initializing RedisRoomBackend with connection to {host}:{port}")
        try:
            self.redis_client = redis.Redis(host=host, port=port, password=password, decode_responses=True)
            self.redis_client.ping()
            # Separate connection for pub/sub (required by Redis)
            self.pubsub_client = redis.Redis(host=host, port=port, password=password, decode_responses=True)
            self.pubsub_client.ping()
            logger.info(f"Redis clients connected successfully to {host}:{port}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {host}:{port}: {e}", exc_info=True)
            raise
        # Format: {room_id: task}
        self.room_pubsub_tasks: Dict[str, asyncio.Task] = {}

    def get_room_channel_name(self, room_id: str) -> str:
        return REDIS_ROOM_CHANNEL.format(slug=room_id)

    def subscribe_to_room(self, room_id: str):
        channel = self.get_room_channel_name(room_id)
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(channel)
        logger.debug(f"Subscribed to Redis channel {channel} for room {room_id}")
        return pubsub

    async def join(self, room_id: str, connection_id: str, send: Sender) -> None:
        await super().join(room_id, connection_id, send)
        self.redis_client.sadd(REDIS_USERS_KEY.format(slug=room_id), connection_id)
        self.redis_client.sadd(REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id), room_id)

        task = self.room_pubsub_tasks.get(room_id)
        if task is None or task.done():
            # Subscribe before returning so nothing published after the join is missed
            pubsub = self.subscribe_to_room(room_id)
            self.room_pubsub_tasks[room_id] = asyncio.create_task(self.listen_to_redis_channel(room_id, pubsub))
            logger.debug(f"Started Redis pub/sub listener for room: {room_id}")

    async def leave(self, room_id: str, connection_id: str) -> None:
        await super().leave(room_id, connection_id)
        try:
            self.redis_client.srem(REDIS_USERS_KEY.format(slug=room_id), connection_id)
            self.redis_client.srem(REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id), room_id)
        except redis.RedisError as e:
            logger.error(f"Error removing {connection_id} from room {room_id} in Redis: {e}")

        if room_id not in self.room_connections:
            task = self.room_pubsub_tasks.pop(room_id, None)
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                logger.debug(f"Cancelled pub/sub task for room {room_id}")

    def get_users_in_room(self, room_id: str) -> Set[str]:
        """All connection IDs in a room across every instance."""
        return set(self.redis_client.smembers(REDIS_USERS_KEY.format(slug=room_id)))

    async def broadcast(self, room_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """Publish to the room channel. Returns the number of subscribed instances."""
        envelope = {"exclude": exclude, "message": message}
        subscribers = self.redis_client.publish(self.get_room_channel_name(room_id), json.dumps(envelope))
        logger.debug(f"Published {message.get('type', 'unknown')} to room {room_id}, {subscribers} subscribers")
        return subscribers

    async def handle_pubsub_message(self, room_id: str, raw: dict) -> int:
        """Deliver one pub/sub message to this instance's connections in room_id."""
        if raw.get("type") != "message":
            return 0
        try:
            envelope = json.loads(raw["data"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Error parsing message from Redis for room {room_id}: {e}")
            return 0
        message = envelope.get("message")
        if not isinstance(message, dict):
            logger.error(f"Malformed pub/sub envelope for room {room_id}")
            return 0
        return await self._deliver_local(room_id, message, envelope.get("exclude"))

    async def listen_to_redis_channel(self, room_id: str, pubsub):
        """Background task that relays Redis pub/sub messages to local connections."""
        logger.info(f"Starting Redis pub/sub listener for room: {room_id}")
        loop = asyncio.get_running_loop()

        def get_message():
            """Blocking call to get next message from Redis pub/sub with timeout."""
            return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)

        try:
            while room_id in self.room_connections:
                try:
                    raw = await loop.run_in_executor(None, get_message)
                except redis.RedisError as e:
                    logger.error(f"Error in pubsub.get_message() for room {room_id}: {e}", exc_info=True)
                    await asyncio.sleep(1.0)
                    continue
                if raw is None:
                    continue
                await self.handle_pubsub_message(room_id, raw)
            logger.info(f"No more connections in room {room_id}, stopping listener")
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for room: {room_id}")
            raise
        finally:
            try:
                pubsub.close()
                logger.debug(f"Closed pub/sub connection for room: {room_id}")
            except redis.RedisError as e:
                logger.error(f"Error closing pub/sub for room {room_id}: {e}")
            if self.room_pubsub_tasks.get(room_id) is asyncio.current_task():
                del self.room_pubsub_tasks[room_id]

    async def close(self) -> None:
        tasks = list(self.room_pubsub_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.room_pubsub_tasks.clear()
        await super().close()
        self.redis_client.close()
        self.pubsub_client.close()
        logger.info("RedisRoomBackend closed")


def build_room_backend(kind: str = ROOM_BACKEND) -> LocalRoomBackend:
    if kind == "redis":
        return RedisRoomBackend()
    if kind != "local":
        logger.warning(f"Unknown ROOM_BACKEND '{kind}', falling back to local")
    return LocalRoomBackend()
