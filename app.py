from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.ice import ice_router
from backend import build_room_backend
from connection import Connection, ConnectionController
from recording.pipeline import CapturePipeline
from recording.store import RecordingSessionStore
from recording.transcoder import FFmpegTranscoder
from signaling import SignalingRelay
from constants import (
    CORS_ORIGINS,
    DELETE_RAW_AFTER_TRANSCODE,
    FFMPEG_PATH,
    RAW_CAPTURE_EXT,
    RECORDINGS_DIR,
    TRANSCODE_CODEC,
    TRANSCODE_TIMEOUT,
)
import uuid
import json
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

# Shared by every connection handled by this instance
room_backend = build_room_backend()
relay = SignalingRelay(room_backend)
pipeline = CapturePipeline()
transcoder = FFmpegTranscoder(FFMPEG_PATH, timeout=TRANSCODE_TIMEOUT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Signaling relay starting")
    if not await transcoder.validate():
        logger.warning("Recordings will be captured but transcoding will fail until ffmpeg is available")
    yield
    await room_backend.close()
    logger.info("Signaling relay stopped")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(ice_router)

logger.info("FastAPI application initialized")


@app.get("/")
async def health():
    return {"status": "ok"}


def new_connection_controller(connection_id: str, websocket: WebSocket) -> ConnectionController:
    store = RecordingSessionStore(
        connection_id=connection_id,
        transcoder=transcoder,
        recordings_dir=RECORDINGS_DIR,
        raw_ext=RAW_CAPTURE_EXT,
        codec=TRANSCODE_CODEC,
        delete_raw_after_transcode=DELETE_RAW_AFTER_TRANSCODE,
    )
    connection = Connection(id=connection_id, send=websocket.send_json, recordings=store)
    return ConnectionController(connection, relay, pipeline)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling and audio capture for one browser peer.

    Text frames are JSON objects: {"type": ..., "room_id": ..., "payload": ...}
    Binary frames are raw audio for the room of the latest start-recording.
    """
    await websocket.accept()
    connection_id = str(uuid.uuid4())
    controller = new_connection_controller(connection_id, websocket)
    logger.info(f"User connected: {connection_id}")

    try:
        await websocket.send_json({"type": "connected", "connection_id": connection_id})

        message_count = 0
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            message_count += 1

            data = frame.get("text")
            if data is None:
                try:
                    await controller.handle_binary(frame.get("bytes") or b"")
                except Exception as e:
                    logger.error(f"Error handling binary frame #{message_count} from {connection_id}: {e}", exc_info=True)
                continue

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON frame #{message_count} from {connection_id}")
                continue
            if not isinstance(message, dict):
                logger.warning(f"Ignoring non-object frame #{message_count} from {connection_id}")
                continue

            logger.debug(f"Received {message.get('type', 'unknown')} (#{message_count}) from {connection_id}")
            try:
                await controller.handle(message)
            except Exception as e:
                # Keep reading; one bad event must not end the connection
                logger.error(f"Error handling {message.get('type', 'unknown')} from {connection_id}: {e}", exc_info=True)
    except WebSocketDisconnect:
        logger.info(f"WebSocket closed while sending to connection {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await controller.close()
