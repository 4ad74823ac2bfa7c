import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

# "local" keeps rooms in process, "redis" fans out through Redis pub/sub
ROOM_BACKEND = os.getenv("ROOM_BACKEND", "local").lower()

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

RECORDINGS_DIR = os.getenv("RECORDINGS_DIR", "recordings")
RAW_CAPTURE_EXT = os.getenv("RAW_CAPTURE_EXT", "webm")

FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
TRANSCODE_CODEC = os.getenv("TRANSCODE_CODEC", "mulaw")
TRANSCODE_TIMEOUT = float(os.getenv("TRANSCODE_TIMEOUT")) if os.getenv("TRANSCODE_TIMEOUT") else None
DELETE_RAW_AFTER_TRANSCODE = os.getenv("DELETE_RAW_AFTER_TRANSCODE", "false").lower() in ("1", "true", "yes")

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", None)
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", None)
TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com")
ICE_TOKEN_TTL = int(os.getenv("ICE_TOKEN_TTL", 3600))
