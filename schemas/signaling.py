from pydantic import BaseModel
from typing import Any, Optional


class InboundMessage(BaseModel):
    type: str
    room_id: Optional[str] = None
    payload: Any = None


class RecordingErrorPayload(BaseModel):
    message: str
