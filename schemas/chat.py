from pydantic import BaseModel
from typing import Optional


class SendMessageRequest(BaseModel):
    user: Optional[str] = None
    text: Optional[str] = None
    cid: Optional[str] = None

class SendMessageResponse(BaseModel):
    ok: bool
    persisted: bool
    ts: int

class ChatMessage(BaseModel):
    ts: int
    user: str
    text: str
    cid: Optional[str] = None

class HealthResponse(BaseModel):
    ok: bool
    connections: int
    voice_peers: int
