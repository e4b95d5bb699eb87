from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SessionStartRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128, pattern=r"^[A-Za-z0-9_\-]+$")


class SessionResponse(BaseModel):
    id: str
    tenant_id: str
    state: str
    auth_payload: Optional[str] = None
    connected_identifier: Optional[str] = None
    disconnect_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]


class SessionQrResponse(BaseModel):
    session_id: str
    state: str
    qr: str


class SessionSendRequest(BaseModel):
    to: str = Field(min_length=1)
    message: str = Field(min_length=1)


class SessionSendResponse(BaseModel):
    success: bool
    session_id: str
    message_id: Optional[str] = None
