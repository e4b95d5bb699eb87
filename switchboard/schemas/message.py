from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

MediaType = Literal["image", "document", "audio", "video", "sticker"]


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=1)
    message: str = ""
    media_ref: Optional[str] = Field(default=None, min_length=1, max_length=2048)
    media_type: MediaType = "image"

    @model_validator(mode="after")
    def require_text_or_media(self):
        if not self.message.strip() and not self.media_ref:
            raise ValueError("message or media_ref is required")
        return self


class SendMessageResponse(BaseModel):
    success: bool
    status: str
    message_id: Optional[UUID] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    queued: bool = False


class JobResponse(BaseModel):
    id: int
    tenant_id: UUID
    type: str
    reference_id: str
    status: str
    attempts: int
    available_at: datetime
    last_error: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
