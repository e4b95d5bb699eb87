from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class WebhookResponse(BaseModel):
    success: bool
    message: str
    created: int = 0
    duplicate: int = 0
    dropped: int = 0
    statuses: int = 0
    unrouted: int = 0


class BridgeEventRequest(BaseModel):
    type: str = Field(validation_alias=AliasChoices("type", "event"))
    data: dict[str, Any] = Field(default_factory=dict)


class BridgeEventResponse(BaseModel):
    accepted: bool
    session_id: str
    detail: Optional[str] = None
