"""Push API webhook and live-session bridge callbacks."""

import hashlib
import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.database import get_db
from switchboard.dependencies import get_redis_client, get_session_manager, require_bridge_token
from switchboard.logging_config import get_logger
from switchboard.schemas.webhook import BridgeEventRequest, BridgeEventResponse, WebhookResponse
from switchboard.services.inbound_pipeline import InvalidWebhookPayload, ingest_webhook
from switchboard.services.session_manager import SessionManager, SessionNotFound
from switchboard.services.tenant_context import has_verify_token

logger = get_logger("webhook")

router = APIRouter()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.split("=", 1)[1], expected)


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    if hub_mode == "subscribe" and has_verify_token(db, hub_verify_token or ""):
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")
    logger.warning("Webhook verification failed", extra={"context": {"mode": hub_mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None, alias="X-Hub-Signature-256"),
    db: Session = Depends(get_db),
    session_manager: SessionManager = Depends(get_session_manager),
    redis_client=Depends(get_redis_client),
):
    raw_body = await request.body()
    if settings.webhook_app_secret and not verify_signature(raw_body, x_hub_signature_256, settings.webhook_app_secret):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw_body or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    try:
        summary = await ingest_webhook(db, payload, session_manager=session_manager, redis_client=redis_client)
    except InvalidWebhookPayload as e:
        logger.warning("Webhook payload rejected", extra={"context": {"error": str(e)}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return WebhookResponse(success=True, message="EVENT_RECEIVED", **summary)


@router.post(
    "/bridge/sessions/{session_id}/events",
    response_model=BridgeEventResponse,
    dependencies=[Depends(require_bridge_token)],
)
async def bridge_event(
    session_id: str,
    event: BridgeEventRequest,
    session_manager: SessionManager = Depends(get_session_manager),
):
    try:
        await session_manager.deliver(session_id, event.type, event.data)
    except SessionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return BridgeEventResponse(accepted=True, session_id=session_id)
