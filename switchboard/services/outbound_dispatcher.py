"""Quota-checked, rate-limited sends over the tenant's active channel."""

from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.logging_config import get_tenant_logger
from switchboard.models import Message
from switchboard.services import cloud_api_service
from switchboard.services.channel_errors import ChannelSendError
from switchboard.services.conversation_service import (
    get_or_create_contact,
    get_or_create_conversation,
    record_outgoing,
    sanitize_address,
)
from switchboard.services.message_service import DIRECTION_OUTGOING, insert_message
from switchboard.services.rate_limiter import check_and_increment
from switchboard.services.result import Result
from switchboard.services.session_manager import SessionManager, SessionNotReady
from switchboard.services.tenant_context import (
    TenantContext,
    consume_message_allowance,
    get_push_credentials,
    get_subscription,
    has_message_allowance,
)

SEND_ACTION = "send_message"

CHANNEL_CLOUD_API = "cloud_api"
CHANNEL_LIVE_SESSION = "live_session"


def _persist_outgoing(
    db: Session,
    tenant: TenantContext,
    *,
    address: str,
    content: str,
    status: str,
    channel: str,
    external_message_id: Optional[str] = None,
    media_ref: Optional[str] = None,
    media_type: Optional[str] = None,
    auto_reply_rule_id: Optional[UUID] = None,
    error: Optional[str] = None,
) -> Message:
    contact = get_or_create_contact(db, tenant, address)
    conversation = get_or_create_conversation(db, tenant, contact)
    metadata = {"channel": channel}
    if auto_reply_rule_id:
        metadata["auto_reply_rule_id"] = str(auto_reply_rule_id)
    if error:
        metadata["error"] = error[:500]
    message, _ = insert_message(
        db,
        tenant,
        contact=contact,
        conversation=conversation,
        direction=DIRECTION_OUTGOING,
        body=content,
        status=status,
        message_type=media_type if media_ref else "text",
        external_message_id=external_message_id,
        media_ref=media_ref,
        is_auto_reply=auto_reply_rule_id is not None,
        message_metadata=metadata,
    )
    record_outgoing(db, tenant, contact, conversation, message.created_at)
    return message


async def send_message(
    db: Session,
    tenant: TenantContext,
    address: str,
    content: str,
    *,
    media_ref: Optional[str] = None,
    media_type: str = "image",
    session_manager: Optional[SessionManager] = None,
    auto_reply_rule_id: Optional[UUID] = None,
    record_failure: bool = True,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Result[Message]:
    """Send ``content`` to ``address`` for this tenant.

    With ``media_ref`` (a URL or an uploaded media id) the message is sent as
    ``media_type`` and ``content`` becomes its caption, which may be empty.

    Order of checks: quota, rate limit, channel. The push API wins over a READY
    live session when both exist. Failures carry ``retryable`` so the caller can
    decide whether to queue a retry.
    """
    log = get_tenant_logger("outbound_dispatcher", tenant.tenant_id)
    contact_address = sanitize_address(address)
    content = content or ""
    if not contact_address or (not content.strip() and not media_ref):
        return Result.failure("Recipient and content are required", "invalid_request")
    if media_ref and media_type not in cloud_api_service.MEDIA_SEND_TYPES:
        return Result.failure(f"Unsupported media type: {media_type}", "invalid_request")

    if not has_message_allowance(get_subscription(db, tenant)):
        log.info("Send rejected: message quota exhausted")
        return Result.failure("Message quota exceeded", "quota_exceeded")

    allowed = check_and_increment(
        db,
        str(tenant.tenant_id),
        SEND_ACTION,
        settings.send_rate_limit,
        settings.send_rate_window_seconds,
    )
    if not allowed:
        log.info("Send rejected: rate limited")
        return Result.failure("Rate limit exceeded", "rate_limited")

    credential = get_push_credentials(db, tenant)
    session = None
    if credential is None and session_manager is not None:
        session = session_manager.ready_session(tenant.tenant_id)
    if credential is None and session is None:
        log.warning("Send rejected: no active channel")
        return Result.failure("No active channel for tenant", "no_active_channel")

    channel = CHANNEL_CLOUD_API if credential is not None else CHANNEL_LIVE_SESSION
    caption = content.strip() or None
    try:
        if credential is not None and media_ref:
            external_id = await cloud_api_service.send_media(
                credential, address, media_ref, media_type=media_type, caption=caption, client=http_client
            )
        elif credential is not None:
            external_id = await cloud_api_service.send_text(credential, address, content, client=http_client)
        elif media_ref:
            external_id = await session_manager.send_media(
                tenant.tenant_id, session.id, address, media_ref, media_type=media_type, caption=caption
            )
        else:
            external_id = await session_manager.send(tenant.tenant_id, session.id, address, content)
    except (ChannelSendError, SessionNotReady) as e:
        retryable = e.retryable if isinstance(e, ChannelSendError) else True
        log.warning(
            f"Send failed: {e}",
            context={"channel": channel, "retryable": retryable, "to": contact_address},
        )
        failed = None
        if record_failure:
            failed = _persist_outgoing(
                db,
                tenant,
                address=contact_address,
                content=content,
                status="failed",
                channel=channel,
                media_ref=media_ref,
                media_type=media_type,
                auto_reply_rule_id=auto_reply_rule_id,
                error=str(e),
            )
            db.commit()
        code = "send_failed" if retryable else "invalid_recipient"
        return Result.failure(str(e), code, retryable=retryable, value=failed)

    message = _persist_outgoing(
        db,
        tenant,
        address=contact_address,
        content=content,
        status="sent",
        channel=channel,
        external_message_id=external_id,
        media_ref=media_ref,
        media_type=media_type,
        auto_reply_rule_id=auto_reply_rule_id,
    )
    consume_message_allowance(db, tenant)
    db.commit()
    log.info(
        "Message sent",
        context={"channel": channel, "message_id": str(message.id), "type": message.message_type},
    )
    return Result.success(message)
