"""Inbound pipeline: normalize -> dedupe -> resolve -> persist -> match -> dispatch.

Events come from the push webhook (``entry[].changes[].value``) or from a live
session ``message`` event. Both are normalized to ``InboundMessage`` and then go
through ``ingest`` under an explicit tenant.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.logging_config import get_logger, get_tenant_logger
from switchboard.models import Message
from switchboard.services import dedupe_cache, job_queue, outbound_dispatcher, reply_matcher
from switchboard.services.clock import utcnow
from switchboard.services.conversation_service import (
    get_contact,
    get_or_create_contact,
    get_or_create_conversation,
    record_incoming,
    sanitize_address,
)
from switchboard.services.message_service import (
    DIRECTION_INCOMING,
    find_by_external_id,
    find_recent_duplicate,
    insert_message,
    update_status,
)
from switchboard.services.result import Result
from switchboard.services.session_manager import SessionManager
from switchboard.services.tenant_context import (
    TenantContext,
    TenantNotFound,
    record_webhook,
    resolve_tenant,
    resolve_tenant_by_phone_number_id,
)

logger = get_logger("inbound_pipeline")

WEBHOOK_OBJECT = "whatsapp_business_account"

OUTCOME_CREATED = "created"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_DROPPED = "dropped"

MEDIA_TYPES = ("image", "audio", "video", "document", "sticker", "voice")
TEXT_BEARING_TYPES = ("text", "button", "interactive")

AUTO_REPLY_JOB = "send_message"


class InvalidWebhookPayload(ValueError):
    pass


@dataclass
class InboundMessage:
    external_address: str
    message_type: str
    body: str
    timestamp: datetime
    external_message_id: Optional[str] = None
    media_ref: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class StatusUpdate:
    external_message_id: str
    status: str


@dataclass
class WebhookBatch:
    phone_number_id: str
    messages: list[InboundMessage] = field(default_factory=list)
    statuses: list[StatusUpdate] = field(default_factory=list)


@dataclass
class IngestOutcome:
    outcome: str
    message: Optional[Message] = None
    auto_reply: Optional[Result] = None


def _parse_timestamp(value: Any) -> datetime:
    try:
        seconds = int(value)
    except (TypeError, ValueError, OverflowError):
        return utcnow()
    # Live sessions sometimes report milliseconds.
    if seconds > 10_000_000_000:
        seconds //= 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return utcnow()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value)


def _normalize_cloud_message(raw: dict[str, Any], names: dict[str, str]) -> Optional[InboundMessage]:
    message_type = _text(raw.get("type")) or "unknown"
    body = ""
    media_ref = None

    if message_type == "text":
        body = _text(_as_dict(raw.get("text")).get("body"))
    elif message_type in MEDIA_TYPES:
        media = _as_dict(raw.get(message_type))
        media_ref = _text(media.get("id") or media.get("link")) or None
        body = _text(media.get("caption"))
    elif message_type == "location":
        location = _as_dict(raw.get("location"))
        if location.get("latitude") is not None and location.get("longitude") is not None:
            body = f"Location: {location['latitude']}, {location['longitude']}"
    elif message_type == "button":
        body = _text(_as_dict(raw.get("button")).get("text"))
    elif message_type == "interactive":
        interactive = _as_dict(raw.get("interactive"))
        reply = _as_dict(interactive.get("button_reply") or interactive.get("list_reply"))
        body = _text(reply.get("title"))

    sender = _text(raw.get("from"))
    address = sanitize_address(sender)
    if not address:
        return None
    return InboundMessage(
        external_address=address,
        message_type=message_type,
        body=body.strip(),
        timestamp=_parse_timestamp(raw.get("timestamp")),
        external_message_id=_text(raw.get("id")) or None,
        media_ref=media_ref,
        display_name=names.get(sender),
    )


def normalize_webhook_value(value: dict[str, Any]) -> Optional[WebhookBatch]:
    """Adapt one ``changes[].value`` object. Unknown fields and malformed items are ignored."""
    phone_number_id = _text(_as_dict(value.get("metadata")).get("phone_number_id"))
    if not phone_number_id:
        return None

    names = {}
    for contact in _as_list(value.get("contacts")):
        contact = _as_dict(contact)
        wa_id = _text(contact.get("wa_id"))
        name = _text(_as_dict(contact.get("profile")).get("name"))
        if wa_id and name:
            names[wa_id] = name

    batch = WebhookBatch(phone_number_id=phone_number_id)
    for raw in _as_list(value.get("messages")):
        if not isinstance(raw, dict):
            continue
        message = _normalize_cloud_message(raw, names)
        if message is not None:
            batch.messages.append(message)
    for raw in _as_list(value.get("statuses")):
        raw = _as_dict(raw)
        external_id, status = _text(raw.get("id")), _text(raw.get("status"))
        if external_id and status:
            batch.statuses.append(StatusUpdate(external_message_id=external_id, status=status))
    return batch


def normalize_webhook_payload(payload: Any) -> list[WebhookBatch]:
    if not isinstance(payload, dict) or payload.get("object") != WEBHOOK_OBJECT:
        raise InvalidWebhookPayload("Unsupported webhook object")
    batches = []
    for entry in _as_list(payload.get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            change = _as_dict(change)
            if change.get("field") != "messages":
                continue
            batch = normalize_webhook_value(_as_dict(change.get("value")))
            if batch is not None:
                batches.append(batch)
    return batches


def normalize_live_message(data: dict[str, Any]) -> Optional[InboundMessage]:
    """Adapt a live-session ``message`` event: ``{from, body, hasMedia, timestamp, waMessageId, messageType}``."""
    data = _as_dict(data)
    address = sanitize_address(_text(data.get("from")))
    if not address:
        return None
    has_media = bool(data.get("hasMedia"))
    message_type = _text(data.get("messageType") or data.get("type")) or ("media" if has_media else "text")
    if message_type == "chat":
        message_type = "text"
    return InboundMessage(
        external_address=address,
        message_type=message_type,
        body=_text(data.get("body")).strip(),
        timestamp=_parse_timestamp(data.get("timestamp")),
        external_message_id=_text(data.get("waMessageId") or data.get("id")) or None,
        media_ref=_text(data.get("mediaRef") or (data.get("waMessageId") if has_media else None)) or None,
        display_name=_text(data.get("notifyName") or data.get("pushname")) or None,
    )


async def ingest(
    db: Session,
    tenant: TenantContext,
    inbound: Optional[InboundMessage],
    *,
    session_manager: Optional[SessionManager] = None,
    redis_client=None,
) -> Result[IngestOutcome]:
    log = get_tenant_logger("inbound_pipeline", tenant.tenant_id)

    if inbound is None or (not inbound.body and not inbound.media_ref):
        log.debug("Dropped empty inbound event")
        return Result.success(IngestOutcome(OUTCOME_DROPPED))

    external_id = inbound.external_message_id
    if external_id:
        if await dedupe_cache.seen_before(redis_client, tenant.tenant_id, external_id):
            log.info("Duplicate inbound message (cache)", context={"external_message_id": external_id})
            return Result.success(IngestOutcome(OUTCOME_DUPLICATE, find_by_external_id(db, tenant, external_id)))
        existing = find_by_external_id(db, tenant, external_id)
        if existing is not None:
            log.info("Duplicate inbound message", context={"external_message_id": external_id})
            return Result.success(IngestOutcome(OUTCOME_DUPLICATE, existing))

    try:
        contact = get_or_create_contact(db, tenant, inbound.external_address, inbound.display_name)

        if not external_id:
            recent = find_recent_duplicate(
                db,
                tenant,
                contact_id=contact.id,
                body=inbound.body,
                direction=DIRECTION_INCOMING,
                window_seconds=settings.content_dedupe_window_seconds,
                sent_at=inbound.timestamp,
            )
            if recent is not None:
                db.commit()
                log.info("Dropped repeated inbound content", context={"contact_id": str(contact.id)})
                return Result.success(IngestOutcome(OUTCOME_DROPPED, recent))

        conversation = get_or_create_conversation(db, tenant, contact)
        message, created = insert_message(
            db,
            tenant,
            contact=contact,
            conversation=conversation,
            direction=DIRECTION_INCOMING,
            body=inbound.body,
            status="received",
            message_type=inbound.message_type,
            external_message_id=external_id,
            media_ref=inbound.media_ref,
            created_at=inbound.timestamp,
        )
        if not created:
            db.commit()
            return Result.success(IngestOutcome(OUTCOME_DUPLICATE, message))

        record_incoming(db, tenant, contact, conversation, inbound.timestamp)
        db.commit()
    except Exception:
        db.rollback()
        await dedupe_cache.forget(redis_client, tenant.tenant_id, external_id)
        raise

    log.info(
        "Inbound message stored",
        context={"message_id": str(message.id), "contact_id": str(contact.id), "type": inbound.message_type},
    )

    outcome = IngestOutcome(OUTCOME_CREATED, message)
    if inbound.body and inbound.message_type in TEXT_BEARING_TYPES:
        outcome.auto_reply = await _auto_reply(db, tenant, message, session_manager=session_manager)
    return Result.success(outcome)


async def _auto_reply(
    db: Session,
    tenant: TenantContext,
    message: Message,
    *,
    session_manager: Optional[SessionManager],
) -> Optional[Result]:
    log = get_tenant_logger("inbound_pipeline", tenant.tenant_id)
    contact = get_contact(db, tenant, message.contact_id)
    rule = reply_matcher.match(db, tenant, message.body, contact=contact)
    db.commit()
    if rule is None:
        return None

    result = await outbound_dispatcher.send_message(
        db,
        tenant,
        contact.external_address,
        rule.reply_text,
        session_manager=session_manager,
        auto_reply_rule_id=rule.id,
    )
    if result.ok:
        return result

    if result.retryable:
        queued = job_queue.enqueue(
            db,
            job_type=AUTO_REPLY_JOB,
            reference_id=f"autoreply:{message.id}",
            payload={
                "address": contact.external_address,
                "content": rule.reply_text,
                "auto_reply_rule_id": str(rule.id),
            },
            tenant_id=tenant.tenant_id,
        )
        db.commit()
        log.warning(
            f"Auto-reply send failed, retry queued={queued}: {result.error}",
            context={"message_id": str(message.id), "rule_id": str(rule.id)},
        )
    else:
        log.warning(
            f"Auto-reply not sent: {result.error_code}",
            context={"message_id": str(message.id), "rule_id": str(rule.id)},
        )
    return result


async def ingest_live_message(
    db: Session,
    tenant_id: UUID,
    data: dict[str, Any],
    *,
    session_manager: Optional[SessionManager] = None,
    redis_client=None,
) -> Result[IngestOutcome]:
    try:
        tenant = resolve_tenant(db, tenant_id)
    except TenantNotFound as e:
        logger.warning(f"Live message for unknown tenant dropped: {e}")
        return Result.failure(str(e), "tenant_not_found")
    return await ingest(
        db,
        tenant,
        normalize_live_message(data),
        session_manager=session_manager,
        redis_client=redis_client,
    )


async def ingest_webhook(
    db: Session,
    payload: Any,
    *,
    session_manager: Optional[SessionManager] = None,
    redis_client=None,
) -> dict[str, int]:
    """Route each change to its tenant and ingest it. Raises InvalidWebhookPayload on a foreign shape."""
    summary = {"created": 0, "duplicate": 0, "dropped": 0, "statuses": 0, "unrouted": 0}
    for batch in normalize_webhook_payload(payload):
        try:
            tenant = resolve_tenant_by_phone_number_id(db, batch.phone_number_id)
        except TenantNotFound:
            logger.warning(
                "Webhook for unknown phone number id",
                extra={"context": {"phone_number_id": batch.phone_number_id}},
            )
            summary["unrouted"] += len(batch.messages) + len(batch.statuses)
            continue

        record_webhook(db, tenant, batch.phone_number_id)
        for status in batch.statuses:
            if update_status(db, tenant, status.external_message_id, status.status):
                summary["statuses"] += 1
        db.commit()

        for inbound in batch.messages:
            result = await ingest(
                db,
                tenant,
                inbound,
                session_manager=session_manager,
                redis_client=redis_client,
            )
            summary[result.value.outcome] += 1
    return summary
