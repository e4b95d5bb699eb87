import uuid
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from switchboard.database import dialect_insert
from switchboard.logging_config import get_logger
from switchboard.models import Contact, Conversation, Message
from switchboard.services.clock import utcnow
from switchboard.services.tenant_context import TenantContext, scoped

logger = get_logger("message_service")

messages = Message.__table__

DIRECTION_INCOMING = "incoming"
DIRECTION_OUTGOING = "outgoing"

# Delivery statuses only move forward along this order.
STATUS_ORDER = ("pending", "sent", "delivered", "read")
FAILED_ALLOWED_FROM = ("pending", "sent")


def insert_message(
    db: Session,
    tenant: TenantContext,
    *,
    contact: Contact,
    conversation: Conversation,
    direction: str,
    body: str,
    status: str,
    message_type: str = "text",
    external_message_id: Optional[str] = None,
    media_ref: Optional[str] = None,
    is_auto_reply: bool = False,
    message_metadata: Optional[dict] = None,
    created_at: Optional[datetime] = None,
) -> tuple[Message, bool]:
    """Insert a message unless the tenant already has one with this external id.

    Returns ``(message, created)``; on conflict the existing row is returned.
    """
    message_id = uuid.uuid4()
    result = db.execute(
        dialect_insert(db, messages)
        .values(
            id=message_id,
            tenant_id=tenant.tenant_id,
            contact_id=contact.id,
            conversation_id=conversation.id,
            external_message_id=external_message_id,
            direction=direction,
            message_type=message_type,
            body=body or "",
            media_ref=media_ref,
            status=status,
            is_auto_reply=is_auto_reply,
            metadata=message_metadata or {},
            created_at=created_at or utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "external_message_id"])
    )
    if result.rowcount > 0:
        return get_message(db, tenant, message_id), True

    existing = find_by_external_id(db, tenant, external_message_id)
    logger.info(
        "Duplicate external message id",
        extra={"context": {"tenant_id": str(tenant.tenant_id), "external_message_id": external_message_id}},
    )
    return existing, False


def get_message(db: Session, tenant: TenantContext, message_id: UUID) -> Optional[Message]:
    return scoped(db.query(Message), Message, tenant).filter(Message.id == message_id).first()


def find_by_external_id(db: Session, tenant: TenantContext, external_message_id: Optional[str]) -> Optional[Message]:
    if not external_message_id:
        return None
    return (
        scoped(db.query(Message), Message, tenant)
        .filter(Message.external_message_id == external_message_id)
        .first()
    )


def find_recent_duplicate(
    db: Session,
    tenant: TenantContext,
    *,
    contact_id: UUID,
    body: str,
    direction: str,
    window_seconds: int,
    sent_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[Message]:
    """Same body from the same contact in the same direction within the window.

    Rows are stamped with the sender's time, so a late redelivery carrying the
    original ``sent_at`` also matches even when it falls outside the window.
    """
    cutoff = (now or utcnow()) - timedelta(seconds=window_seconds)
    time_match = Message.created_at >= cutoff
    if sent_at is not None:
        time_match = or_(time_match, Message.created_at == sent_at)
    return (
        scoped(db.query(Message), Message, tenant)
        .filter(
            Message.contact_id == contact_id,
            Message.direction == direction,
            Message.body == (body or ""),
            time_match,
        )
        .order_by(Message.created_at.desc())
        .first()
    )


def list_messages(
    db: Session, tenant: TenantContext, *, contact_id: Optional[UUID] = None, limit: int = 100
) -> list[Message]:
    query = scoped(db.query(Message), Message, tenant)
    if contact_id:
        query = query.filter(Message.contact_id == contact_id)
    return query.order_by(Message.created_at.desc()).limit(limit).all()


def allowed_previous_statuses(new_status: str) -> tuple[str, ...]:
    if new_status == "failed":
        return FAILED_ALLOWED_FROM
    if new_status not in STATUS_ORDER:
        return ()
    return STATUS_ORDER[: STATUS_ORDER.index(new_status)]


def update_status(db: Session, tenant: TenantContext, external_message_id: str, new_status: str) -> bool:
    """Advance a message's delivery status. Returns False for unknown ids or backward moves."""
    previous = allowed_previous_statuses(new_status)
    if not external_message_id or not previous:
        return False
    result = db.execute(
        update(messages)
        .where(
            messages.c.tenant_id == tenant.tenant_id,
            messages.c.external_message_id == external_message_id,
            messages.c.status.in_(previous),
        )
        .values(status=new_status)
    )
    return result.rowcount > 0
