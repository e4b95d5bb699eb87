import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from switchboard.database import dialect_insert
from switchboard.models import Contact, Conversation
from switchboard.services.clock import utcnow
from switchboard.services.tenant_context import TenantContext, scoped

contacts = Contact.__table__
conversations = Conversation.__table__


def sanitize_address(value: str) -> str:
    """Digits of a phone number or chat id, at most the last 20."""
    return re.sub(r"[^0-9]", "", value or "")[-20:]


def get_or_create_contact(
    db: Session, tenant: TenantContext, external_address: str, display_name: Optional[str] = None
) -> Contact:
    """Find contact by address or create it; safe against a concurrent insert of the same contact."""
    now = utcnow()
    db.execute(
        dialect_insert(db, contacts)
        .values(
            tenant_id=tenant.tenant_id,
            external_address=external_address,
            display_name=display_name,
            message_count=0,
            unread_count=0,
            metadata={},
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "external_address"])
    )
    contact = get_contact_by_address(db, tenant, external_address)
    if display_name and not contact.display_name:
        contact.display_name = display_name
        db.flush()
    return contact


def get_contact_by_address(db: Session, tenant: TenantContext, external_address: str) -> Optional[Contact]:
    return (
        scoped(db.query(Contact), Contact, tenant)
        .filter(Contact.external_address == external_address)
        .first()
    )


def get_contact(db: Session, tenant: TenantContext, contact_id: UUID) -> Optional[Contact]:
    return scoped(db.query(Contact), Contact, tenant).filter(Contact.id == contact_id).first()


def list_contacts(db: Session, tenant: TenantContext, *, limit: int = 100) -> list[Contact]:
    return (
        scoped(db.query(Contact), Contact, tenant)
        .order_by(Contact.last_message_at.desc())
        .limit(limit)
        .all()
    )


def get_or_create_conversation(db: Session, tenant: TenantContext, contact: Contact) -> Conversation:
    """Find the contact's conversation or create it."""
    now = utcnow()
    db.execute(
        dialect_insert(db, conversations)
        .values(tenant_id=tenant.tenant_id, contact_id=contact.id, is_active=True, started_at=now)
        .on_conflict_do_nothing(index_elements=["tenant_id", "contact_id"])
    )
    return (
        scoped(db.query(Conversation), Conversation, tenant)
        .filter(Conversation.contact_id == contact.id)
        .first()
    )


def record_incoming(db: Session, tenant: TenantContext, contact: Contact, conversation: Conversation, at: datetime):
    """Bump unread/message counters and activity timestamps for an incoming message."""
    db.execute(
        update(contacts)
        .where(contacts.c.id == contact.id, contacts.c.tenant_id == tenant.tenant_id)
        .values(
            unread_count=contacts.c.unread_count + 1,
            message_count=contacts.c.message_count + 1,
            last_message_at=at,
        )
    )
    touch_conversation(db, tenant, conversation, at)


def record_outgoing(db: Session, tenant: TenantContext, contact: Contact, conversation: Conversation, at: datetime):
    db.execute(
        update(contacts)
        .where(contacts.c.id == contact.id, contacts.c.tenant_id == tenant.tenant_id)
        .values(last_message_at=at)
    )
    touch_conversation(db, tenant, conversation, at)


def touch_conversation(db: Session, tenant: TenantContext, conversation: Conversation, at: datetime):
    db.execute(
        update(conversations)
        .where(conversations.c.id == conversation.id, conversations.c.tenant_id == tenant.tenant_id)
        .values(last_message_at=at, is_active=True)
    )
