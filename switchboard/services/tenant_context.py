"""Tenant identity and tenant-scoped configuration lookups.

Every repository/service function below takes a ``TenantContext`` right after the
DB session. There is no ambient "current tenant": a context is produced by one of
the resolvers and passed along explicitly. Cross-tenant reads need a context built
with ``as_admin=True``.
"""

from dataclasses import dataclass
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Query, Session

from switchboard.models import Tenant, TenantCredential, TenantSubscription
from switchboard.services.clock import utcnow


class TenantNotFound(Exception):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Tenant not found: {reference}")


@dataclass(frozen=True)
class TenantContext:
    tenant_id: Optional[UUID]
    as_admin: bool = False

    def __post_init__(self):
        if self.tenant_id is None and not self.as_admin:
            raise ValueError("tenant_id is required for a non-admin context")

    @classmethod
    def operator(cls) -> "TenantContext":
        """Context for operator tooling that reads across tenants."""
        return cls(tenant_id=None, as_admin=True)


def _coerce_tenant_id(tenant_id: Union[str, UUID]) -> UUID:
    if isinstance(tenant_id, UUID):
        return tenant_id
    try:
        return UUID(str(tenant_id))
    except ValueError as e:
        raise TenantNotFound(str(tenant_id)) from e


def resolve_tenant(db: Session, tenant_id: Union[str, UUID]) -> TenantContext:
    """Lookup-or-fail. Suspended tenants are treated as missing."""
    tenant_uuid = _coerce_tenant_id(tenant_id)
    tenant = db.query(Tenant).filter(Tenant.id == tenant_uuid).first()
    if not tenant or tenant.status != "active":
        raise TenantNotFound(str(tenant_id))
    return TenantContext(tenant_id=tenant.id)


def resolve_tenant_by_phone_number_id(db: Session, phone_number_id: str) -> TenantContext:
    """Route a push notification to its tenant by the business phone number id."""
    credential = (
        db.query(TenantCredential)
        .filter(TenantCredential.phone_number_id == phone_number_id, TenantCredential.is_active.is_(True))
        .first()
    )
    if not credential:
        raise TenantNotFound(f"phone_number_id={phone_number_id}")
    return resolve_tenant(db, credential.tenant_id)


def scoped(query: Query, model, tenant: TenantContext) -> Query:
    """Apply the tenant filter to a query over a tenant-owned model."""
    if tenant.as_admin and tenant.tenant_id is None:
        return query
    return query.filter(model.tenant_id == tenant.tenant_id)


def get_push_credentials(db: Session, tenant: TenantContext) -> Optional[TenantCredential]:
    return (
        scoped(db.query(TenantCredential), TenantCredential, tenant)
        .filter(TenantCredential.is_active.is_(True))
        .order_by(TenantCredential.phone_number_id)
        .first()
    )


def has_verify_token(db: Session, token: str) -> bool:
    """True when any active credential uses this webhook verify token."""
    if not token:
        return False
    return (
        db.query(TenantCredential.id)
        .filter(TenantCredential.is_active.is_(True), TenantCredential.webhook_verify_token == token)
        .first()
        is not None
    )


def get_subscription(db: Session, tenant: TenantContext) -> Optional[TenantSubscription]:
    return scoped(db.query(TenantSubscription), TenantSubscription, tenant).first()


def has_message_allowance(subscription: Optional[TenantSubscription]) -> bool:
    # No subscription row means the tenant is not metered.
    if subscription is None:
        return True
    if subscription.status != "active":
        return False
    return (subscription.messages_used or 0) < (subscription.message_limit or 0)


def consume_message_allowance(db: Session, tenant: TenantContext) -> None:
    db.execute(
        update(TenantSubscription.__table__)
        .where(TenantSubscription.__table__.c.tenant_id == tenant.tenant_id)
        .values(messages_used=TenantSubscription.__table__.c.messages_used + 1)
    )


def record_webhook(db: Session, tenant: TenantContext, phone_number_id: str) -> None:
    db.execute(
        update(TenantCredential.__table__)
        .where(
            TenantCredential.__table__.c.tenant_id == tenant.tenant_id,
            TenantCredential.__table__.c.phone_number_id == phone_number_id,
        )
        .values(last_webhook_at=utcnow())
    )
