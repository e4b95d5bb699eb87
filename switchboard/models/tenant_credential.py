import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from switchboard.database import Base


class TenantCredential(Base):
    """Push API credentials; the webhook is routed by phone_number_id."""

    __tablename__ = "tenant_credentials"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    access_token = Column(Text, nullable=False)
    phone_number_id = Column(Text, nullable=False, unique=True)
    api_version = Column(Text)
    webhook_verify_token = Column(Text)
    business_name = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    last_webhook_at = Column(DateTime(timezone=True))

    tenant = relationship("Tenant", back_populates="credentials")
