import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from switchboard.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, suspended
    created_at = Column(DateTime(timezone=True), nullable=False)

    credentials = relationship("TenantCredential", back_populates="tenant")
    subscription = relationship("TenantSubscription", back_populates="tenant", uselist=False)
