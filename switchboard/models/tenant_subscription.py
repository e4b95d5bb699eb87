from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from switchboard.database import Base


class TenantSubscription(Base):
    __tablename__ = "tenant_subscriptions"

    tenant_id = Column(Uuid, ForeignKey("tenants.id"), primary_key=True)
    plan = Column(Text, nullable=False, default="free")
    status = Column(Text, nullable=False, default="active")  # active, past_due, cancelled
    message_limit = Column(Integer, nullable=False, default=1000)
    messages_used = Column(Integer, nullable=False, default=0)
    current_period_start = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))

    tenant = relationship("Tenant", back_populates="subscription")

    @property
    def remaining_messages(self) -> int:
        return max(0, (self.message_limit or 0) - (self.messages_used or 0))
