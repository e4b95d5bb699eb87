import uuid

from sqlalchemy import Column, DateTime, Integer, Text, UniqueConstraint, Uuid

from switchboard.database import Base, JSONType


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("tenant_id", "external_address", name="uq_contacts_tenant_address"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False)
    external_address = Column(Text, nullable=False)  # phone number or handle
    display_name = Column(Text)
    stage = Column(Text)  # lead, prospect, customer, ...
    message_count = Column(Integer, nullable=False, default=0)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True))
    contact_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
