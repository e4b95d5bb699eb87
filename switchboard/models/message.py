import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from switchboard.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        # NULL ids are distinct, so only messages carrying an external id are deduplicated here.
        UniqueConstraint("tenant_id", "external_message_id", name="uq_messages_tenant_external_id"),
        Index("ix_messages_tenant_contact_created", "tenant_id", "contact_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    external_message_id = Column(Text)
    direction = Column(Text, nullable=False)  # incoming, outgoing
    message_type = Column(Text, nullable=False, default="text")
    body = Column(Text, nullable=False, default="")
    media_ref = Column(Text)
    status = Column(Text, nullable=False)  # received, pending, sent, delivered, read, failed
    is_auto_reply = Column(Boolean, nullable=False, default=False)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
