import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, Uuid

from switchboard.database import Base, JSONType


class AutoReplyRule(Base):
    __tablename__ = "auto_reply_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    title = Column(Text)
    reply_text = Column(Text, nullable=False)
    shortcuts = Column(JSONType, nullable=False, default=list)
    match_mode = Column(Text, nullable=False, default="exact")  # any, all, exact, regex
    case_sensitive = Column(Boolean, nullable=False, default=False)
    conditions = Column(JSONType, nullable=False, default=list)  # [{field, operator, value}]
    business_hours_start = Column(Text)  # HH:MM
    business_hours_end = Column(Text)  # HH:MM
    timezone = Column(Text, nullable=False, default="UTC")
    active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
