from sqlalchemy import BigInteger, Column, DateTime, Integer, Text, UniqueConstraint

from switchboard.database import Base


class RateLimitBucket(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (UniqueConstraint("key", "action", "window_start", name="uq_rate_limits_bucket"),)

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    key = Column(Text, nullable=False)  # tenant id or client ip
    action = Column(Text, nullable=False)
    window_start = Column(DateTime(timezone=True), nullable=False, index=True)
    count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
