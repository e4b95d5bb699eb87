from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, Text, Uuid, text

from switchboard.database import Base, JSONType

ACTIVE_JOB_CLAUSE = text("status IN ('pending', 'reserved')")


class JobQueueItem(Base):
    __tablename__ = "job_queue"
    __table_args__ = (
        Index(
            "uq_job_queue_active_reference",
            "type",
            "reference_id",
            unique=True,
            postgresql_where=ACTIVE_JOB_CLAUSE,
            sqlite_where=ACTIVE_JOB_CLAUSE,
        ),
        Index("ix_job_queue_status_available", "status", "available_at"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id = Column(Uuid, nullable=False)
    job_type = Column("type", Text, nullable=False)
    reference_id = Column(Text, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="pending")  # pending, reserved, completed, failed
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime(timezone=True), nullable=False)
    reserved_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
