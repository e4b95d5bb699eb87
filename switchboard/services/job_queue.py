"""Durable job queue with at-least-once delivery and fixed backoff."""

import random
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from switchboard.database import dialect_insert
from switchboard.logging_config import get_logger
from switchboard.models import JobQueueItem
from switchboard.services.clock import utcnow
from switchboard.services.tenant_context import TenantContext, scoped

logger = get_logger("job_queue")

JOB_PENDING = "pending"
JOB_RESERVED = "reserved"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

ACTIVE_STATUSES = (JOB_PENDING, JOB_RESERVED)

jobs = JobQueueItem.__table__

_RETURNED_COLUMNS = (
    jobs.c.id,
    jobs.c.tenant_id,
    jobs.c.type,
    jobs.c.reference_id,
    jobs.c.payload,
    jobs.c.attempts,
    jobs.c.created_at,
)


def enqueue(
    db: Session,
    *,
    job_type: str,
    reference_id,
    payload: dict[str, Any],
    tenant_id: UUID,
    available_at=None,
) -> bool:
    """Insert a pending job; no-op while one with the same (type, reference_id) is pending or reserved.

    Returns True when a row was created. The caller commits.
    """
    now = utcnow()
    stmt = (
        dialect_insert(db, jobs)
        .values(
            tenant_id=tenant_id,
            type=job_type,
            reference_id=str(reference_id),
            payload=payload,
            status=JOB_PENDING,
            attempts=0,
            available_at=available_at or now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing()
    )
    result = db.execute(stmt)
    created = result.rowcount > 0
    if not created:
        logger.debug(f"Job already scheduled: {job_type}/{reference_id}")
    return created


def reserve_batch(db: Session, limit: int, *, now=None) -> list[dict[str, Any]]:
    """Atomically move up to ``limit`` due pending jobs to reserved, oldest id first."""
    now = now or utcnow()
    candidates = (
        select(jobs.c.id)
        .where(jobs.c.status == JOB_PENDING, jobs.c.available_at <= now)
        .order_by(jobs.c.id)
        .limit(limit)
    )
    if db.get_bind().dialect.name != "sqlite":
        candidates = candidates.with_for_update(skip_locked=True)

    rows = (
        db.execute(
            update(jobs)
            .where(jobs.c.id.in_(candidates), jobs.c.status == JOB_PENDING)
            .values(status=JOB_RESERVED, reserved_at=now, updated_at=now)
            .returning(*_RETURNED_COLUMNS)
        )
        .mappings()
        .all()
    )
    db.commit()
    return sorted((dict(row) for row in rows), key=lambda row: row["id"])


def mark_succeeded(db: Session, job_id: int) -> bool:
    now = utcnow()
    result = db.execute(
        update(jobs)
        .where(jobs.c.id == job_id, jobs.c.status.in_(ACTIVE_STATUSES))
        .values(status=JOB_COMPLETED, completed_at=now, reserved_at=None, last_error=None, updated_at=now)
    )
    db.commit()
    return result.rowcount > 0


def mark_failed(
    db: Session,
    job_id: int,
    error: str,
    *,
    max_attempts: int,
    backoff_seconds: int,
    jitter_seconds: float = 0,
    now=None,
) -> Optional[str]:
    """Count a failed attempt. Returns the resulting status, or None if the job was already terminal."""
    now = now or utcnow()
    delay = backoff_seconds + (random.uniform(0, jitter_seconds) if jitter_seconds > 0 else 0)
    exhausted = jobs.c.attempts + 1 >= max_attempts

    row = db.execute(
        update(jobs)
        .where(jobs.c.id == job_id, jobs.c.status.in_(ACTIVE_STATUSES))
        .values(
            attempts=jobs.c.attempts + 1,
            status=case((exhausted, JOB_FAILED), else_=JOB_PENDING),
            available_at=case((exhausted, jobs.c.available_at), else_=now + timedelta(seconds=delay)),
            reserved_at=None,
            last_error=(error or "")[:2000],
            updated_at=now,
        )
        .returning(jobs.c.status, jobs.c.attempts)
    ).first()
    db.commit()
    if row is None:
        return None
    if row.status == JOB_FAILED:
        logger.error(
            f"Job {job_id} failed permanently after {row.attempts} attempts",
            extra={"context": {"job_id": job_id, "error": error}},
        )
    return row.status


def release_stale_reservations(db: Session, older_than_seconds: int, *, now=None) -> int:
    """Return reservations held longer than ``older_than_seconds`` to pending (crashed workers)."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=older_than_seconds)
    result = db.execute(
        update(jobs)
        .where(jobs.c.status == JOB_RESERVED, jobs.c.reserved_at < cutoff)
        .values(status=JOB_PENDING, reserved_at=None, updated_at=now)
    )
    db.commit()
    released = result.rowcount or 0
    if released:
        logger.warning(f"Released {released} stale job reservations")
    return released


def list_jobs(
    db: Session, tenant: TenantContext, status: Optional[str] = None, *, limit: int = 100
) -> list[JobQueueItem]:
    query = scoped(db.query(JobQueueItem), JobQueueItem, tenant)
    if status:
        query = query.filter(JobQueueItem.status == status)
    return query.order_by(JobQueueItem.id.desc()).limit(limit).all()
