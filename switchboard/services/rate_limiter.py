"""Fixed-window request ceilings per (key, action)."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.database import dialect_insert
from switchboard.logging_config import get_logger
from switchboard.models import RateLimitBucket

logger = get_logger("rate_limiter")

PRUNE_BATCH_SIZE = 500

buckets = RateLimitBucket.__table__


def window_start_for(now: datetime, window_seconds: int) -> datetime:
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - (epoch % window_seconds), tz=timezone.utc)


def prune_expired(db: Session, *, now: datetime, retention_seconds: Optional[int] = None) -> int:
    """Delete at most PRUNE_BATCH_SIZE buckets older than the retention horizon.

    Never raises: a failed prune is rolled back and logged.
    """
    retention = retention_seconds if retention_seconds is not None else settings.rate_limit_retention_seconds
    cutoff = now - timedelta(seconds=retention)
    expired_ids = select(buckets.c.id).where(buckets.c.window_start < cutoff).limit(PRUNE_BATCH_SIZE)
    try:
        result = db.execute(delete(buckets).where(buckets.c.id.in_(expired_ids)))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Rate limit prune failed: {e}")
        return 0
    return result.rowcount or 0


def check_and_increment(
    db: Session,
    key: str,
    action: str,
    limit: int,
    window_seconds: int,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """Count one request against the current window; False when the ceiling is reached.

    The bucket row is created with ON CONFLICT DO NOTHING and incremented by a
    conditional UPDATE ... RETURNING, so concurrent callers never overshoot.
    """
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    now = now or datetime.now(timezone.utc)
    window_start = window_start_for(now, window_seconds)

    prune_expired(db, now=now)

    try:
        db.execute(
            dialect_insert(db, buckets)
            .values(key=key, action=action, window_start=window_start, count=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["key", "action", "window_start"])
        )
        row = db.execute(
            update(buckets)
            .where(
                buckets.c.key == key,
                buckets.c.action == action,
                buckets.c.window_start == window_start,
                buckets.c.count < limit,
            )
            .values(count=buckets.c.count + 1, updated_at=now)
            .returning(buckets.c.count)
        ).first()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        context = {"key": key, "action": action, "error": str(e)}
        if settings.is_production:
            logger.error("Rate limiter storage failure, denying request", extra={"context": context})
            return False
        logger.warning("Rate limiter storage failure, allowing request", extra={"context": context})
        return True

    if row is None:
        logger.info(
            "Rate limit exceeded",
            extra={"context": {"key": key, "action": action, "limit": limit, "window_start": window_start.isoformat()}},
        )
        return False
    return True
