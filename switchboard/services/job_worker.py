"""Runs reserved queue jobs through their async handlers."""

from functools import partial
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.services import job_queue, outbound_dispatcher
from switchboard.services.alert_service import alert_error
from switchboard.services.result import Result
from switchboard.services.session_manager import SessionManager
from switchboard.services.tenant_context import TenantNotFound, resolve_tenant

logger = get_logger("job_worker")

JobHandler = Callable[[Session, dict[str, Any]], Awaitable[Result]]


async def handle_send_message(
    db: Session, job: dict[str, Any], *, session_manager: Optional[SessionManager] = None
) -> Result:
    try:
        tenant = resolve_tenant(db, job["tenant_id"])
    except TenantNotFound as e:
        return Result.failure(str(e), "tenant_not_found")

    payload = job.get("payload") or {}
    return await outbound_dispatcher.send_message(
        db,
        tenant,
        payload.get("address") or "",
        payload.get("content") or "",
        media_ref=payload.get("media_ref"),
        media_type=payload.get("media_type") or "image",
        session_manager=session_manager,
        auto_reply_rule_id=payload.get("auto_reply_rule_id"),
        record_failure=False,
    )


def build_default_handlers(session_manager: Optional[SessionManager] = None) -> dict[str, JobHandler]:
    return {"send_message": partial(handle_send_message, session_manager=session_manager)}


async def process_jobs(
    db: Session,
    handlers: dict[str, JobHandler],
    *,
    limit: Optional[int] = None,
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[int] = None,
    jitter_seconds: Optional[float] = None,
) -> dict[str, int]:
    limit = limit or settings.job_batch_limit
    max_attempts = max_attempts or settings.job_max_attempts
    backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.job_backoff_seconds
    jitter_seconds = jitter_seconds if jitter_seconds is not None else settings.job_backoff_jitter_seconds

    results = {"reserved": 0, "completed": 0, "retry_scheduled": 0, "failed": 0}
    batch = job_queue.reserve_batch(db, limit)
    results["reserved"] = len(batch)

    for job in batch:
        job_id = job["id"]
        handler = handlers.get(job["type"])
        if handler is None:
            error, retryable = f"No handler for job type {job['type']}", False
        else:
            try:
                outcome = await handler(db, job)
            except Exception as e:
                db.rollback()
                logger.exception(f"Job {job_id} handler raised")
                error, retryable = str(e), True
            else:
                if outcome.ok:
                    job_queue.mark_succeeded(db, job_id)
                    results["completed"] += 1
                    continue
                error, retryable = outcome.error or outcome.error_code or "failed", outcome.retryable

        status = job_queue.mark_failed(
            db,
            job_id,
            error,
            # A permanent failure spends the remaining attempts at once.
            max_attempts=max_attempts if retryable else 1,
            backoff_seconds=backoff_seconds,
            jitter_seconds=jitter_seconds,
        )
        if status == job_queue.JOB_FAILED:
            results["failed"] += 1
            await alert_error(
                "Job failed permanently",
                {"job_id": job_id, "type": job["type"], "tenant_id": str(job["tenant_id"]), "error": error[:300]},
            )
        elif status == job_queue.JOB_PENDING:
            results["retry_scheduled"] += 1

    if any(results.values()):
        logger.info("Job batch processed", extra={"context": results})
    return results
