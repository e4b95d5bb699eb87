from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from switchboard.database import get_db
from switchboard.dependencies import require_admin_token
from switchboard.schemas.message import JobListResponse, JobResponse
from switchboard.services.job_queue import list_jobs
from switchboard.services.tenant_context import TenantContext

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin_token)])


@router.get("/jobs", response_model=JobListResponse)
def admin_jobs(
    status: Optional[str] = Query(default=None, pattern="^(pending|reserved|completed|failed)$"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    jobs = list_jobs(db, TenantContext.operator(), status, limit=limit)
    return JobListResponse(
        jobs=[
            JobResponse(
                id=job.id,
                tenant_id=job.tenant_id,
                type=job.job_type,
                reference_id=job.reference_id,
                status=job.status,
                attempts=job.attempts,
                available_at=job.available_at,
                last_error=job.last_error,
                payload=job.payload or {},
            )
            for job in jobs
        ]
    )
