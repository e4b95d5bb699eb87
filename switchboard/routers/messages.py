from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.database import get_db
from switchboard.dependencies import get_session_manager, get_tenant, require_api_token
from switchboard.schemas.message import SendMessageRequest, SendMessageResponse
from switchboard.services import job_queue, outbound_dispatcher
from switchboard.services.session_manager import SessionManager
from switchboard.services.tenant_context import TenantContext

router = APIRouter(prefix="/tenants/{tenant_id}/messages", dependencies=[Depends(require_api_token)])

ERROR_STATUS = {
    "invalid_request": status.HTTP_400_BAD_REQUEST,
    "quota_exceeded": status.HTTP_402_PAYMENT_REQUIRED,
    "rate_limited": status.HTTP_429_TOO_MANY_REQUESTS,
    "no_active_channel": status.HTTP_409_CONFLICT,
    "invalid_recipient": status.HTTP_400_BAD_REQUEST,
}


def job_payload(payload: SendMessageRequest) -> dict:
    job = {"address": payload.to, "content": payload.message}
    if payload.media_ref:
        job["media_ref"] = payload.media_ref
        job["media_type"] = payload.media_type
    return job


@router.post("", response_model=SendMessageResponse)
async def send_message(
    payload: SendMessageRequest,
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_db),
    session_manager: SessionManager = Depends(get_session_manager),
):
    result = await outbound_dispatcher.send_message(
        db,
        tenant,
        payload.to,
        payload.message,
        media_ref=payload.media_ref,
        media_type=payload.media_type,
        session_manager=session_manager,
    )
    if result.ok:
        return SendMessageResponse(success=True, status=result.value.status, message_id=result.value.id)

    if result.retryable:
        queued = job_queue.enqueue(
            db,
            job_type="send_message",
            reference_id=f"api:{result.value.id}",
            payload=job_payload(payload),
            tenant_id=tenant.tenant_id,
        )
        db.commit()
        body = SendMessageResponse(
            success=False,
            status="queued",
            message_id=result.value.id,
            error=result.error,
            error_code=result.error_code,
            queued=queued,
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(mode="json"))

    if result.error_code == "rate_limited":
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limited",
                "action": outbound_dispatcher.SEND_ACTION,
                "limit": settings.send_rate_limit,
                "window_seconds": settings.send_rate_window_seconds,
            },
        )
    raise HTTPException(
        status_code=ERROR_STATUS.get(result.error_code, status.HTTP_502_BAD_GATEWAY),
        detail={"error": result.error_code, "message": result.error},
    )
