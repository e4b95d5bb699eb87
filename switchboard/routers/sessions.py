"""Session control surface: initialize, status, QR, send, restart, logout, stream."""

import asyncio
import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from switchboard.dependencies import get_session_manager, get_tenant, rate_limit, require_api_token
from switchboard.logging_config import get_logger
from switchboard.schemas.session import (
    SessionListResponse,
    SessionQrResponse,
    SessionResponse,
    SessionSendRequest,
    SessionSendResponse,
    SessionStartRequest,
)
from switchboard.services.channel_errors import ChannelSendError
from switchboard.services.session_manager import (
    ChannelSession,
    SessionManager,
    SessionNotFound,
    SessionNotReady,
)
from switchboard.services.tenant_context import TenantContext

logger = get_logger("sessions")

router = APIRouter(prefix="/tenants/{tenant_id}/sessions", dependencies=[Depends(require_api_token)])

SSE_KEEPALIVE_SECONDS = 15.0


def _to_response(session: ChannelSession) -> SessionResponse:
    return SessionResponse(**session.to_dict())


def _get_or_404(manager: SessionManager, tenant: TenantContext, session_id: str) -> ChannelSession:
    try:
        return manager.get(tenant.tenant_id, session_id)
    except SessionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@router.post("", response_model=SessionResponse)
async def start_session(
    payload: Optional[SessionStartRequest] = None,
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    try:
        session = await manager.start(tenant.tenant_id, payload.session_id if payload else None)
    except SessionNotFound:
        # The id is taken by another tenant.
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Session id unavailable")
    return _to_response(session)


@router.get("", response_model=SessionListResponse)
def list_sessions(
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    return SessionListResponse(sessions=[_to_response(s) for s in manager.list_sessions(tenant.tenant_id)])


@router.get("/preferred", response_model=SessionResponse)
def preferred_session(
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    session = manager.preferred(tenant.tenant_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sessions")
    return _to_response(session)


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: str,
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    return _to_response(_get_or_404(manager, tenant, session_id))


@router.get("/{session_id}/qr", response_model=SessionQrResponse)
def get_qr(
    session_id: str,
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    session = _get_or_404(manager, tenant, session_id)
    if not session.auth_payload:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="QR code not available")
    return SessionQrResponse(session_id=session.id, state=session.state.value, qr=session.auth_payload)


@router.get("/{session_id}/stream")
async def stream_session(
    session_id: str,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    session = _get_or_404(manager, tenant, session_id)
    subscription = manager.subscribe(session_id)

    async def event_stream():
        try:
            yield _sse("status", session.to_dict())
            if session.auth_payload:
                yield _sse("qr", {"session_id": session.id, "qr": session.auth_payload})
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(subscription.queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    break
                yield _sse(event.type, {"session_id": event.session_id, **event.data})
        finally:
            manager.unsubscribe(subscription)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post(
    "/{session_id}/send",
    response_model=SessionSendResponse,
    dependencies=[Depends(rate_limit("session_send"))],
)
async def send_via_session(
    session_id: str,
    payload: SessionSendRequest,
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    try:
        message_id = await manager.send(tenant.tenant_id, session_id, payload.to, payload.message)
    except SessionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    except SessionNotReady as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ChannelSendError as e:
        logger.warning(f"Session send failed: {e}", extra={"context": {"session_id": session_id}})
        code = status.HTTP_502_BAD_GATEWAY if e.retryable else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail=str(e))
    return SessionSendResponse(success=True, session_id=session_id, message_id=message_id)


@router.post("/{session_id}/restart", response_model=SessionResponse)
async def restart_session(
    session_id: str,
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    try:
        session = await manager.restart(tenant.tenant_id, session_id)
    except SessionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return _to_response(session)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def logout_session(
    session_id: str,
    tenant: TenantContext = Depends(get_tenant),
    manager: SessionManager = Depends(get_session_manager),
):
    try:
        await manager.logout(tenant.tenant_id, session_id)
    except SessionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
