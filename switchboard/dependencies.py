"""Shared FastAPI dependencies: tenant resolution, tokens, rate limits."""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.database import get_db
from switchboard.services import dedupe_cache
from switchboard.services.rate_limiter import check_and_increment
from switchboard.services.session_manager import SessionManager
from switchboard.services.tenant_context import TenantContext, TenantNotFound, resolve_tenant


def _token_matches(provided: Optional[str], expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided, expected)


def require_api_token(x_api_token: Optional[str] = Header(default=None, alias="X-Api-Token")) -> None:
    if settings.api_token and not _token_matches(x_api_token, settings.api_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API token")


def require_bridge_token(x_bridge_token: Optional[str] = Header(default=None, alias="X-Bridge-Token")) -> None:
    if settings.bridge_token and not _token_matches(x_bridge_token, settings.bridge_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bridge token")


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    if not settings.admin_token:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not _token_matches(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def get_tenant(tenant_id: str, db: Session = Depends(get_db)) -> TenantContext:
    try:
        return resolve_tenant(db, tenant_id)
    except TenantNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_redis_client():
    return dedupe_cache.get_redis_client()


def rate_limit(action: str, limit: Optional[int] = None, window_seconds: Optional[int] = None):
    """Dependency factory: count the request against ``action`` for the tenant (or client IP)."""

    def dependency(request: Request, db: Session = Depends(get_db)) -> None:
        max_requests = limit or settings.send_rate_limit
        window = window_seconds or settings.send_rate_window_seconds
        key = request.path_params.get("tenant_id") or (request.client.host if request.client else "unknown")
        if not check_and_increment(db, str(key), action, max_requests, window):
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"error": "rate_limited", "action": action, "limit": max_requests, "window_seconds": window},
            )

    return dependency
