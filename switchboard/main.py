import asyncio
import os
from uuid import UUID

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.database import SessionLocal, get_db
from switchboard.logging_config import get_logger, setup_logging
from switchboard.models import Contact, JobQueueItem, Message, Tenant
from switchboard.routers import admin, messages, sessions, webhook
from switchboard.services import dedupe_cache, job_queue
from switchboard.services.inbound_pipeline import ingest_live_message
from switchboard.services.job_worker import build_default_handlers, process_jobs
from switchboard.services.session_bridge import HttpSidecarBridge
from switchboard.services.session_manager import SessionManager

setup_logging(settings.log_level)

app = FastAPI(
    title="Switchboard API",
    description="Multi-tenant messaging gateway",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(sessions.router)
app.include_router(messages.router)
app.include_router(admin.router)

worker_logger = get_logger("job_worker_loop")
_job_worker_task: asyncio.Task | None = None


async def handle_live_message(tenant_id: UUID, data: dict) -> None:
    """Hands live-session message events to the inbound pipeline."""
    db = SessionLocal()
    try:
        await ingest_live_message(
            db,
            tenant_id,
            data,
            session_manager=app.state.session_manager,
            redis_client=dedupe_cache.get_redis_client(),
        )
    finally:
        db.close()


app.state.session_bridge = HttpSidecarBridge()
app.state.session_manager = SessionManager(app.state.session_bridge, message_handler=handle_live_message)


def _is_job_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.job_worker_enabled


async def _job_worker_loop() -> None:
    handlers = build_default_handlers(app.state.session_manager)
    while True:
        try:
            await asyncio.sleep(max(settings.job_worker_interval_seconds, 0.1))
            db = SessionLocal()
            try:
                job_queue.release_stale_reservations(db, settings.job_reservation_timeout_seconds)
                await process_jobs(db, handlers)
            finally:
                db.close()
            await app.state.session_manager.collect_garbage()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Job worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_job_worker() -> None:
    global _job_worker_task
    if not _is_job_worker_enabled():
        return
    if _job_worker_task is None or _job_worker_task.done():
        _job_worker_task = asyncio.create_task(_job_worker_loop())
        worker_logger.info("Job worker started")


@app.on_event("shutdown")
async def stop_job_worker() -> None:
    global _job_worker_task
    if _job_worker_task is not None:
        _job_worker_task.cancel()
        try:
            await _job_worker_task
        except asyncio.CancelledError:
            pass
        _job_worker_task = None
    await app.state.session_manager.shutdown()
    await app.state.session_bridge.aclose()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "tenants": db.query(Tenant).count(),
        "contacts": db.query(Contact).count(),
        "messages": db.query(Message).count(),
        "jobs": db.query(JobQueueItem).count(),
    }
