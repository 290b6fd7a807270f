import logging

import portal.models  # noqa: F401
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from portal.core.config import settings
from portal.core.db import SessionLocal
from portal.routers import email_rules as email_rules_router
from portal.routers import email_templates as email_templates_router
from portal.routers import emails as emails_router
from portal.routers import permissions as permissions_router
from portal.routers import roles as roles_router
from portal.routers import tasks as tasks_router
from portal.services.email_queue import process_email_queue
from portal.services.email_rules import subscribe_email_rules, unsubscribe_email_rules
from portal.services.email_sender import get_email_sender
from portal.services.permission_store import PermissionStore
from portal.services.permissions import PermissionService
from portal.services.realtime import RealtimeHub, capture_changes

app = FastAPI(title="Cadet Portal API", version="0.1.0")

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(permissions_router.router)
app.include_router(roles_router.router)
app.include_router(email_templates_router.router)
app.include_router(email_rules_router.router)
app.include_router(emails_router.router)
app.include_router(tasks_router.router)


def build_permission_service(session_factory: sessionmaker, hub: RealtimeHub) -> PermissionService:
    capture_changes(session_factory, hub)
    service = PermissionService(
        PermissionStore(session_factory),
        ttl_seconds=settings.PERMISSION_CACHE_TTL_SECONDS,
        registry_ttl_seconds=settings.PERMISSION_REGISTRY_TTL_SECONDS,
    )
    service.subscribe_realtime(hub)
    return service


@app.on_event("startup")
def start_permission_service() -> None:
    hub = RealtimeHub()
    app.state.realtime_hub = hub
    app.state.permission_service = build_permission_service(SessionLocal, hub)
    subscribe_email_rules(SessionLocal, hub)


@app.on_event("shutdown")
def stop_permission_service() -> None:
    hub = getattr(app.state, "realtime_hub", None)
    if hub is not None:
        unsubscribe_email_rules(hub)
    service = getattr(app.state, "permission_service", None)
    if service is not None:
        service.close()
        app.state.permission_service = None


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok"}


def _run_email_queue() -> None:
    with SessionLocal() as session:
        result = process_email_queue(session, get_email_sender())
        if result.failed:
            logger.warning("email_queue_failures", extra={"failed": result.failed})


@app.on_event("startup")
def start_scheduled_jobs() -> None:
    if not settings.SCHEDULER_ENABLED:
        return
    if not scheduler.running:
        scheduler.start()
    scheduler.add_job(
        _run_email_queue,
        trigger="interval",
        minutes=settings.EMAIL_QUEUE_INTERVAL_MINUTES,
        id="email_queue",
        replace_existing=True,
    )


@app.on_event("shutdown")
def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
