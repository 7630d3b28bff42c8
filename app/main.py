from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis import Redis
from sqlalchemy import text

from app.api.routers.admin import router as admin_router
from app.api.routers.campaigns import router as campaigns_router
from app.api.routers.schedules import router as schedules_router
from app.api.routers.status import router as status_router
from app.core.config import settings
from app.core.db import engine
from app.core.errors import DispatchError
from app.core.logging import configure_logging

configure_logging(settings.LOG_LEVEL)
log = logging.getLogger("app")

app = FastAPI(title=settings.APP_NAME)


def _check_postgres() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def _check_redis() -> bool:
    try:
        r = Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        return bool(r.ping())
    except Exception:
        return False


@app.on_event("startup")
def _startup() -> None:
    if not settings.ENSURE_EXTERNAL_DEPS_ON_STARTUP:
        log.info("Startup: ENSURE_EXTERNAL_DEPS_ON_STARTUP=false; skipping dependency checks")
        return
    if not _check_postgres():
        log.error("Startup: database not reachable")
    if not _check_redis():
        log.warning("Startup: redis not reachable; rate limiting and fan-out unavailable")
    if not settings.REAL_SEND_ENABLED:
        log.warning("Startup: REAL_SEND_ENABLED=false; sends are dry runs")


@app.exception_handler(DispatchError)
def _dispatch_error(request: Request, exc: DispatchError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": {"error": str(exc), "type": type(exc).__name__, **exc.detail}})


@app.get("/health")
def health() -> dict[str, Any]:
    deps = {
        "postgres": _check_postgres(),
        "redis": _check_redis(),
    }
    return {"ok": all(deps.values()), "deps": deps, "app": settings.APP_NAME, "real_send": settings.REAL_SEND_ENABLED}


app.include_router(admin_router, prefix="/admin", tags=["admin"])
app.include_router(schedules_router, prefix="/schedules", tags=["schedules"])
app.include_router(campaigns_router, prefix="/campaigns", tags=["campaigns"])
app.include_router(status_router, prefix="/status", tags=["status"])
