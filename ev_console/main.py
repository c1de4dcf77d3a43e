from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.staticfiles import StaticFiles

from ev_console.api.deps import GuardRedirect, ensure_browser_cookie, guard_redirect_handler
from ev_console.api.routers import resources, ui
from ev_console.infra.audit import AuditMiddleware
from ev_console.infra.config import get_settings
from ev_console.infra.db import check_db_ready
from ev_console.infra.logging_config import setup_logging
from ev_console.infra.storage import check_storage_ready

settings = get_settings()
setup_logging("ev-console", settings.log_level)

app = FastAPI(
    title="ev-service-console",
    description="Administrative console for EV service centers, backed by the service center REST API.",
    version="0.1.0",
)

if settings.audit_enabled:
    app.add_middleware(AuditMiddleware)
app.middleware("http")(ensure_browser_cookie)
app.add_exception_handler(GuardRedirect, guard_redirect_handler)

static_dir = Path(__file__).resolve().parent / "web" / "static"
app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    storage_ok = check_storage_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if storage_ok else "fail",
    }
    if not (db_ok and storage_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}


# the catch-all resource routes go last
app.include_router(ui.router, tags=["ui"])
app.include_router(resources.router, tags=["resources"])
