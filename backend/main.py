# main.py — Kanban Board API
# Wires routers, middleware and error handlers onto one FastAPI app and
# runs the due-date reminder scanner for the lifetime of the process.

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from database import init_db, close_db, get_db_context, async_session_maker
from reminders import ReminderService, REMINDER_POLL_SECONDS
from task_service import TaskSaveError
from telemetry import setup_telemetry

VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("kanban")

REMINDER_SCANNER_ENABLED = os.getenv(
    "REMINDER_SCANNER_ENABLED", "false" if ENVIRONMENT == "test" else "true"
).lower() == "true"


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    # JWT Secret
    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append(
            "JWT_SECRET_KEY is not set or shorter than 32 characters; "
            "tokens will not survive a restart"
        )

    # Database
    db_url = os.getenv("DATABASE_URL", "")
    if ENVIRONMENT == "production" and (not db_url or db_url.startswith("sqlite")):
        warnings.append("DATABASE_URL points at SQLite (or is unset) in production")

    # CORS
    if ENVIRONMENT == "production" and "*" in os.getenv("CORS_ORIGINS", ""):
        warnings.append("CORS_ORIGINS allows every origin in production")

    if not REMINDER_SCANNER_ENABLED:
        logger.info("Due-date reminder scanner disabled")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Kanban Board API v{VERSION}...")
    await init_db()
    logger.info("Database initialized")
    _check_startup_config()
    # Initialise OpenTelemetry (no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set)
    setup_telemetry(app)
    if REMINDER_SCANNER_ENABLED:
        app.state.reminders.start(async_session_maker)
    yield
    logger.info("Shutting down Kanban Board API...")
    await app.state.reminders.stop()
    await close_db()


app = FastAPI(
    title="Kanban Board API",
    description="Boards, tasks, projects and team collaboration with due-date reminders",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "Content-Disposition"],
)


# ============================================================
# MIDDLEWARE: Request context, timing, security headers
# ============================================================

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'; img-src 'self' data: https:; connect-src 'self' wss: https:;",
}


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    # Ids are echoed back so a client can quote them in bug reports
    request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or request.state.request_id

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers.update(SECURITY_HEADERS)
    response.headers["X-Request-ID"] = request.state.request_id
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    response.headers["X-Response-Time"] = f"{elapsed:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} {response.status_code} "
        f"{elapsed * 1000:.1f}ms rid={request.state.request_id[:8]}"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_body(request: Request, detail, **extra) -> dict:
    return {"detail": detail, **extra, "request_id": getattr(request.state, "request_id", None)}


def _jsonable_errors(errors) -> list:
    """Validation errors can carry raw inputs (bytes, models) that JSON cannot encode"""
    cleaned = []
    for err in errors:
        item = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                item["input"] = err["input"]
            except (TypeError, ValueError):
                item["input"] = repr(err["input"])
        cleaned.append(item)
    return cleaned


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content=_error_body(request, _jsonable_errors(exc.errors())))


@app.exception_handler(TaskSaveError)
async def task_save_error_handler(request: Request, exc: TaskSaveError):
    logger.info(f"Task save stopped at step '{exc.step}': {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc.message, step=exc.step))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=_error_body(request, "Internal server error"))


# ============================================================
# ROUTERS
# ============================================================

from routers import (  # noqa: E402
    auth, boards, tasks, projects, labels, team, automation,
    custom_fields, notifications, settings, dashboard, websocket_router,
)

for module in (
    auth, boards, tasks, projects, labels, team, automation,
    custom_fields, notifications, settings, dashboard, websocket_router,
):
    app.include_router(module.router)

app.state.reminders = ReminderService(
    poll_seconds=REMINDER_POLL_SECONDS,
    publisher=websocket_router.manager.send_to_user,
)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Liveness plus a SELECT 1 against the configured database"""
    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        database = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "version": VERSION,
        "environment": ENVIRONMENT,
        "database": database,
        "services": {
            "reminders": "running" if REMINDER_SCANNER_ENABLED else "disabled",
            "websocket_connections": websocket_router.manager.get_stats()["total_connections"],
        },
    }


@app.get("/")
async def root():
    return {"name": "Kanban Board API", "version": VERSION, "docs": "/docs", "health": "/health"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        workers=int(os.getenv("WORKERS", "1")),
        reload=ENVIRONMENT == "development",
    )
