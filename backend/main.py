# main.py - Taskboard API
# Features:
# - Request correlation IDs and timing
# - Security headers
# - Uniform error envelope for the AppError taxonomy
# - WebSocket rooms for live board sync
# - Per-user response cache with stats endpoint

import os
import uuid
import time
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from auth import CurrentUser, get_current_user
from database import init_db, close_db, engine, async_session_maker
from errors import AppError
from services import Services, build_services, get_services
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("taskboard")

VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("⚠️  JWT_SECRET_KEY is not set or too short - tokens will not survive a restart")

    if not os.getenv("SMTP_HOST"):
        warnings.append("⚠️  SMTP_HOST not set - emails (sign-in codes, invitations) are only logged")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Taskboard API v{VERSION}...")
    await init_db()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(async_session_maker)
    services: Services = app.state.services
    services.cache.start()
    await services.notifications.delete_old()
    _check_startup_config()
    # No-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app, engine)
    yield
    logger.info("🛑 Shutting down Taskboard API...")
    await services.cache.stop()
    await close_db()


app = FastAPI(
    title="Taskboard API",
    description="Collaborative task boards with real-time sync, invitations and GitHub attachments",
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
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "If-None-Match", "If-Modified-Since"],
    expose_headers=["X-Request-ID", "ETag", "Last-Modified", "X-Cache"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, body: dict) -> JSONResponse:
    body["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content={"error": body})


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.warning(f"{exc.kind} on {request.url.path}: {exc.message}")
    body = exc.to_dict()
    if exc.status_code >= 500 and ENVIRONMENT != "production" and exc.__cause__ is not None:
        body["traceback"] = traceback.format_exception(exc.__cause__)
    return _error_response(request, exc.status_code, body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Inputs are not echoed back
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": str(err.get("msg", "")),
            "type": str(err.get("type", "unknown")),
        }
        for err in exc.errors()
    ]
    message = "Request validation failed"
    if errors and errors[0]["field"]:
        message = f"Invalid {errors[0]['field']}: {errors[0]['message']}"
    return _error_response(request, 400, {
        "kind": "bad_request",
        "message": message,
        "details": {"errors": errors},
    })


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    body = {"kind": "internal", "message": "Internal server error"}
    if ENVIRONMENT != "production":
        body["traceback"] = traceback.format_exception(exc)
    return _error_response(request, 500, body)


# ============================================================
# ROUTERS
# ============================================================

from routers import (
    auth, boards, cards, tasks, notifications, github, websocket_router,
)

app.include_router(auth.router)
app.include_router(boards.router)
app.include_router(cards.router)
app.include_router(tasks.router)
app.include_router(notifications.router)
app.include_router(github.router)
app.include_router(websocket_router.router)


# ============================================================
# HEALTH, CACHE & ROOT
# ============================================================

@app.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": ENVIRONMENT,
        "database": db_status,
        "connections": services.registry.get_stats()["total_connections"],
    }


@app.get("/api/v1/cache/stats")
async def cache_stats(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.cache.stats()


@app.get("/")
async def root():
    return {
        "name": "Taskboard API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "websocket": "/ws?token=<access token>",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=ENVIRONMENT != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
