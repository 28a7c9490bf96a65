# main.py — Berth control plane API
# Features:
# - Request correlation IDs bound to the logging context
# - Rate limiting (slowapi)
# - Security headers
# - Client WebSockets (stack status, operation streams, terminal)
# - Agent supervision, image polling and log retention via the service container
# - Health check with DB verification

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from config import describe, get_settings
from container import ServiceContainer
from database import async_session_maker, close_db, engine, get_db_context, init_db
from errors import install_exception_handlers
from logging_system import RequestContext, reset_current_context, set_current_context
from rate_limit import limiter
from seeds import seed_all
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("berth")

settings = get_settings()
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Berth control plane {VERSION}: {describe(settings)}")
    await init_db()
    async with get_db_context() as db:
        await seed_all(db)
    container = ServiceContainer(settings, async_session_maker)
    app.state.container = container
    await container.start()
    # no-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app, engine, settings.environment)
    yield
    logger.info("Shutting down Berth control plane...")
    await container.stop()
    await close_db()


app = FastAPI(
    title="Berth",
    description="Multi-tenant control plane for Docker Compose hosts",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID", "X-CSRF-Token"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)

# ============================================================
# RATE LIMITING
# ============================================================

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id
    token = set_current_context(RequestContext.create(
        request_id=request_id,
        correlation_id=correlation_id,
        client_ip=request.client.host if request.client else None,
    ))

    start = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        reset_current_context(token)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
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
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; connect-src 'self' wss: https:;"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

install_exception_handlers(app)


# ============================================================
# ROUTERS
# ============================================================

from routers import (
    account, admin, admin_logs, admin_servers, api_keys, auth,
    image_updates, operations, registries, servers, setup, stacks,
    websocket_router, webhooks,
)

app.include_router(setup.router)
app.include_router(auth.router)
app.include_router(account.router)
app.include_router(api_keys.router)
app.include_router(servers.router)
app.include_router(stacks.router)
app.include_router(operations.router)
app.include_router(registries.router)
app.include_router(image_updates.router)
app.include_router(websocket_router.router)
app.include_router(webhooks.router)

# Administration
app.include_router(admin.router)
app.include_router(admin_servers.router)
app.include_router(admin_logs.router)
app.include_router(webhooks.admin_router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
@limiter.exempt
async def health_check(request: Request):
    """Health check with database connectivity verification"""
    container = getattr(request.app.state, "container", None)
    session_factory = container.session_factory if container else async_session_maker
    db_status = "unknown"
    try:
        async with session_factory() as db:
            await db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": settings.environment,
        "database": db_status,
        "services": container.health() if container else {},
    }


@app.get("/")
@limiter.exempt
async def root(request: Request):
    return {
        "name": "Berth",
        "version": VERSION,
        "description": "Multi-tenant control plane for Docker Compose hosts",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
