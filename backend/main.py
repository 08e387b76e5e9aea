# main.py — AERELION Activation & Node Orchestration API
# Features:
# - Request correlation IDs
# - Security headers
# - Classified error responses with support references
# - Telemetry aggregator + background node metrics poller
# - Health check with DB verification

import os
import uuid
import time
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

import audit
from database import init_db, close_db, get_db_session, get_db_context, async_session_maker
from errors import CoreError
from infra_provider import get_infra_provider
from nodes import MetricsPoller, METRICS_POLL_SECONDS
from telemetry import setup_telemetry
from telemetry_aggregator import TelemetryAggregator

VERSION = "1.0.0"

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("aerelion")


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("⚠️  JWT_SECRET_KEY is not set or too short — principal tokens will not verify across restarts")

    if not os.getenv("CREDENTIAL_ENCRYPTION_KEY"):
        warnings.append("⚠️  CREDENTIAL_ENCRYPTION_KEY not set — credential vault and node credentials are disabled")
    if not os.getenv("STRIPE_SECRET_KEY"):
        warnings.append("⚠️  STRIPE_SECRET_KEY not set — purchase reconciliation cannot verify sessions")
    if not os.getenv("STRIPE_WEBHOOK_SECRET"):
        warnings.append("⚠️  STRIPE_WEBHOOK_SECRET not set — payment webhooks will be rejected")
    if not os.getenv("HOSTINGER_API_TOKEN"):
        warnings.append("⚠️  HOSTINGER_API_TOKEN not set — node provisioning and metrics are unavailable")
    if not os.getenv("HEARTBEAT_SECRET"):
        warnings.append("⚠️  HEARTBEAT_SECRET not set — agent heartbeats will be rejected")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


def build_aggregator() -> TelemetryAggregator:
    roster = os.getenv("AGENT_ROSTER", ",".join(f"AG-0{i}" for i in range(1, 8)))
    return TelemetryAggregator(
        cycle_interval=timedelta(seconds=int(os.getenv("HEARTBEAT_CYCLE_SECONDS", "7200"))),
        window_size=int(os.getenv("AUDIT_WINDOW_SIZE", "80")),
        expected_agents=[a.strip() for a in roster.split(",") if a.strip()],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting AERELION core v{VERSION}...")
    await init_db()
    logger.info("✅ Database initialized")
    _check_startup_config()
    setup_telemetry(app)

    async with get_db_context() as db:
        await audit.load_recent(db, app.state.aggregator)

    poller = None
    if os.getenv("ENVIRONMENT") != "test" and METRICS_POLL_SECONDS > 0:
        poller = MetricsPoller(async_session_maker, get_infra_provider, app.state.aggregator, METRICS_POLL_SECONDS)
        poller.start()
    yield
    logger.info("🛑 Shutting down AERELION core...")
    if poller is not None:
        await poller.stop()
    await close_db()


app = FastAPI(
    title="AERELION Core",
    description="Purchase reconciliation, activation lifecycle, credential vault and node orchestration",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)
# Created eagerly so in-process clients that skip the lifespan still have it
app.state.aggregator = build_aggregator()

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
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
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
    response.headers["Cache-Control"] = "no-store"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    log = logger.error if exc.http_status >= 500 else logger.info
    log(f"{exc.kind.value} on {request.url.path} [ref={exc.reference}]")
    body = exc.to_dict()
    body["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=exc.http_status, content=body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import activations, credentials, nodes, purchases, telemetry as telemetry_router  # noqa: E402

app.include_router(purchases.router)
app.include_router(activations.router)
app.include_router(credentials.router)
app.include_router(nodes.router)
app.include_router(telemetry_router.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        logger.warning(f"Health check database probe failed: {type(e).__name__}")
        db_status = "error"

    rollup = app.state.aggregator.snapshot().health
    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "agents": rollup.to_dict(),
    }


@app.get("/")
async def root():
    return {
        "name": "AERELION Core",
        "version": VERSION,
        "description": "Activation & node orchestration core",
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
