"""
ComplyBook Reconciliation API - application entry point

Run locally with:
    uvicorn server:app --reload --port 8001
"""

import time
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.cors import CORSMiddleware

# Environment must be loaded before settings are read
load_dotenv(Path(__file__).parent / '.env')

from config import get_cors_config, get_settings, validate_environment
from database import engine, init_db
from logging_config import clear_request_context, get_logger, set_request_context, setup_logging
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router
from sentry_integration import capture_exception, init_sentry, set_tag

SERVICE_NAME = "complybook-reconciliation"

settings = get_settings()

setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.is_production,
    service_name=SERVICE_NAME,
)
logger = get_logger(__name__)

if init_sentry(
    dsn=settings.SENTRY_DSN,
    environment=settings.ENVIRONMENT,
    release=settings.API_VERSION,
    traces_sample_rate=0.1 if settings.is_production else 0.0,
):
    set_tag("service", SERVICE_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.API_TITLE} {settings.API_VERSION} ({settings.ENVIRONMENT})")

    env_status = validate_environment()
    for error in env_status["errors"]:
        logger.error(f"Configuration error: {error}")
    for warning in env_status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if settings.is_production and not env_status["valid"]:
        raise RuntimeError("Refusing to start in production with invalid configuration")

    try:
        await init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    logger.info("Reconciliation tables ready")

    yield

    logger.info("Shutting down; disposing database engine")
    await engine.dispose()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Reconcile ledger transactions against imported bank statements.

    - Sessions per account and statement period (/api/reconciliation/sessions)
    - Statement import from JSON rows or CSV
    - Scored one-to-one match suggestions, manual matching, unmatching
    - Bulk reconcile, completion gate, summary and report data, alerts
    - HMAC-chained audit trail with verification (/api/reconciliation/audit)
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")


# ==================== HEALTH ====================

async def _ping_database() -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


@api_router.get("/", tags=["Health"])
async def root():
    return {
        "service": SERVICE_NAME,
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Database connectivity plus configuration state.

    503 when the database is unreachable. Configuration errors are
    reported but do not fail the check outside production.
    """
    env_status = validate_environment()
    checks = {
        "configuration": {
            "status": "valid" if env_status["valid"] else "invalid",
            "errors": len(env_status["errors"]),
            "warnings": len(env_status["warnings"]),
        },
        "audit_chain": {"status": "configured" if settings.AUDIT_HMAC_KEY else "missing_key"},
    }

    healthy = True
    try:
        await _ping_database()
        checks["database"] = {"status": "connected", "dialect": engine.dialect.name}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = {"status": "disconnected", "error": str(e)}
        healthy = False

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=503, detail=body)
    return body


@api_router.get("/health/ready", tags=["Health"])
async def readiness_check():
    """Ready once the database answers."""
    try:
        await _ping_database()
    except Exception as e:
        raise HTTPException(status_code=503, detail={"status": "not_ready", "error": str(e)})
    return {"status": "ready", "timestamp": datetime.now(timezone.utc).isoformat()}


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@api_router.get("/config/status", tags=["Health"])
async def config_status():
    """Non-sensitive configuration summary for deployment debugging."""
    env_status = validate_environment()
    return {
        "environment": settings.ENVIRONMENT,
        "debug": settings.debug_enabled,
        "configuration_valid": env_status["valid"],
        "variables": env_status["variables"],
        "warnings": env_status["warnings"],
        "errors": ["Hidden in production"] if settings.is_production else env_status["errors"],
        "reconciliation": {
            "suggestion_threshold": settings.SUGGESTION_THRESHOLD,
            "large_difference_threshold": str(settings.LARGE_DIFFERENCE_THRESHOLD),
            "stale_unreconciled_days": settings.STALE_UNRECONCILED_DAYS,
        },
    }


api_router.include_router(reconciliation_router)
app.include_router(api_router)


# ==================== MIDDLEWARE ====================

app.add_middleware(CORSMiddleware, **get_cors_config())


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Bind request id and acting user to log records; time the request."""
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
    set_request_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))

    try:
        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}"

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")

        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} failed: {e}")
        raise
    finally:
        clear_request_context()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Last resort for errors the routes did not translate."""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}")
    capture_exception(exc, path=request.url.path, method=request.method)

    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "traceback": traceback.format_exc() if settings.debug_enabled else None,
        },
    )
