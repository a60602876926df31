"""
FastAPI application main module.
Middleware, error handling, background dispatch worker and health endpoints.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import os
from contextlib import asynccontextmanager
from app.api.v1 import api_router
from app.utils import setup_logging, get_logger
from app.utils.observability import ensure_request_id
from app.jobs.tick_lock import TickLock
from app.jobs.worker_dispatch import DispatchWorker
from app import database
from app.database import Base
from app.config import APP_NAME, APP_VERSION, RATE_LIMIT_SETTINGS, WORKER_SETTINGS
from app.services.ledger_client import LedgerClientRegistry
from app.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER
from app.utils.ratelimiter import rate_limiter

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/app.log"),
    enable_console=True
)

logger = get_logger(__name__)

_worker: DispatchWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")

    global _worker
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=database.engine)
        logger.info("Database tables created successfully")

        app.state.ledger_registry = LedgerClientRegistry()  # type: ignore[attr-defined]

        if WORKER_SETTINGS["enabled"]:
            lock = TickLock()
            _worker = DispatchWorker(lock=lock)
            _worker.start()
            app.state.dispatch_worker = _worker  # type: ignore[attr-defined]
            logger.info("Dispatch worker started", lock_backend=lock.backend)
        else:
            logger.info("Dispatch worker disabled; ticks are driven by the external cron")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if _worker:
            _worker.stop()
            logger.info("Dispatch worker stop signal sent")
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Listflow Automation Backend",
    description="""
    Listing automation and billing reconciliation service.

    ## Features
    * **Extension job queue** - claim/report protocol for browser extension workers
    * **Scheduled automation** - per-plan webhook dispatch with idempotent slots
    * **Cron tests** - two minute probe webhooks proving the cron path
    * **Payment reconciliation** - ledger checkout sessions merged into local payments
    * **Revenue analytics** - monthly recurring revenue trend

    ## Authentication
    Bearer API key for users and admins:
    ```
    Authorization: Bearer <api_key>
    ```
    Cron-triggered endpoints also accept `X-Cron-Secret`.

    ## Rate Limiting
    Per-API key fixed windows. Standard headers:
    `X-RateLimit-Limit`, `X-RateLimit-Remaining`, `X-RateLimit-Reset`.
    """,
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


def rate_limit_category(path: str, method: str) -> str:
    """Prefix-based category:
      /api/v1/extension -> extension
      /api/v1/reconciliation (POST) -> reconciliation
    Fallback: default
    """
    if path.startswith("/api/v1/extension"):
        return "extension"
    if path.startswith("/api/v1/reconciliation") and method == "POST":
        return "reconciliation"
    return "default"


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    """Apply per-API key rate limits with endpoint categorization."""
    category = rate_limit_category(request.url.path, request.method.upper())
    settings = RATE_LIMIT_SETTINGS.get(category, RATE_LIMIT_SETTINGS["default"])
    limit = int(settings.get("limit", 1000))
    window_seconds = int(settings.get("window_seconds", 3600))

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        api_key = auth_header[7:]
    elif request.headers.get("X-Cron-Secret"):
        api_key = "cron"
    else:
        # Health/root docs etc share one anonymous key
        api_key = "public"

    allowed, meta = await rate_limiter.check_and_increment(api_key, category, limit, window_seconds)

    if not allowed:
        resp = JSONResponse(
            status_code=429,
            content={
                "success": False,
                "message": f"Rate limit exceeded for category '{category}'",
                "category": category,
            },
        )
        resp.headers["X-RateLimit-Limit"] = str(meta["limit"])
        resp.headers["X-RateLimit-Remaining"] = "0"
        resp.headers["X-RateLimit-Reset"] = str(meta["reset_epoch"])
        return resp

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(meta["limit"])
    response.headers["X-RateLimit-Remaining"] = str(meta["remaining"])
    response.headers["X-RateLimit-Reset"] = str(meta["reset_epoch"])
    return response

@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        user_agent=request.headers.get("User-Agent"),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": request_id
        }
    )

def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that json cannot encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        },
        headers=getattr(exc, "headers", None)
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": APP_NAME,
        "version": APP_VERSION,
        "timestamp": time.time(),
        "worker_enabled": bool(WORKER_SETTINGS["enabled"]),
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Detailed health check with database, worker and circuit breaker status."""
    health_status = {
        "status": "healthy",
        "service": APP_NAME,
        "version": APP_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    db = database.SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"
    finally:
        db.close()

    worker = getattr(app.state, "dispatch_worker", None)  # type: ignore[attr-defined]
    if worker is None:
        health_status["checks"]["dispatch_worker"] = "disabled"
    else:
        health_status["checks"]["dispatch_worker"] = {
            "running": worker.running,
            "lock_backend": worker.lock.backend,
        }
        if not worker.running:
            health_status["status"] = "degraded"

    open_circuits = {k: v for k, v in GLOBAL_CIRCUIT_BREAKER.snapshot().items() if v["state"] != "CLOSED"}
    health_status["checks"]["webhook_circuits"] = open_circuits

    return health_status

@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Listflow Automation Backend API",
        "version": APP_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["app"],
        log_level="info",
        access_log=True
    )
