from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from skyddad.config import settings
from skyddad.database import engine
from skyddad.logging_config import setup_logging
from skyddad.middleware.logging import CORRELATION_HEADER, LoggingMiddleware
from skyddad.middleware.rate_limit import limiter
from skyddad.routers import secrets
from skyddad.scheduler import shutdown_scheduler, start_scheduler
from skyddad.services.errors import ConflictError, OperationTimeout, StoreUnavailable

# Database tables are managed by Alembic migrations
# Run: alembic upgrade head

REQUIRED_TABLES = {"secrets", "log_events"}

setup_logging()
logger = structlog.get_logger()


def check_database_tables() -> None:
    """Fail fast when migrations have not been applied."""
    tables = set(inspect(engine).get_table_names())
    missing = REQUIRED_TABLES - tables
    if missing:
        raise RuntimeError(
            f"Database tables missing: {', '.join(sorted(missing))}. "
            "Run `alembic upgrade head` before starting the server."
        )


def check_database_connection() -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.error("database_unreachable")
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Verify the schema, then start/stop the cleanup scheduler."""
    check_database_tables()
    start_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(
    title="Skyddad",
    description="One-time secret sharing with optional PIN protection",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content={"detail": detail})
    correlation_id = structlog.contextvars.get_contextvars().get("correlation_id")
    if correlation_id:
        response.headers[CORRELATION_HEADER] = correlation_id
    return response


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    cause = type(exc.__cause__).__name__ if exc.__cause__ else None
    logger.error("store_unavailable", cause=cause)
    return _error_response(request, 503, "Service temporarily unavailable")


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    logger.error("secret_id_conflict_after_retry")
    return _error_response(request, 503, "Service temporarily unavailable")


@app.exception_handler(OperationTimeout)
async def timeout_handler(request: Request, exc: OperationTimeout):
    logger.warning("operation_timeout", error=str(exc))
    return _error_response(request, 504, "Request timed out")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", error=type(exc).__name__, exc_info=exc)
    return _error_response(request, 500, "Internal Server Error")


app.add_middleware(LoggingMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(secrets.router, prefix="/api/v1", tags=["secrets"])


@app.get("/health")
async def health_check():
    database_ok = await run_in_threadpool(check_database_connection)
    status_code = 200 if database_ok else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "healthy" if database_ok else "degraded",
            "database": "connected" if database_ok else "disconnected",
        },
    )
