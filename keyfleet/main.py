# keyfleet/main.py
"""
keyfleet - HTTP entry point
Serves the admin API and owns process-wide logging setup
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from keyfleet.api.v1 import admin
from keyfleet.config import settings
from keyfleet.core.errors import KeyfleetError
from keyfleet.database.session import check_connection, init_db
from keyfleet.schemas.base import ErrorResponse, HealthResponse

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; the engine holds no other long-lived resources"""
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} starting as engine '{settings.ENGINE_ID}' ({settings.ENV})")
    init_db()
    app.state.started_at = datetime.utcnow()
    yield
    logger.info(f"{settings.APP_NAME} stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description="""
    keyfleet API

    Centralized SSH access control:
    - Compiles authorized_keys and known_hosts per host from the grant store
    - Converges hosts with staged, verified, atomic replacement
    - Holds lockout-risk changes for manual review

    Admin endpoints require the X-Admin-Token header.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan
)


def error_response(status_code: int, error: str, error_code: str, details: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(error=error, error_code=error_code, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# === Exception Handlers ===

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(loc) for loc in e["loc"]), "message": e["msg"], "type": e["type"]}
        for e in exc.errors()
    ]
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error", "VALIDATION_ERROR", {"errors": errors})


@app.exception_handler(KeyfleetError)
async def engine_exception_handler(request: Request, exc: KeyfleetError):
    """Engine errors that escaped an endpoint"""
    logger.warning(f"Engine error on {request.url.path}: {exc}")
    return error_response(status.HTTP_409_CONFLICT, exc.message, exc.code)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "INTERNAL_ERROR",
        {"message": str(exc)} if settings.DEBUG else None
    )


app.include_router(admin.router, prefix=f"{settings.API_PREFIX}/admin", tags=["Admin"])


@app.get("/health", response_model=HealthResponse, summary="Service and database health")
async def health_check(request: Request):
    database = "connected" if check_connection() else "disconnected"
    started_at = getattr(request.app.state, "started_at", None)
    return HealthResponse(
        status="healthy" if database == "connected" else "unhealthy",
        service=settings.APP_NAME,
        version=settings.APP_VERSION,
        engine_id=settings.ENGINE_ID,
        database=database,
        uptime_seconds=(datetime.utcnow() - started_at).total_seconds() if started_at else None,
    )


def run() -> None:
    """Console entry point"""
    uvicorn.run(
        "keyfleet.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    run()
