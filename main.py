import logging

import uvicorn
from starlette.middleware.base import BaseHTTPMiddleware

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.core.blob_store import init_blob_store
from app.core.config import settings
from app.core.database import engine
from app.core.exceptions import ErrorCode, NotesError, StorageError, ValidationError
from app.core.logging_config import configure_logging
from app.core.redis_client import close_redis, init_redis
from app.api.v1.api import api_router

logger = logging.getLogger("app.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    # Note: Database tables are managed by Alembic migrations
    configure_logging(settings.LOG_LEVEL)
    await init_redis()
    blobs = await init_blob_store()
    yield
    # Shutdown
    await blobs.close()
    await close_redis()
    await engine.dispose()


class HTTPSRedirectMiddleware(BaseHTTPMiddleware):
    """Middleware to ensure HTTPS redirects use the correct protocol"""
    async def dispatch(self, request: Request, call_next):
        # Check if we're behind a proxy and the original request was HTTPS
        is_https = (
            request.headers.get("x-forwarded-proto") == "https" or
            request.headers.get("x-forwarded-ssl") == "on" or
            request.headers.get("x-forwarded-port") == "443"
        )
        if is_https:
            request.scope["scheme"] = "https"
        response = await call_next(request)

        # Relative redirects (e.g. trailing-slash redirects) keep the public scheme
        if is_https and response.status_code in [301, 302, 303, 307, 308]:
            location = response.headers.get("location")
            if location and location.startswith("http://"):
                response.headers["location"] = location.replace("http://", "https://", 1)

        return response


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Notes with attachments, tags and expiring public links",
    version="1.0.0",
    lifespan=lifespan
)

# Add HTTPS redirect middleware FIRST (always active to handle proxy scenarios)
app.add_middleware(HTTPSRedirectMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trusted host middleware for production
if not settings.DEBUG:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]  # Configure with your actual domains in production
    )


def error_response(error: NotesError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict(settings.DEBUG))


@app.exception_handler(NotesError)
async def notes_error_handler(request: Request, exc: NotesError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(ValidationError("Invalid request", details={"errors": str(exc.errors())}))


@app.exception_handler(RedisError)
async def redis_error_handler(request: Request, exc: RedisError):
    logger.error("Redis error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(StorageError("Key-value store unavailable", details={"error": str(exc)}))


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(StorageError("Database error", ErrorCode.DATABASE_ERROR, {"error": str(exc)}))


# Include API router
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    return {"message": settings.PROJECT_NAME, "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        proxy_headers=True,  # Enable proxy headers support
        forwarded_allow_ips="*"  # Allow forwarded headers from any IP
    )
