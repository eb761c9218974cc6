"""
FastAPI service for cached esports statistics.

Resource endpoints answer from the cache or queue a background fetch; the
request queue runs fetches in-process or through a durable HTTP queue.
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.errors import ServiceError, UnknownError, ValidationError
from core.health import get_health_status, set_startup_time
from core.logging import SERVICE_NAME, configure_logging, get_logger
from routers import cache, jobs, matches, players, teams

# Settings are resolved once, by the container
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


async def startup_services() -> None:
    """Start cache and queue and bind job handlers."""
    set_startup_time()
    await container.cache().startup()
    await container.opendota_client().limiter.startup()

    queue = container.request_queue()
    container.resource_service().register_handlers(queue)
    await queue.start()


async def shutdown_services() -> None:
    await container.request_queue().stop()
    client = container.opendota_client()
    await client.close()
    await client.limiter.shutdown()
    await container.cache().shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting stats cache service")
    await startup_services()
    logger.info("Services started successfully",
                cache_backend=container.cache().backend_name(),
                queue_backend=container.request_queue().backend_type())
    yield
    await shutdown_services()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Esports Stats Cache Service",
    version="1.0.0",
    description="Read-through cache and background fetch orchestration for esports statistics",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.error, details=exc.details)
    else:
        logger.info("Request rejected", path=request.url.path, status=exc.status_code, details=exc.details)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    error = ValidationError(messages or "Malformed request")
    return ORJSONResponse(error.to_dict(), status_code=error.status_code)


# Add exception handler middleware BEFORE CORS to catch all errors
class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    """Anything that escapes the routers becomes the standard 500 error body."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            error = UnknownError(f"{type(e).__name__}: {e}")
            logger.exception("Unhandled exception", path=request.url.path, method=request.method)
            return ORJSONResponse(error.to_dict(), status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

app.add_middleware(CatchAllExceptionsMiddleware)

# Add CORS middleware (must be AFTER exception middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(matches.router)
app.include_router(players.router)
app.include_router(teams.router)
app.include_router(cache.router)
app.include_router(jobs.router)


@app.get("/health")
async def health_check():
    """Cache and queue checks, upstream status, process stats and queue counters."""
    queue = container.request_queue()
    health = await get_health_status(
        container.cache(), queue, container.settings(),
        client=container.opendota_client(), protocol=container.cache_or_queue(),
    )
    health.update(
        service=SERVICE_NAME,
        version=app.version,
        queue_stats=queue.get_stats(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return health


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting stats cache service",
               host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
        # Job registry and in-flight maps are per process
        workers=1
    )
