"""
SoundPath Relay - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from relay.core.config import settings
from relay.core.logging import setup_logging, get_logger
from relay.core.middleware import setup_middleware, setup_exception_handlers
from relay.api.routes import router as api_router
from relay.db.database import engine, Base
import relay.db.models  # noqa: F401  registers every table on Base.metadata

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "workers", "description": "Dispatcher runs triggered by external cron (worker token)."},
    {"name": "oauth", "description": "Calendar integration handshake (Google, Microsoft)."},
    {"name": "webhooks", "description": "Signed inbound webhooks: billing events and inbound email."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Outbound delivery workers, OAuth integrations and inbound webhooks.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Liveness probe"""
    return {"status": "healthy"}


@app.get("/health/ready", tags=["Health"])
async def readiness_check() -> JSONResponse:
    """Readiness probe: database reachable"""
    from relay.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
