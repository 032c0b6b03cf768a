"""
FastAPI application factory with New Relic APM, CORS, lifespan, error handlers and all routers.
"""
import logging
import os

# New Relic must be initialized BEFORE any other imports that it instruments.
if os.getenv("NEW_RELIC_LICENSE_KEY"):
    import newrelic.agent
    newrelic.agent.initialize()

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ridefare.config import get_settings
from ridefare.database import close_db
from ridefare.dependencies import get_services
from ridefare.errors import BackendUnavailableError, CatalogUnavailableError, PricingError
from ridefare.redis_client import close_redis, get_cache
from ridefare.routers import monitoring, orders, quotes, rules

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s [%s]", settings.app_name, settings.env)
    await get_cache()          # warm up connection pool
    services = await get_services()
    try:
        await services.catalog.load()
    except CatalogUnavailableError:
        # Quotes answer 503 until a later request manages the first load
        logger.warning("Rule catalog unavailable at startup")
    yield
    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Ride-hailing pricing and promotion engine",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PricingError)
async def pricing_error_handler(request: Request, exc: PricingError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s %s", exc.code, request.url, exc.message, exc.details)
    else:
        logger.info("%s on %s: %s", exc.code, request.url, exc.message)
    headers = None
    if isinstance(exc, BackendUnavailableError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message, "details": exc.details},
        headers=headers,
    )


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Health check (no auth)
@app.get("/health", tags=["Health"])
async def health():
    cache = await get_cache()
    return {"status": "ok", "cache": "up" if cache.healthy else "degraded"}


# Register routers
app.include_router(quotes.router)
app.include_router(orders.router)
app.include_router(rules.router)
app.include_router(monitoring.router)
