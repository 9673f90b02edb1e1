import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from athlete_sync.api.integrations.garmin import router as garmin_integration_router
from athlete_sync.api.webhooks.garmin import legacy_router as garmin_legacy_webhook_router
from athlete_sync.api.webhooks.garmin import router as garmin_webhook_router
from athlete_sync.config.settings import settings
from athlete_sync.core.logger import setup_logger
from athlete_sync.db.models import Base
from athlete_sync.db.session import get_engine

setup_logger(level=settings.log_level, log_file=settings.log_file)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Ensure database tables exist on startup."""
    logger.info("Ensuring database tables exist")
    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables verified")

    # Yield control to FastAPI (use await to satisfy async requirement)
    await asyncio.sleep(0)
    yield

    get_engine().dispose()
    logger.info("Database engine disposed")


app = FastAPI(title="Athlete Sync", lifespan=lifespan)

app.include_router(garmin_integration_router)
app.include_router(garmin_webhook_router)
app.include_router(garmin_legacy_webhook_router)

logger.info("FastAPI application initialized")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    logger.debug(f"Request: {request.method} {request.url.path}")
    response = await call_next(request)
    logger.debug(f"Response: {response.status_code} for {request.method} {request.url.path}")
    return response
