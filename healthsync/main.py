from contextlib import asynccontextmanager
import httpx
from fastapi import FastAPI

from healthsync.core.config import get_settings
from healthsync.core.database import Database
from healthsync.api import apple_health, config, integrations
from healthsync.services.scheduler import start_scheduler, stop_scheduler
from healthsync.services.sync import ProviderRunGuard
# Import models so their tables are registered on Base
import healthsync.models  # noqa: F401


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    settings = get_settings()

    # Startup
    database = Database(settings.database_url, echo=settings.debug)
    await database.create_all()
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    run_guard = ProviderRunGuard()

    app.state.database = database
    app.state.http_client = http_client
    app.state.run_guard = run_guard

    scheduler = None
    if settings.scheduled_sync_enabled:
        scheduler = start_scheduler(database, settings, run_guard, http_client)

    yield

    # Shutdown
    stop_scheduler(scheduler)
    await http_client.aclose()
    await database.dispose()


# Create FastAPI application
app = FastAPI(
    title="Health Sync",
    description="Syncs Withings scale readings and removes duplicates relayed through Apple Health",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(integrations.router)
app.include_router(apple_health.router)
