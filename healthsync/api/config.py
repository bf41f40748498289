from fastapi import APIRouter, Depends
from pydantic import BaseModel

from healthsync.core.config import Settings, get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    app_url: str
    withings_configured: bool
    google_configured: bool
    apple_health_webhook_configured: bool
    sync_lookback_days: int
    duplicate_window_minutes: int
    duplicate_weight_tolerance_lbs: float
    tz: str
    scheduled_sync_enabled: bool
    sync_hour: int
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config(settings: Settings = Depends(get_settings)) -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    return ConfigResponse(
        db_path=settings.db_path,
        app_url=settings.app_url,
        withings_configured=bool(settings.withings_client_id and settings.withings_client_secret),
        google_configured=bool(settings.google_client_id and settings.google_client_secret),
        apple_health_webhook_configured=bool(settings.apple_health_webhook_secret),
        sync_lookback_days=settings.sync_lookback_days,
        duplicate_window_minutes=settings.duplicate_window_minutes,
        duplicate_weight_tolerance_lbs=settings.duplicate_weight_tolerance_lbs,
        tz=settings.tz,
        scheduled_sync_enabled=settings.scheduled_sync_enabled,
        sync_hour=settings.sync_hour,
        debug=settings.debug,
    )
