"""Webhook for the Health Auto Export iOS app (passive phone relay)."""

import hmac
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.core.config import Settings, get_settings
from healthsync.core.database import get_db
from healthsync.schemas.responses import ErrorResponse, WebhookIngestResponse
from healthsync.services.passive import has_weight_metrics, ingest_passive_readings, parse_weight_payload
from healthsync.services.sync import record_run_best_effort

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations/apple-health", tags=["apple-health"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post(
    "/webhook",
    response_model=WebhookIngestResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def apple_health_webhook(
    request: Request,
    authorization: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Receive relayed body-mass readings.

    Expected payload (Health Auto Export REST automation):
        {"data": {"metrics": [{"name": "weight_body_mass", "units": "lb",
                               "data": [{"date": "2025-01-10 08:00:00 +0000", "qty": 201.3}]}]}}
    """
    secret = settings.apple_health_webhook_secret
    if not secret:
        return _error(500, "Webhook not configured")

    expected = f"Bearer {secret}".encode()
    if not hmac.compare_digest((authorization or "").encode(), expected):
        return _error(401, "Unauthorized")

    try:
        payload = await request.json()
    except ValueError:
        return _error(400, "Invalid JSON body")

    if not has_weight_metrics(payload):
        return _error(400, "No metrics found in payload")

    try:
        readings = parse_weight_payload(payload)
        result = await ingest_passive_readings(
            db,
            readings,
            window=timedelta(minutes=settings.duplicate_window_minutes),
            tolerance=settings.duplicate_weight_tolerance_lbs,
        )
    except Exception as e:
        logger.error(f"Apple Health webhook error: {e}")
        await db.rollback()
        await record_run_best_effort(db, "apple_health", "error", 0, str(e) or type(e).__name__)
        return _error(500, "Failed to process health data")

    await record_run_best_effort(db, "apple_health", "success", result.inserted)
    return WebhookIngestResponse(received=result.received, inserted=result.inserted, skipped=result.skipped)
