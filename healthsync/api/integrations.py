"""Integration endpoints: OAuth connect/disconnect, sync triggers and status."""

import logging
import urllib.parse
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.api.dependencies import (
    get_http_client,
    get_run_guard,
    get_sync_service,
    get_token_store,
)
from healthsync.core.config import Settings, get_settings
from healthsync.core.database import get_db
from healthsync.core.errors import ConfigurationError, HealthSyncError, SyncError
from healthsync.models.database import Provider
from healthsync.schemas.responses import (
    CalendarEventResponse,
    CalendarSyncResponse,
    ErrorResponse,
    FreeSlotResponse,
    IntegrationStatus,
    IntegrationStatusResponse,
    ScheduleWorkoutRequest,
    ScheduleWorkoutResponse,
    SuccessResponse,
    SyncLogResponse,
    SyncSummaryResponse,
)
from healthsync.services.google_calendar import (
    DEFAULT_WORKOUT_DESCRIPTION,
    DEFAULT_WORKOUT_TITLE,
    GoogleCalendarClient,
    find_free_slots,
    suggest_workout_slot,
)
from healthsync.services.oauth import get_oauth_client
from healthsync.services.sync import ProviderRunGuard, SyncService, last_runs, record_run_best_effort
from healthsync.services.token_store import TokenStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

DISPLAY_NAMES = {
    Provider.WITHINGS: "Withings",
    Provider.GOOGLE: "Google Calendar",
}

WORKDAY_START = time(6, 0)
WORKDAY_END = time(21, 0)


def _settings_redirect(settings: Settings, **params: str) -> RedirectResponse:
    """Send the user back to the settings screen with a status flag."""
    query = urllib.parse.urlencode(params)
    return RedirectResponse(url=f"{settings.app_url.rstrip('/')}/settings?{query}", status_code=302)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post(
    "/withings/sync",
    response_model=SyncSummaryResponse,
    responses={500: {"model": ErrorResponse}},
)
async def sync_withings(sync_service: SyncService = Depends(get_sync_service)):
    """Sync the trailing window of Withings weight data and remove relayed duplicates."""
    try:
        summary = await sync_service.run_sync(Provider.WITHINGS)
    except SyncError:
        return _error(500, "Failed to sync Withings data")

    return SyncSummaryResponse(
        total_measurements=summary.measurements_seen,
        new_records=summary.inserted,
        duplicates_removed=summary.duplicates_removed,
    )


@router.get(
    "/google/sync",
    response_model=CalendarSyncResponse,
    responses={500: {"model": ErrorResponse}},
)
async def sync_google_calendar(
    date_param: str | None = Query(None, alias="date"),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    run_guard: ProviderRunGuard = Depends(get_run_guard),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    """Fetch a day's calendar events and the free slots between them."""
    tz = ZoneInfo(settings.tz)
    try:
        target_date = date.fromisoformat(date_param) if date_param else datetime.now(tz).date()
    except ValueError:
        raise HTTPException(status_code=422, detail="date must be YYYY-MM-DD")

    day_start = datetime.combine(target_date, time.min, tzinfo=tz)
    day_end = datetime.combine(target_date, time.max, tzinfo=tz)

    try:
        async with run_guard.hold(Provider.GOOGLE):
            oauth_client = get_oauth_client(Provider.GOOGLE, TokenStore(db), settings, http_client)
            events = await GoogleCalendarClient(oauth_client, http_client).list_events(day_start, day_end)
    except HealthSyncError as e:
        logger.error(f"Google Calendar sync failed: {e}")
        await db.rollback()
        await record_run_best_effort(db, "google_calendar", "error", 0, str(e))
        return _error(500, "Failed to sync calendar")

    slots = find_free_slots(
        events,
        datetime.combine(target_date, WORKDAY_START, tzinfo=tz),
        datetime.combine(target_date, WORKDAY_END, tzinfo=tz),
    )
    suggested = suggest_workout_slot(slots)
    await record_run_best_effort(db, "google_calendar", "success", len(events))

    def _slot(slot):
        return FreeSlotResponse(start=slot.start, end=slot.end, duration_min=slot.duration_min)

    return CalendarSyncResponse(
        date=target_date.isoformat(),
        events=[
            CalendarEventResponse(
                id=e.id, summary=e.summary, start=e.start, end=e.end, all_day=e.all_day, status=e.status
            )
            for e in events
        ],
        free_slots=[_slot(s) for s in slots],
        suggested_workout_slot=_slot(suggested) if suggested else None,
    )


@router.post(
    "/google/schedule",
    response_model=ScheduleWorkoutResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def schedule_workout(
    payload: ScheduleWorkoutRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    run_guard: ProviderRunGuard = Depends(get_run_guard),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    """Book a workout on the primary calendar."""
    if payload.start_time is None or payload.end_time is None:
        return _error(400, "startTime and endTime are required")

    tz = ZoneInfo(settings.tz)
    start, end = (t if t.tzinfo else t.replace(tzinfo=tz) for t in (payload.start_time, payload.end_time))
    if end <= start:
        return _error(400, "endTime must be after startTime")

    try:
        async with run_guard.hold(Provider.GOOGLE):
            oauth_client = get_oauth_client(Provider.GOOGLE, TokenStore(db), settings, http_client)
            created = await GoogleCalendarClient(oauth_client, http_client).create_event(
                start,
                end,
                settings.tz,
                summary=payload.title or DEFAULT_WORKOUT_TITLE,
                description=payload.description or DEFAULT_WORKOUT_DESCRIPTION,
            )
    except HealthSyncError as e:
        logger.error(f"Google Calendar schedule failed: {e}")
        await db.rollback()
        return _error(500, "Failed to create calendar event")

    return ScheduleWorkoutResponse(event_id=created.id, html_link=created.html_link)


@router.get("/status", response_model=IntegrationStatusResponse)
async def integration_status(
    db: AsyncSession = Depends(get_db),
    token_store: TokenStore = Depends(get_token_store),
):
    """Connection state and last sync for each integration."""
    connected = {credential.provider for credential in await token_store.list_connected()}
    runs = await last_runs(db)

    def _last(provider: str):
        entry = runs.get(provider)
        return SyncLogResponse.model_validate(entry) if entry else None

    return IntegrationStatusResponse(
        google=IntegrationStatus(connected=Provider.GOOGLE in connected, last_sync=_last("google_calendar")),
        withings=IntegrationStatus(connected=Provider.WITHINGS in connected, last_sync=_last("withings")),
        # Webhook based, nothing to connect
        apple_health=IntegrationStatus(connected=False, last_sync=_last("apple_health")),
    )


@router.get("/{provider}/auth")
async def start_authorization(
    provider: Provider,
    settings: Settings = Depends(get_settings),
    token_store: TokenStore = Depends(get_token_store),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    """Redirect to the provider's consent screen."""
    client = get_oauth_client(provider, token_store, settings, http_client)
    try:
        url = client.get_authorization_url()
    except ConfigurationError as e:
        logger.error(f"{provider.value} auth error: {e}")
        return _settings_redirect(settings, error=f"{provider.value}_auth_failed")

    return RedirectResponse(url=url, status_code=302)


@router.get("/{provider}/callback")
async def authorization_callback(
    provider: Provider,
    code: str | None = None,
    error: str | None = None,
    settings: Settings = Depends(get_settings),
    token_store: TokenStore = Depends(get_token_store),
    run_guard: ProviderRunGuard = Depends(get_run_guard),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    """Complete the OAuth flow and send the user back to settings."""
    if error:
        logger.warning(f"{provider.value} authorization denied: {error}")
        return _settings_redirect(settings, error=f"{provider.value}_denied")

    if not code:
        # Withings validates the callback URL with a bare GET and expects a 200
        return PlainTextResponse("OK", status_code=200)

    client = get_oauth_client(provider, token_store, settings, http_client)
    try:
        async with run_guard.hold(provider):
            await client.exchange_code_for_credential(code)
    except (HealthSyncError, SQLAlchemyError) as e:
        logger.error(f"{provider.value} callback error: {e}")
        return _settings_redirect(settings, error=f"{provider.value}_token_failed")

    return _settings_redirect(settings, success=f"{provider.value}_connected")


@router.post(
    "/{provider}/disconnect",
    response_model=SuccessResponse,
    responses={500: {"model": ErrorResponse}},
)
async def disconnect(
    provider: Provider,
    settings: Settings = Depends(get_settings),
    token_store: TokenStore = Depends(get_token_store),
    run_guard: ProviderRunGuard = Depends(get_run_guard),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    """Forget the stored credential for a provider."""
    client = get_oauth_client(provider, token_store, settings, http_client)
    try:
        async with run_guard.hold(provider):
            await client.revoke()
    except SQLAlchemyError as e:
        logger.error(f"{provider.value} disconnect error: {e}")
        return _error(500, f"Failed to disconnect {DISPLAY_NAMES[provider]}")

    return SuccessResponse()
