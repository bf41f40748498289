"""Google Calendar client: day events and free-slot detection."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from healthsync.core.errors import FetchError
from healthsync.services.oauth import OAuthClient

logger = logging.getLogger(__name__)

CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

MIN_FREE_SLOT_MINUTES = 30
PREFERRED_WORKOUT_MINUTES = 45

DEFAULT_WORKOUT_TITLE = "Workout"
DEFAULT_WORKOUT_DESCRIPTION = "Scheduled workout session"
WORKOUT_COLOR_ID = "2"  # sage


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    summary: str
    start: Optional[str]
    end: Optional[str]
    all_day: bool
    status: Optional[str]


@dataclass(frozen=True)
class CreatedEvent:
    id: str
    html_link: Optional[str]


@dataclass(frozen=True)
class FreeSlot:
    start: datetime
    end: datetime

    @property
    def duration_min(self) -> int:
        return round((self.end - self.start).total_seconds() / 60)


def _parse_event(item: dict[str, Any]) -> CalendarEvent:
    start = item.get("start") or {}
    end = item.get("end") or {}
    return CalendarEvent(
        id=item.get("id", ""),
        summary=item.get("summary") or "(No title)",
        start=start.get("dateTime") or start.get("date"),
        end=end.get("dateTime") or end.get("date"),
        all_day="date" in start and "dateTime" not in start,
        status=item.get("status"),
    )


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def find_free_slots(
    events: list[CalendarEvent],
    window_start: datetime,
    window_end: datetime,
    min_minutes: int = MIN_FREE_SLOT_MINUTES,
) -> list[FreeSlot]:
    """Gaps of at least `min_minutes` between timed events inside the window."""
    busy = sorted(
        (_parse_datetime(e.start), _parse_datetime(e.end))
        for e in events
        if not e.all_day and e.start and e.end
    )

    slots = []
    cursor = window_start
    for busy_start, busy_end in busy:
        if busy_start > cursor:
            gap_end = min(busy_start, window_end)
            if (gap_end - cursor).total_seconds() >= min_minutes * 60:
                slots.append(FreeSlot(start=cursor, end=gap_end))
        cursor = max(cursor, busy_end)
        if cursor >= window_end:
            break

    if cursor < window_end and (window_end - cursor).total_seconds() >= min_minutes * 60:
        slots.append(FreeSlot(start=cursor, end=window_end))

    return slots


def suggest_workout_slot(slots: list[FreeSlot]) -> Optional[FreeSlot]:
    """First slot long enough for a full workout, else the first free slot."""
    for slot in slots:
        if slot.duration_min >= PREFERRED_WORKOUT_MINUTES:
            return slot
    return slots[0] if slots else None


class GoogleCalendarClient:
    """Reads the primary calendar through the Google OAuth adapter."""

    def __init__(self, oauth_client: OAuthClient, http_client: httpx.AsyncClient, page_size: int = 250):
        self.oauth_client = oauth_client
        self.http_client = http_client
        self.page_size = page_size

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        """All single events overlapping [start, end], following nextPageToken."""
        access_token = await self.oauth_client.get_valid_access_token()
        params: dict[str, Any] = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": self.page_size,
        }

        events = []
        while True:
            try:
                response = await self.http_client.get(
                    CALENDAR_EVENTS_URL,
                    params=params,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                payload = response.json()
            except httpx.HTTPStatusError as e:
                raise FetchError(f"Google Calendar returned HTTP {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise FetchError(f"Google Calendar request failed: {e!r}") from e
            except ValueError as e:
                raise FetchError("Google Calendar returned invalid JSON") from e

            events.extend(_parse_event(item) for item in payload.get("items") or [])

            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}

        logger.info(f"Fetched {len(events)} calendar events between {start.isoformat()} and {end.isoformat()}")
        return events

    async def create_event(
        self,
        start: datetime,
        end: datetime,
        timezone_name: str,
        summary: str = DEFAULT_WORKOUT_TITLE,
        description: str = DEFAULT_WORKOUT_DESCRIPTION,
    ) -> CreatedEvent:
        """Insert a private event on the primary calendar with a 15 minute popup reminder."""
        if end <= start:
            raise ValueError("Event end must be after its start")

        access_token = await self.oauth_client.get_valid_access_token()
        body = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": timezone_name},
            "end": {"dateTime": end.isoformat(), "timeZone": timezone_name},
            "visibility": "private",
            "colorId": WORKOUT_COLOR_ID,
            "reminders": {
                "useDefault": False,
                "overrides": [{"method": "popup", "minutes": 15}],
            },
        }

        try:
            response = await self.http_client.post(
                CALENDAR_EVENTS_URL,
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(f"Google Calendar event insert returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Google Calendar event insert failed: {e!r}") from e
        except ValueError as e:
            raise FetchError("Google Calendar returned invalid JSON") from e

        if not isinstance(payload, dict) or not payload.get("id"):
            raise FetchError("Google Calendar event insert response missing id")

        logger.info(f"Created calendar event {payload['id']} at {start.isoformat()}")
        return CreatedEvent(id=payload["id"], html_link=payload.get("htmlLink"))
