"""Pydantic request and response models for API endpoints.

JSON keys are camelCase because the web and mobile clients already consume
them that way.
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    error: str


class SuccessResponse(BaseModel):
    success: bool = True


class SyncSummaryResponse(CamelModel):
    """Result of a measurement sync run."""
    success: bool = True
    total_measurements: int
    new_records: int
    duplicates_removed: int


class SyncLogResponse(CamelModel):
    """One sync log entry."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    provider: str
    status: str
    records_affected: int
    detail: str | None
    run_at: datetime


class IntegrationStatus(CamelModel):
    connected: bool
    last_sync: SyncLogResponse | None = None


class IntegrationStatusResponse(BaseModel):
    google: IntegrationStatus
    withings: IntegrationStatus
    apple_health: IntegrationStatus


class CalendarEventResponse(CamelModel):
    id: str
    summary: str
    start: str | None
    end: str | None
    all_day: bool
    status: str | None


class FreeSlotResponse(CamelModel):
    start: datetime
    end: datetime
    duration_min: int


class CalendarSyncResponse(CamelModel):
    date: str
    events: list[CalendarEventResponse]
    free_slots: list[FreeSlotResponse]
    suggested_workout_slot: FreeSlotResponse | None


class WebhookIngestResponse(BaseModel):
    success: bool = True
    received: int
    inserted: int
    skipped: int


class ScheduleWorkoutRequest(CamelModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    title: str | None = None
    description: str | None = None


class ScheduleWorkoutResponse(CamelModel):
    success: bool = True
    event_id: str
    html_link: str | None
