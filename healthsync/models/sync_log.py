"""Sync log model for tracking sync operations."""

from sqlalchemy import Column, Integer, String, Text

from healthsync.core.database import Base
from healthsync.models.database import UTCDateTime, utcnow


class SyncLog(Base):
    """Append-only log of sync runs."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False, index=True)  # "withings", "google_calendar", "apple_health"
    status = Column(String, nullable=False)  # "success", "error"
    records_affected = Column(Integer, nullable=False, default=0)
    detail = Column(Text, nullable=True)
    run_at = Column(UTCDateTime, nullable=False, default=utcnow)
