from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Float,
    Enum as SAEnum,
    UniqueConstraint,
)
from sqlalchemy.types import TypeDecorator

from healthsync.core.database import Base


class Provider(str, Enum):
    """OAuth providers the service holds credentials for."""
    WITHINGS = "withings"  # scale provider
    GOOGLE = "google"      # calendar provider


class MeasurementSource(str, Enum):
    """Where a weight reading came from."""
    WITHINGS = "withings"          # authoritative scale feed
    APPLE_HEALTH = "apple_health"  # passive phone relay, lower trust
    MANUAL = "manual"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores aware datetimes as naive UTC and hands them back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def _enum_column(enum_cls):
    return SAEnum(
        enum_cls,
        values_callable=lambda e: [member.value for member in e],
        native_enum=False,
        length=32,
    )


class Measurement(Base):
    """One weight / body-composition reading, unique per (timestamp, source)."""

    __tablename__ = "measurements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    weight = Column(Float, nullable=False)  # pounds
    body_fat_pct = Column(Float, nullable=True)
    source = Column(_enum_column(MeasurementSource), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("timestamp", "source", name="uix_measurement_timestamp_source"),)


class OAuthCredential(Base):
    """Stored OAuth grant; at most one row per provider."""

    __tablename__ = "oauth_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(_enum_column(Provider), nullable=False, unique=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    scopes = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
