"""Ingestion of weight readings relayed from the phone (Health Auto Export)."""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.core.errors import ReconcileError
from healthsync.models.database import MeasurementSource
from healthsync.services.reconcile import (
    DUPLICATE_WINDOW,
    WEIGHT_TOLERANCE_LBS,
    find_matching,
    insert_if_absent,
)
from healthsync.services.withings import KG_TO_LBS, RawMeasurement

logger = logging.getLogger(__name__)

WEIGHT_METRIC_NAMES = {"weight_body_mass", "body_mass", "weight"}

# A relayed reading is skipped when one of these already covers the weigh-in
PREFERRED_SOURCES = (MeasurementSource.WITHINGS, MeasurementSource.MANUAL)


@dataclass
class IngestResult:
    received: int = 0
    inserted: int = 0
    skipped: int = 0


def _parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse a Health Auto Export date.

    The app sends either ISO 8601 or "2025-01-10 08:00:00 -0500". Values
    without an offset are taken as UTC.
    """
    value = value.strip()
    for fmt in ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M:%S"):
        try:
            parsed = datetime.strptime(value, fmt)
            break
        except ValueError:
            continue
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_weight_payload(payload: Any) -> list[RawMeasurement]:
    """Extract body-mass readings (in pounds) from a webhook payload. Malformed points are skipped."""
    readings = []

    for metric in _metrics(payload):
        if not isinstance(metric, dict):
            continue
        name = str(metric.get("name") or "").lower()
        if name not in WEIGHT_METRIC_NAMES:
            continue

        units = str(metric.get("units") or "lb").lower()
        to_lbs = KG_TO_LBS if units.startswith("kg") else 1.0

        points = metric.get("data") or metric.get("dataPoints") or []
        if not isinstance(points, list):
            logger.warning(f"Skipping {name} metric with non-list data")
            continue

        for point in points:
            if not isinstance(point, dict):
                continue
            raw_date = point.get("date")
            qty = point.get("qty", point.get("value"))
            if not raw_date or qty is None:
                continue

            timestamp = _parse_timestamp(str(raw_date))
            if timestamp is None:
                logger.warning(f"Skipping weight point with unparseable date: {raw_date!r}")
                continue

            try:
                weight = float(qty)
                if not math.isfinite(weight):
                    raise ValueError(qty)
            except (TypeError, ValueError):
                logger.warning(f"Skipping weight point with non-numeric qty: {qty!r}")
                continue

            readings.append(RawMeasurement(
                timestamp=timestamp,
                weight=round(weight * to_lbs, 1),
                body_fat_pct=None,
                source=MeasurementSource.APPLE_HEALTH,
            ))

    return readings


def _metrics(payload: Any) -> list:
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    metrics = data.get("metrics") if isinstance(data, dict) else None
    metrics = metrics or payload.get("metrics")
    return metrics if isinstance(metrics, list) else []


def has_weight_metrics(payload: Any) -> bool:
    return len(_metrics(payload)) > 0


async def ingest_passive_readings(
    session: AsyncSession,
    readings: list[RawMeasurement],
    window: timedelta = DUPLICATE_WINDOW,
    tolerance: float = WEIGHT_TOLERANCE_LBS,
) -> IngestResult:
    """
    Store relayed readings that are not already covered by a scale or manual entry.

    Readings that arrive before the scale sync are stored and cleaned up later
    by reconciliation; readings that arrive after it are skipped here.
    """
    result = IngestResult(received=len(readings))

    for reading in readings:
        try:
            matches = await find_matching(
                session, reading.timestamp, reading.weight, PREFERRED_SOURCES, window, tolerance
            )
            if matches:
                result.skipped += 1
                continue
            if await insert_if_absent(session, reading):
                result.inserted += 1
            else:
                result.skipped += 1
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise ReconcileError(f"Store failure ingesting relayed reading: {e}") from e

    logger.info(f"Apple Health ingest: {result.inserted} stored, {result.skipped} skipped of {result.received}")
    return result
