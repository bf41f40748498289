"""Reconciliation of authoritative scale readings against the measurement store.

The passive phone relay re-reports readings the scale already captured, with
clock skew and rounding, so duplicates are matched by tolerance rather than
equality. Authoritative readings are inserted if absent; lower-trust rows that
match one are deleted. Nothing is ever merged or updated in place.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence
from sqlalchemy import select, delete, func
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.core.errors import ReconcileError
from healthsync.models.database import Measurement, MeasurementSource
from healthsync.services.withings import RawMeasurement

logger = logging.getLogger(__name__)

# Two readings this close in time and weight are treated as the same weigh-in.
DUPLICATE_WINDOW = timedelta(minutes=30)
WEIGHT_TOLERANCE_LBS = 0.5

AUTHORITATIVE_SOURCES = (MeasurementSource.WITHINGS,)
LOWER_TRUST_SOURCES = (MeasurementSource.APPLE_HEALTH,)


@dataclass(frozen=True)
class ReconciliationResult:
    inserted: int
    duplicates_removed: int


def _match_conditions(
    timestamp: datetime,
    weight: float,
    sources: Iterable[MeasurementSource],
    window: timedelta,
    tolerance: float,
):
    return (
        Measurement.source.in_(list(sources)),
        Measurement.timestamp.between(timestamp - window, timestamp + window),
        func.abs(Measurement.weight - weight) < tolerance,
    )


async def find_matching(
    session: AsyncSession,
    timestamp: datetime,
    weight: float,
    sources: Iterable[MeasurementSource],
    window: timedelta = DUPLICATE_WINDOW,
    tolerance: float = WEIGHT_TOLERANCE_LBS,
) -> list[Measurement]:
    """Stored measurements from `sources` that look like the same weigh-in."""
    result = await session.execute(
        select(Measurement)
        .where(*_match_conditions(timestamp, weight, sources, window, tolerance))
        .order_by(Measurement.timestamp)
    )
    return list(result.scalars().all())


async def insert_if_absent(session: AsyncSession, measurement: RawMeasurement) -> bool:
    """Insert keyed by (timestamp, source). Returns True if a row was created."""
    stmt = insert(Measurement).values(
        timestamp=measurement.timestamp,
        weight=measurement.weight,
        body_fat_pct=measurement.body_fat_pct,
        source=measurement.source,
    ).on_conflict_do_nothing(
        index_elements=["timestamp", "source"]
    ).returning(Measurement.id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


class ReconciliationEngine:
    """Stateless over its inputs and the store; safe to re-run on the same batch."""

    def __init__(
        self,
        session: AsyncSession,
        window: timedelta = DUPLICATE_WINDOW,
        weight_tolerance: float = WEIGHT_TOLERANCE_LBS,
        lower_trust_sources: Sequence[MeasurementSource] = LOWER_TRUST_SOURCES,
        authoritative_sources: Sequence[MeasurementSource] = AUTHORITATIVE_SOURCES,
    ):
        if set(lower_trust_sources) & set(authoritative_sources):
            raise ValueError("A source cannot be both authoritative and lower-trust")
        self.session = session
        self.window = window
        self.weight_tolerance = weight_tolerance
        self.lower_trust_sources = tuple(lower_trust_sources)
        self.authoritative_sources = tuple(authoritative_sources)

    async def _remove_duplicates_of(self, measurement: RawMeasurement) -> int:
        result = await self.session.execute(
            delete(Measurement).where(
                *_match_conditions(
                    measurement.timestamp,
                    measurement.weight,
                    self.lower_trust_sources,
                    self.window,
                    self.weight_tolerance,
                )
            )
            .returning(Measurement.id)
            .execution_options(synchronize_session=False)
        )
        return len(result.all())

    async def reconcile(self, measurements: Sequence[RawMeasurement]) -> ReconciliationResult:
        """
        Insert new authoritative readings and drop lower-trust duplicates of them.

        Each measurement is committed on its own, so readings processed before
        a failure stay stored and a retried run picks up where this one stopped.

        Raises:
            ReconcileError: a measurement is not from an authoritative source,
                or the store rejected a write.
        """
        for measurement in measurements:
            if measurement.source not in self.authoritative_sources:
                raise ReconcileError(
                    f"Cannot reconcile reading from non-authoritative source {measurement.source}"
                )

        inserted = 0
        duplicates_removed = 0

        for measurement in measurements:
            try:
                if await insert_if_absent(self.session, measurement):
                    inserted += 1
                removed = await self._remove_duplicates_of(measurement)
                await self.session.commit()
            except SQLAlchemyError as e:
                await self.session.rollback()
                raise ReconcileError(
                    f"Store failure reconciling reading at {measurement.timestamp.isoformat()}: {e}"
                ) from e

            if removed:
                logger.info(
                    f"Removed {removed} duplicate reading(s) near {measurement.timestamp.isoformat()} "
                    f"({measurement.weight} lbs)"
                )
            duplicates_removed += removed

        logger.info(f"Reconciled {len(measurements)} readings: {inserted} inserted, {duplicates_removed} duplicates removed")
        return ReconciliationResult(inserted=inserted, duplicates_removed=duplicates_removed)
