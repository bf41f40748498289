"""Sync orchestration - coordinates fetching, reconciliation and the sync log."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional, Protocol
import httpx
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.core.config import Settings
from healthsync.core.errors import SyncError
from healthsync.models.database import Provider, utcnow
from healthsync.models.sync_log import SyncLog
from healthsync.services.oauth import OAuthClient, get_oauth_client
from healthsync.services.reconcile import ReconciliationEngine
from healthsync.services.token_store import TokenStore
from healthsync.services.withings import RawMeasurement, WithingsMeasurementFetcher

logger = logging.getLogger(__name__)


class MeasurementFetcher(Protocol):
    def fetch(self, client: OAuthClient, start: datetime, end: datetime) -> AsyncIterator[RawMeasurement]:
        ...


@dataclass(frozen=True)
class SyncSummary:
    measurements_seen: int
    inserted: int
    duplicates_removed: int


class ProviderRunGuard:
    """
    One lock per provider so two runs never share a credential mid-refresh.

    Runs for different providers do not block each other. Constructed once
    per process and passed to whoever starts runs.
    """

    def __init__(self):
        self._locks: dict[Provider, asyncio.Lock] = {}

    def _lock_for(self, provider: Provider) -> asyncio.Lock:
        if provider not in self._locks:
            self._locks[provider] = asyncio.Lock()
        return self._locks[provider]

    def is_running(self, provider: Provider) -> bool:
        return self._lock_for(provider).locked()

    @asynccontextmanager
    async def hold(self, provider: Provider):
        lock = self._lock_for(provider)
        if lock.locked():
            logger.info(f"Waiting for running {provider.value} sync to finish")
        async with lock:
            yield


async def record_run(
    session: AsyncSession,
    provider: str,
    status: str,
    records_affected: int = 0,
    detail: Optional[str] = None,
) -> SyncLog:
    """Append a sync log entry and commit it."""
    entry = SyncLog(
        provider=provider,
        status=status,
        records_affected=records_affected,
        detail=detail,
        run_at=utcnow(),
    )
    session.add(entry)
    await session.commit()
    return entry


async def record_run_best_effort(
    session: AsyncSession,
    provider: str,
    status: str,
    records_affected: int = 0,
    detail: Optional[str] = None,
) -> None:
    """Like record_run, but a failing log write is only logged."""
    try:
        await record_run(session, provider, status, records_affected, detail)
    except SQLAlchemyError as e:
        logger.error(f"Failed to write {status} sync log for {provider}: {e}")
        await session.rollback()


async def last_runs(session: AsyncSession) -> dict[str, SyncLog]:
    """Most recent sync log entry per provider."""
    latest = (
        select(SyncLog.provider, func.max(SyncLog.id).label("max_id"))
        .group_by(SyncLog.provider)
        .subquery()
    )
    result = await session.execute(
        select(SyncLog).join(latest, SyncLog.id == latest.c.max_id)
    )
    return {entry.provider: entry for entry in result.scalars().all()}


def default_fetchers(http_client: httpx.AsyncClient) -> dict[Provider, MeasurementFetcher]:
    return {Provider.WITHINGS: WithingsMeasurementFetcher(http_client)}


class SyncService:
    """Runs one end-to-end measurement sync for a provider."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        run_guard: ProviderRunGuard,
        http_client: httpx.AsyncClient,
        fetchers: Optional[dict[Provider, MeasurementFetcher]] = None,
    ):
        self.session = session
        self.settings = settings
        self.run_guard = run_guard
        self.http_client = http_client
        self.fetchers = fetchers if fetchers is not None else default_fetchers(http_client)

    def _window(self) -> tuple[datetime, datetime]:
        end = utcnow()
        start = end - timedelta(days=self.settings.sync_lookback_days)
        return start, end

    def _engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(
            self.session,
            window=timedelta(minutes=self.settings.duplicate_window_minutes),
            weight_tolerance=self.settings.duplicate_weight_tolerance_lbs,
        )

    async def _run(self, provider: Provider) -> SyncSummary:
        fetcher = self.fetchers.get(provider)
        if fetcher is None:
            raise SyncError(provider.value, f"{provider.value} has no measurement feed to sync")

        client = get_oauth_client(provider, TokenStore(self.session), self.settings, self.http_client)
        start, end = self._window()
        logger.info(f"Syncing {provider.value} measurements from {start.date()} to {end.date()}")

        # The whole window is fetched before anything is written
        measurements = [m async for m in fetcher.fetch(client, start, end)]
        result = await self._engine().reconcile(measurements)

        return SyncSummary(
            measurements_seen=len(measurements),
            inserted=result.inserted,
            duplicates_removed=result.duplicates_removed,
        )

    async def run_sync(self, provider: Provider) -> SyncSummary:
        """
        Fetch the trailing window for a provider and reconcile it into the store.

        Returns:
            SyncSummary with counts for this run.

        Raises:
            SyncError: any failure along the way; the original error is chained.
        """
        async with self.run_guard.hold(provider):
            try:
                summary = await self._run(provider)
            except Exception as e:
                logger.error(f"{provider.value} sync failed: {e}")
                await self.session.rollback()
                detail = str(e) or type(e).__name__
                await record_run_best_effort(self.session, provider.value, "error", 0, detail)
                if isinstance(e, SyncError):
                    raise
                raise SyncError(provider.value, f"{provider.value} sync failed: {detail}") from e

            await record_run_best_effort(self.session, provider.value, "success", summary.inserted)
            logger.info(
                f"{provider.value} sync completed: {summary.measurements_seen} seen, "
                f"{summary.inserted} new, {summary.duplicates_removed} duplicates removed"
            )
            return summary
