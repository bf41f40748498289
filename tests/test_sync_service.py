"""Tests for sync orchestration, the per-provider run guard and the sync log."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from healthsync.core.errors import FetchError, NoCredentialError, SyncError
from healthsync.models.database import Measurement, MeasurementSource, Provider, utcnow
from healthsync.models.sync_log import SyncLog
from healthsync.services.sync import (
    ProviderRunGuard,
    SyncService,
    last_runs,
    record_run,
)
from healthsync.services.token_store import TokenStore
from healthsync.services.withings import RawMeasurement


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class StaticFetcher:
    """Yields a fixed batch, or raises partway through when told to."""

    def __init__(self, measurements=(), error=None):
        self.measurements = list(measurements)
        self.error = error
        self.windows = []

    async def fetch(self, client, start, end):
        self.windows.append((start, end))
        for m in self.measurements:
            yield m
        if self.error is not None:
            raise self.error


def withings_api(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/measure":
        return httpx.Response(200, json={
            "status": 0,
            "body": {
                "measuregrps": [{
                    "grpid": 1,
                    "date": int(utc(2025, 1, 10, 8, 10).timestamp()),
                    "category": 1,
                    "measures": [{"type": 1, "value": 91174, "unit": -3}],
                }],
                "more": 0,
            },
        })
    return httpx.Response(404)


async def connect_withings(session):
    await TokenStore(session).save(
        Provider.WITHINGS, "access", "refresh", utcnow() + timedelta(hours=3), "user.metrics"
    )


async def sync_log_entries(session):
    result = await session.execute(select(SyncLog).order_by(SyncLog.id))
    return result.scalars().all()


async def measurements(session):
    result = await session.execute(select(Measurement).order_by(Measurement.timestamp))
    return result.scalars().all()


def make_service(session, settings, fetchers=None, handler=withings_api, guard=None):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SyncService(session, settings, guard or ProviderRunGuard(), http_client, fetchers=fetchers)


class TestRunSync:

    @pytest.mark.asyncio
    async def test_end_to_end_removes_apple_health_duplicate(self, async_session, settings):
        await connect_withings(async_session)
        async_session.add(Measurement(
            timestamp=utc(2025, 1, 10, 8, 0), weight=201.3, source=MeasurementSource.APPLE_HEALTH,
        ))
        await async_session.commit()

        summary = await make_service(async_session, settings).run_sync(Provider.WITHINGS)

        assert summary.measurements_seen == 1
        assert summary.inserted == 1
        assert summary.duplicates_removed == 1

        stored = await measurements(async_session)
        assert len(stored) == 1
        assert stored[0].source == MeasurementSource.WITHINGS
        assert stored[0].weight == 201.0
        assert stored[0].timestamp == utc(2025, 1, 10, 8, 10)

        log = await sync_log_entries(async_session)
        assert len(log) == 1
        assert log[0].provider == "withings"
        assert log[0].status == "success"
        assert log[0].records_affected == 1

    @pytest.mark.asyncio
    async def test_second_run_inserts_nothing(self, async_session, settings):
        await connect_withings(async_session)
        service = make_service(async_session, settings)

        await service.run_sync(Provider.WITHINGS)
        summary = await service.run_sync(Provider.WITHINGS)

        assert summary.inserted == 0
        log = await sync_log_entries(async_session)
        assert [entry.records_affected for entry in log] == [1, 0]

    @pytest.mark.asyncio
    async def test_fetches_trailing_lookback_window(self, async_session, settings):
        fetcher = StaticFetcher()
        service = make_service(async_session, settings, fetchers={Provider.WITHINGS: fetcher})

        before = utcnow()
        await service.run_sync(Provider.WITHINGS)
        after = utcnow()

        start, end = fetcher.windows[0]
        assert before <= end <= after
        assert end - start == timedelta(days=settings.sync_lookback_days)

    @pytest.mark.asyncio
    async def test_fetch_failure_logs_error_and_writes_nothing(self, async_session, settings):
        batch = [RawMeasurement(utc(2025, 1, 10, 8), 201.0, None, MeasurementSource.WITHINGS)]
        fetcher = StaticFetcher(batch, error=FetchError("Withings measure API returned HTTP 503"))
        service = make_service(async_session, settings, fetchers={Provider.WITHINGS: fetcher})

        with pytest.raises(SyncError) as exc_info:
            await service.run_sync(Provider.WITHINGS)

        assert exc_info.value.provider == "withings"
        assert isinstance(exc_info.value.__cause__, FetchError)

        # Nothing is reconciled from a partial fetch
        assert await measurements(async_session) == []

        log = await sync_log_entries(async_session)
        assert len(log) == 1
        assert log[0].status == "error"
        assert log[0].records_affected == 0
        assert "HTTP 503" in log[0].detail

    @pytest.mark.asyncio
    async def test_not_connected(self, async_session, settings):
        service = make_service(async_session, settings)

        with pytest.raises(SyncError) as exc_info:
            await service.run_sync(Provider.WITHINGS)

        assert isinstance(exc_info.value.__cause__, NoCredentialError)
        log = await sync_log_entries(async_session)
        assert log[0].status == "error"
        assert "not connected" in log[0].detail

    @pytest.mark.asyncio
    async def test_provider_without_measurement_feed(self, async_session, settings):
        service = make_service(async_session, settings)

        with pytest.raises(SyncError, match="no measurement feed"):
            await service.run_sync(Provider.GOOGLE)

        log = await sync_log_entries(async_session)
        assert log[0].provider == "google"
        assert log[0].status == "error"

    @pytest.mark.asyncio
    async def test_log_write_failure_does_not_mask_sync_error(self, async_session, settings):
        fetcher = StaticFetcher(error=FetchError("upstream down"))
        service = make_service(async_session, settings, fetchers={Provider.WITHINGS: fetcher})

        async def failing_record_run(*args, **kwargs):
            raise OperationalError("INSERT INTO sync_log", {}, Exception("disk I/O error"))

        with patch("healthsync.services.sync.record_run", failing_record_run):
            with pytest.raises(SyncError) as exc_info:
                await service.run_sync(Provider.WITHINGS)

        assert isinstance(exc_info.value.__cause__, FetchError)

    @pytest.mark.asyncio
    async def test_log_write_failure_after_success_returns_summary(self, async_session, settings):
        batch = [RawMeasurement(utc(2025, 1, 10, 8), 201.0, None, MeasurementSource.WITHINGS)]
        service = make_service(async_session, settings, fetchers={Provider.WITHINGS: StaticFetcher(batch)})

        async def failing_record_run(*args, **kwargs):
            raise OperationalError("INSERT INTO sync_log", {}, Exception("disk I/O error"))

        with patch("healthsync.services.sync.record_run", failing_record_run):
            summary = await service.run_sync(Provider.WITHINGS)

        assert summary.inserted == 1
        assert len(await measurements(async_session)) == 1


class TestProviderRunGuard:

    @pytest.mark.asyncio
    async def test_same_provider_runs_are_serialized(self):
        guard = ProviderRunGuard()
        events = []

        async def run(name):
            async with guard.hold(Provider.WITHINGS):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(run("a"), run("b"))

        assert events == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_providers_do_not_block(self):
        guard = ProviderRunGuard()
        release = asyncio.Event()

        async def hold_withings():
            async with guard.hold(Provider.WITHINGS):
                await release.wait()

        task = asyncio.create_task(hold_withings())
        await asyncio.sleep(0)
        assert guard.is_running(Provider.WITHINGS)

        async with guard.hold(Provider.GOOGLE):
            assert guard.is_running(Provider.GOOGLE)
            assert guard.is_running(Provider.WITHINGS)

        release.set()
        await task
        assert not guard.is_running(Provider.WITHINGS)

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self):
        guard = ProviderRunGuard()

        with pytest.raises(RuntimeError):
            async with guard.hold(Provider.WITHINGS):
                raise RuntimeError("boom")

        assert not guard.is_running(Provider.WITHINGS)


class TestSyncLogQueries:

    @pytest.mark.asyncio
    async def test_record_run(self, async_session):
        entry = await record_run(async_session, "withings", "success", 3)

        assert entry.id is not None
        assert entry.records_affected == 3
        assert entry.run_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_last_runs_returns_latest_per_provider(self, async_session):
        await record_run(async_session, "withings", "success", 2)
        await record_run(async_session, "google_calendar", "success", 5)
        await record_run(async_session, "withings", "error", 0, "Withings measure error: status=401")

        latest = await last_runs(async_session)

        assert set(latest) == {"withings", "google_calendar"}
        assert latest["withings"].status == "error"
        assert latest["google_calendar"].records_affected == 5

    @pytest.mark.asyncio
    async def test_last_runs_empty(self, async_session):
        assert await last_runs(async_session) == {}
