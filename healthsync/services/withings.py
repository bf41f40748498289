"""Withings measure API client: fetches and normalizes scale readings."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import httpx

from healthsync.core.errors import FetchError
from healthsync.models.database import MeasurementSource
from healthsync.services.oauth import OAuthClient

logger = logging.getLogger(__name__)

WITHINGS_MEASURE_URL = "https://wbsapi.withings.net/measure"

KG_TO_LBS = 2.20462

# Withings measure types
MEASTYPE_WEIGHT = 1  # kg
MEASTYPE_FAT_RATIO = 6  # %

# Withings measure group category: 1 = real measurements, 2 = user objectives
CATEGORY_REAL = 1


@dataclass(frozen=True)
class RawMeasurement:
    """A provider reading in canonical shape (pounds, UTC)."""
    timestamp: datetime
    weight: float
    body_fat_pct: Optional[float]
    source: MeasurementSource


def _measure_value(measure: dict) -> float:
    """Withings encodes values as an integer mantissa and a base-10 exponent."""
    return measure["value"] * (10 ** measure["unit"])


def parse_measure_group(group: dict) -> Optional[RawMeasurement]:
    """
    Convert one Withings measure group into a RawMeasurement.

    Returns None when the group carries no weight.
    """
    weight_kg = None
    body_fat_pct = None

    for measure in group.get("measures") or []:
        if measure.get("type") == MEASTYPE_WEIGHT:
            weight_kg = _measure_value(measure)
        elif measure.get("type") == MEASTYPE_FAT_RATIO:
            body_fat_pct = _measure_value(measure)

    if not weight_kg:
        return None

    return RawMeasurement(
        timestamp=datetime.fromtimestamp(group["date"], tz=timezone.utc),
        weight=round(weight_kg * KG_TO_LBS, 1),
        body_fat_pct=round(body_fat_pct, 1) if body_fat_pct else None,
        source=MeasurementSource.WITHINGS,
    )


class WithingsMeasurementFetcher:
    """Pulls weight and body-fat readings for a date range from Withings."""

    source = MeasurementSource.WITHINGS

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def _get_page(self, access_token: str, params: dict[str, Any]) -> dict:
        try:
            response = await self.http_client.post(
                WITHINGS_MEASURE_URL,
                data=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(f"Withings measure API returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Withings measure API request failed: {e!r}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(f"Withings measure API returned invalid JSON: {response.text[:200]}") from e

        if not isinstance(payload, dict) or payload.get("status") != 0 or not isinstance(payload.get("body"), dict):
            status = payload.get("status") if isinstance(payload, dict) else None
            raise FetchError(f"Withings measure error: status={status}")

        return payload["body"]

    async def fetch(self, client: OAuthClient, start: datetime, end: datetime) -> AsyncIterator[RawMeasurement]:
        """
        Yield normalized measurements taken within [start, end].

        Follows Withings `more`/`offset` paging until the range is exhausted.
        Each call re-fetches from the first page.
        """
        access_token = await client.get_valid_access_token()

        params: dict[str, Any] = {
            "action": "getmeas",
            "meastype": f"{MEASTYPE_WEIGHT},{MEASTYPE_FAT_RATIO}",
            "category": str(CATEGORY_REAL),
            "startdate": str(int(start.timestamp())),
            "enddate": str(int(end.timestamp())),
        }

        page = 0
        while True:
            body = await self._get_page(access_token, params)
            page += 1
            groups = body.get("measuregrps") or []
            if not isinstance(groups, list):
                raise FetchError("Withings measuregrps is not a list")
            logger.debug(f"Withings page {page}: {len(groups)} measure groups")

            for group in groups:
                try:
                    measurement = parse_measure_group(group)
                except (KeyError, TypeError, ValueError, AttributeError, OverflowError, OSError) as e:
                    raise FetchError(f"Withings returned a malformed measure group: {e!r}") from e
                if measurement is not None:
                    yield measurement

            if not body.get("more"):
                break

            offset = body.get("offset")
            if offset is None:
                raise FetchError("Withings reported more results without an offset")
            params = {**params, "offset": str(offset)}
