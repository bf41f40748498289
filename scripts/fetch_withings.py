#!/usr/bin/env python3
"""
Dry-run Withings fetch: prints the normalized readings a sync would see,
without writing measurements. Uses the credential stored by the OAuth flow.
"""

import asyncio
import sys
from datetime import timedelta

import httpx

from healthsync.core.config import get_settings
from healthsync.core.database import Database
from healthsync.models.database import Provider, utcnow
from healthsync.services.oauth import get_oauth_client
from healthsync.services.token_store import TokenStore
from healthsync.services.withings import WithingsMeasurementFetcher
import healthsync.models  # noqa: F401


async def main(days: int):
    settings = get_settings()
    database = Database(settings.database_url)
    end = utcnow()
    start = end - timedelta(days=days)
    print(f"Fetching Withings readings from {start.date()} to {end.date()}...")

    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as http_client:
        async with database.session() as session:
            client = get_oauth_client(Provider.WITHINGS, TokenStore(session), settings, http_client)
            fetcher = WithingsMeasurementFetcher(http_client)
            count = 0
            async for m in fetcher.fetch(client, start, end):
                fat = f"{m.body_fat_pct}%" if m.body_fat_pct is not None else "-"
                print(f"  {m.timestamp.isoformat()}  {m.weight:6.1f} lbs  fat {fat}")
                count += 1

    await database.dispose()
    print(f"\nDone! {count} readings.")


if __name__ == "__main__":
    asyncio.run(main(int(sys.argv[1]) if len(sys.argv) > 1 else 30))
