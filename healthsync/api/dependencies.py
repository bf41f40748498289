"""FastAPI dependencies for objects built once in the application lifespan."""

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.core.config import Settings, get_settings
from healthsync.core.database import get_db
from healthsync.services.sync import ProviderRunGuard, SyncService
from healthsync.services.token_store import TokenStore


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_run_guard(request: Request) -> ProviderRunGuard:
    return request.app.state.run_guard


def get_token_store(db: AsyncSession = Depends(get_db)) -> TokenStore:
    return TokenStore(db)


def get_sync_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    run_guard: ProviderRunGuard = Depends(get_run_guard),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> SyncService:
    return SyncService(db, settings, run_guard, http_client)
