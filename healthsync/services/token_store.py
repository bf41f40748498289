"""Persistence for OAuth credentials, one row per provider."""

import logging
from datetime import datetime
from typing import Optional
from sqlalchemy import select, delete
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.models.database import OAuthCredential, Provider, utcnow

logger = logging.getLogger(__name__)


class TokenStore:
    """Reads and writes OAuthCredential rows. No business logic."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, provider: Provider) -> Optional[OAuthCredential]:
        result = await self.session.execute(
            select(OAuthCredential)
            .where(OAuthCredential.provider == provider)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        provider: Provider,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        scopes: Optional[str] = None,
    ) -> OAuthCredential:
        """Store or overwrite the credential for a provider in one statement."""
        now = utcnow()
        stmt = insert(OAuthCredential).values(
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scopes=scopes,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider"],
            set_={
                "access_token": stmt.excluded.access_token,
                "refresh_token": stmt.excluded.refresh_token,
                "expires_at": stmt.excluded.expires_at,
                "scopes": stmt.excluded.scopes,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.commit()
        logger.info(f"Stored {provider.value} credential (expires {expires_at.isoformat()})")
        return await self.get(provider)

    async def delete(self, provider: Provider) -> bool:
        """Remove the provider's credential. Returns False if there was none."""
        result = await self.session.execute(
            delete(OAuthCredential)
            .where(OAuthCredential.provider == provider)
            .returning(OAuthCredential.id)
            .execution_options(synchronize_session=False)
        )
        removed = result.all()
        await self.session.commit()
        return len(removed) > 0

    async def list_connected(self) -> list[OAuthCredential]:
        result = await self.session.execute(select(OAuthCredential))
        return list(result.scalars().all())
