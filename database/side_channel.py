"""
Side-channel store — durable handoff of OAuth callback payloads.

One row per provider.  ``put`` replaces any earlier row in the same
transaction; ``take`` reads the row and deletes it by id, so two pollers
racing for the same payload cannot both consume it.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import AuthHandoff

logger = logging.getLogger(__name__)


class SqlSideChannel:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def put(self, provider: str, payload: str) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(delete(AuthHandoff).where(AuthHandoff.provider == provider))
                row = AuthHandoff(provider=provider, payload=payload)
                session.add(row)
                await session.flush()
                entry_id = row.entry_id
        logger.debug("Side-channel entry %s written for %s", entry_id, provider)
        return entry_id

    async def take(self, provider: str) -> Optional[str]:
        """Consume the provider's payload, or return ``None`` if there is none."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(AuthHandoff)
                    .where(AuthHandoff.provider == provider)
                    .order_by(AuthHandoff.created_at.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                deleted = await session.execute(
                    delete(AuthHandoff).where(AuthHandoff.entry_id == row.entry_id)
                )
                if deleted.rowcount != 1:
                    # another poller took it first
                    return None
                return row.payload

    async def clear(self, provider: str) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(AuthHandoff).where(AuthHandoff.provider == provider)
                )
        return result.rowcount or 0
