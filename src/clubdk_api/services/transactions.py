"""Transaction scope shared by the top-level ledger operations."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit when the block completes, roll back and re-raise on any error."""

    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
