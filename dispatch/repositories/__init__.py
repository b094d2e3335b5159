"""
Dispatch Store Factory

Provides the entry point for obtaining a dispatch store.
Selects the SQL or in-memory implementation based on STORAGE_BACKEND.

Usage:
    from dispatch.repositories import get_store

    @app.get("/things")
    async def things(store: DispatchStore = Depends(get_store)):
        ...
"""

import logging
from functools import lru_cache
from typing import AsyncIterator

from dispatch.core.config import get_settings
from dispatch.repositories.base import (
    AssignmentDraft,
    AssignmentRecord,
    BranchRecord,
    CourierRecord,
    DeliverableOrder,
    DispatchStore,
    PolicyRecord,
    RoutePoint,
)
from dispatch.repositories.memory import MemoryDispatchStore
from dispatch.repositories.sql import SqlDispatchStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_memory_store() -> MemoryDispatchStore:
    """
    Process-wide in-memory store.

    The same instance serves every request so that data survives between
    calls while the process is alive.
    """
    logger.info("Dispatch Store: Using MemoryDispatchStore")
    return MemoryDispatchStore()


def reset_memory_store() -> None:
    """Drop the cached in-memory store (tests, config changes)."""
    get_memory_store.cache_clear()
    logger.debug("Memory store cache cleared")


async def get_store() -> AsyncIterator[DispatchStore]:
    """
    Dependency injection for FastAPI routes.

    Yields a store bound to a fresh database session for the SQL backend,
    or the shared in-memory store.
    """
    settings = get_settings()

    if settings.uses_memory_store:
        yield get_memory_store()
        return

    from dispatch.database import async_session_maker

    async with async_session_maker() as session:
        try:
            yield SqlDispatchStore(session)
        finally:
            await session.close()


__all__ = [
    "get_store",
    "get_memory_store",
    "reset_memory_store",
    "DispatchStore",
    "MemoryDispatchStore",
    "SqlDispatchStore",
    "AssignmentDraft",
    "AssignmentRecord",
    "BranchRecord",
    "CourierRecord",
    "DeliverableOrder",
    "PolicyRecord",
    "RoutePoint",
]
