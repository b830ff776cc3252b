"""
Completion tracking for background migrations.

Every answer is a fresh query against the queue table, never a cached value:
releases use it to decide whether source data may be cleaned up.
"""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backfill.v1.migrations.queue import JobQueue


class CompletionTracker:
    """Answers whether a migration still has queued, delayed or running jobs."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], queue: JobQueue
    ):
        self._session_factory = session_factory
        self._queue = queue

    async def has_pending(self, name: str) -> bool:
        return await self.count_pending(name) > 0

    async def count_pending(self, name: str) -> int:
        """Queued (delayed included) plus running jobs for ``name``."""
        async with self._session_factory() as session:
            return await self._queue.count_pending(session, name)

    async def count_eligible(self, name: str, ignore_delay: bool = False) -> int:
        """Queued jobs for ``name`` that a claim could pick up right now."""
        async with self._session_factory() as session:
            return await self._queue.count_eligible(session, name, ignore_delay)

    async def next_run_at(self, name: str) -> datetime | None:
        async with self._session_factory() as session:
            return await self._queue.next_run_at(session, name)

    async def dead_count(self, name: str) -> int:
        async with self._session_factory() as session:
            return await self._queue.count_dead(session, name)

    async def pending_by_name(self) -> dict[str, int]:
        async with self._session_factory() as session:
            return await self._queue.pending_by_name(session)
