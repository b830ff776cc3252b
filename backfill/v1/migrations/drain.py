"""
Steal/drain of outstanding background migration jobs.

Used by the release that cleans up after a migration: it claims every
remaining job of one migration and runs it in the calling process, and only
returns once the queue reports nothing pending for that name.

Delay policy: by default a drain waits until delayed jobs (and retry
backoffs) become eligible. ``ignore_delay=True`` claims them immediately.
"""

import asyncio
import os
import socket
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backfill.config.logging import get_logger
from backfill.config.settings import Settings
from backfill.v1.core.exceptions import DrainTimeoutError
from backfill.v1.migrations.models import utcnow
from backfill.v1.migrations.queue import JobQueue
from backfill.v1.migrations.runtime import MigrationRuntime
from backfill.v1.migrations.schemas import DrainReport
from backfill.v1.migrations.tracker import CompletionTracker

logger = get_logger(__name__)


class DrainController:
    """Synchronously executes all remaining jobs of a migration."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        runtime: MigrationRuntime,
        tracker: CompletionTracker,
        drainer_id: str | None = None,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self._queue = queue
        self._runtime = runtime
        self._tracker = tracker
        self.drainer_id = drainer_id or (
            f"drain-{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"
        )

    async def drain(
        self,
        name: str,
        *,
        ignore_delay: bool = False,
        timeout: float | None = None,
    ) -> DrainReport:
        """
        Claim and execute jobs of ``name`` until none are pending.

        Args:
            name: Migration name
            ignore_delay: Claim delayed jobs without waiting for their run_at
            timeout: Seconds to wait at most, None waits forever

        Returns:
            Counts of executed jobs by outcome

        Raises:
            DrainTimeoutError: jobs were still pending when ``timeout`` elapsed
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout if timeout is not None else None
        poll_s = self.settings.drain_poll_interval_ms / 1000
        report = DrainReport(name=name)
        drain_logger = logger.bind(
            migration=name, drainer_id=self.drainer_id, ignore_delay=ignore_delay
        )

        drain_logger.info("Drain started")

        while True:
            async with self._session_factory() as session:
                claimed = await self._queue.claim(
                    session,
                    self.drainer_id,
                    name=name,
                    limit=1,
                    ignore_delay=ignore_delay,
                )

            if claimed:
                outcome = await self._runtime.execute(claimed[0], self.drainer_id)
                report.record(outcome)
                continue

            wait_s = poll_s
            if await self._tracker.count_eligible(name, ignore_delay) > 0:
                # Candidates are row-locked by another claimer
                pending = await self._tracker.count_pending(name)
            else:
                async with self._session_factory() as session:
                    await self._queue.recover_stale(
                        session, self.settings.job_visibility_timeout_s
                    )

                pending = await self._tracker.count_pending(name)
                if pending == 0:
                    break

                if not ignore_delay:
                    next_run_at = await self._tracker.next_run_at(name)
                    if next_run_at is not None:
                        until_eligible = (next_run_at - utcnow()).total_seconds()
                        wait_s = min(poll_s, max(0.0, until_eligible))

            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    drain_logger.error("Drain timed out", pending=pending)
                    raise DrainTimeoutError(name, pending, timeout)
                wait_s = min(wait_s, remaining)

            drain_logger.debug("Waiting for pending jobs", pending=pending, wait_s=wait_s)
            await asyncio.sleep(wait_s)

        report.elapsed_s = round(loop.time() - started, 3)
        drain_logger.info(
            "Drain completed",
            executed=report.executed,
            succeeded=report.succeeded,
            retried=report.retried,
            dead=report.dead,
            elapsed_s=report.elapsed_s,
        )
        return report
