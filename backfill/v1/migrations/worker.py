"""
Long-running background migration worker with heartbeats.
"""

import asyncio
import contextlib
import os
import socket
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backfill.config.logging import get_logger
from backfill.config.settings import Settings
from backfill.v1.migrations.queue import ClaimedJob, JobQueue
from backfill.v1.migrations.runtime import MigrationRuntime

logger = get_logger(__name__)


class MigrationWorker:
    """
    Queue-polling worker for background migrations.

    Features:
    - Atomic claims (SKIP LOCKED + conditional status transition)
    - Per-job heartbeats (see MigrationRuntime) and stuck job recovery
    - Retry/dead-letter classification shared with drains
    - Graceful shutdown
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        runtime: MigrationRuntime,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self._queue = queue
        self._runtime = runtime
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self.active_jobs: set[UUID] = set()
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the worker main loop."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stopping.clear()
        logger.info(
            "Starting migration worker",
            worker_id=self.worker_id,
            concurrency=self.settings.job_concurrency,
            poll_interval_ms=self.settings.job_poll_interval_ms,
        )

        try:
            await asyncio.gather(
                self._worker_loop(),
                self._stuck_job_recovery_loop(),
            )
        except Exception:
            logger.exception("Worker crashed", worker_id=self.worker_id)
            raise
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Stopping migration worker", worker_id=self.worker_id)
        self.running = False
        self._stopping.set()

        if self._tasks:
            _, still_running = await asyncio.wait(
                list(self._tasks), timeout=self.settings.job_shutdown_timeout_s
            )
            if still_running:
                logger.warning(
                    "Worker stopped with active jobs",
                    worker_id=self.worker_id,
                    active_jobs=len(still_running),
                )

    async def run_once(self) -> int:
        """Claim one batch of eligible jobs and process it to completion."""
        claimed = await self._claim()
        if claimed:
            await asyncio.gather(*(self._process_job(job) for job in claimed))
        return len(claimed)

    async def _worker_loop(self) -> None:
        """Main worker loop that claims and processes jobs."""
        poll_s = self.settings.job_poll_interval_ms / 1000

        while self.running:
            try:
                # Check if we can process more jobs
                if len(self.active_jobs) >= self.settings.job_concurrency:
                    await self._sleep(poll_s)
                    continue

                for job in await self._claim():
                    task = asyncio.create_task(self._process_job(job))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

                await self._sleep(poll_s)

            except Exception:
                logger.exception("Error in worker loop", worker_id=self.worker_id)
                await self._sleep(5)  # Back off on errors

    async def _claim(self) -> list[ClaimedJob]:
        available_slots = max(0, self.settings.job_concurrency - len(self.active_jobs))
        if available_slots == 0:
            return []

        async with self._session_factory() as session:
            claimed = await self._queue.claim(
                session, self.worker_id, limit=available_slots
            )

        self.active_jobs.update(job.id for job in claimed)
        return claimed

    async def _process_job(self, job: ClaimedJob) -> None:
        try:
            await self._runtime.execute(job, self.worker_id)
        except Exception:
            # The claim is left running and redelivered after the visibility timeout
            logger.exception(
                "Failed to settle job", job_id=str(job.id), worker_id=self.worker_id
            )
        finally:
            self.active_jobs.discard(job.id)

    async def _stuck_job_recovery_loop(self) -> None:
        """Recover jobs that are stuck due to worker crashes."""
        interval_s = max(1, self.settings.job_visibility_timeout_s // 2)

        while self.running:
            try:
                async with self._session_factory() as session:
                    await self._queue.recover_stale(
                        session, self.settings.job_visibility_timeout_s
                    )

                await self._sleep(interval_s)

            except Exception:
                logger.exception("Error in stuck job recovery")
                await self._sleep(interval_s)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the worker is stopped."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
