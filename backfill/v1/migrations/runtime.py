"""
Execution of claimed migration jobs.

Every claimed job goes Resolving -> Executing and ends in exactly one of
succeeded (row deleted), retry (requeued with backoff) or dead (dead letter).
Workers and drains share this class so their classification is identical.
"""

import asyncio
import contextlib
import inspect
import random
from collections.abc import AsyncIterator, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backfill.config.logging import get_logger
from backfill.config.settings import Settings
from backfill.v1.core.exceptions import (
    InvalidJobArgumentsError,
    MalformedDataError,
    MigrationError,
    StaleRecordError,
    TransientInfrastructureError,
    UnresolvableMigrationError,
)
from backfill.v1.core.registries import MigrationRegistry, MigrationUnit
from backfill.v1.migrations.models import utcnow
from backfill.v1.migrations.queue import ClaimedJob, JobQueue
from backfill.v1.migrations.schemas import JobOutcome
from backfill.v1.migrations.storage import MigrationStorage

logger = get_logger(__name__)

# Never retried: another attempt runs the same code on the same input
TERMINAL_ERRORS = (
    UnresolvableMigrationError,
    InvalidJobArgumentsError,
    MalformedDataError,
)

TRANSIENT_ERRORS = (
    TransientInfrastructureError,
    OperationalError,
    InterfaceError,
    TimeoutError,
    ConnectionError,
)


class MigrationRuntime:
    """Resolves, executes and settles migration jobs."""

    def __init__(
        self,
        settings: Settings,
        registry: MigrationRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
    ):
        self.settings = settings
        self._registry = registry
        self._session_factory = session_factory
        self._queue = queue

    async def execute(self, job: ClaimedJob, worker_id: str) -> JobOutcome:
        """Run one claimed job and record its outcome in the queue."""
        job_logger = logger.bind(
            job_id=str(job.id), migration=job.name, attempt=job.attempts
        )

        try:
            job_logger.info("Processing job started")
            async with self._heartbeat(job, worker_id):
                unit = self._resolve(job.name, job.arguments)
                await self._perform(unit, job.arguments)

        except StaleRecordError as e:
            job_logger.info("Record vanished, nothing to migrate", reason=e.message)

        except TERMINAL_ERRORS as e:
            await self._bury(job, worker_id, e.error_code, e.message)
            job_logger.error(
                "Job moved to deadletter queue",
                error_code=e.error_code,
                error=e.message,
            )
            return JobOutcome.DEAD

        except asyncio.CancelledError:
            # The claim stays running and is redelivered after the visibility timeout
            job_logger.warning("Job processing cancelled")
            raise

        except Exception as e:
            transient = isinstance(e, TRANSIENT_ERRORS)
            job_logger.exception(
                "Job processing failed",
                error=str(e),
                transient=transient,
            )

            if job.attempts < self.settings.job_max_attempts:
                next_run_at = self.calculate_retry_time(job.attempts)
                async with self._session_factory() as session:
                    await self._queue.retry(
                        session, job.id, worker_id, next_run_at, _describe(e)
                    )
                job_logger.info(
                    "Job scheduled for retry", next_run_at=next_run_at.isoformat()
                )
                return JobOutcome.RETRY

            await self._bury(job, worker_id, "RETRIES_EXHAUSTED", _describe(e))
            job_logger.error(
                "Job moved to deadletter queue",
                error_code="RETRIES_EXHAUSTED",
                attempts=job.attempts,
            )
            return JobOutcome.DEAD

        async with self._session_factory() as session:
            await self._queue.ack(session, job.id, worker_id)

        job_logger.info("Processing job completed successfully")
        return JobOutcome.SUCCEEDED

    async def run_inline(self, name: str, arguments: Sequence[Any]) -> None:
        """
        Perform a migration immediately, bypassing the queue.

        Resolution and argument checks match queued execution, but every error
        propagates to the caller instead of being retried or dead-lettered.
        """
        unit = self._resolve(name, tuple(arguments))
        try:
            await self._perform(unit, tuple(arguments))
        except StaleRecordError:
            return

    def calculate_retry_time(self, attempt: int) -> datetime:
        """Calculate next retry time with exponential backoff and jitter."""
        base_delay = self.settings.job_backoff_base_ms / 1000  # Convert to seconds
        max_delay = self.settings.job_max_backoff_s

        # Exponential backoff: base * 2^attempt
        delay = min(max_delay, base_delay * (2 ** (attempt - 1)))

        # Add jitter (±25% random variation)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        final_delay = max(0.0, delay + jitter)

        return utcnow() + timedelta(seconds=final_delay)

    @contextlib.asynccontextmanager
    async def _heartbeat(self, job: ClaimedJob, worker_id: str) -> AsyncIterator[None]:
        """Refresh the claim's heartbeat for as long as the job runs."""
        task = asyncio.create_task(self._heartbeat_loop(job, worker_id))
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _heartbeat_loop(self, job: ClaimedJob, worker_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.job_heartbeat_interval_s)
            try:
                async with self._session_factory() as session:
                    held = await self._queue.heartbeat(session, [job.id], worker_id)
            except Exception:
                logger.exception(
                    "Error updating heartbeat", job_id=str(job.id), worker_id=worker_id
                )
                continue

            if not held:
                logger.warning(
                    "Claim lost while job is running",
                    job_id=str(job.id),
                    worker_id=worker_id,
                )
                return

    def _resolve(self, name: str, arguments: tuple[Any, ...]) -> MigrationUnit:
        unit = self._registry.resolve(name)

        try:
            inspect.signature(unit.perform).bind(None, *arguments)
        except TypeError as e:
            raise InvalidJobArgumentsError(
                f"Arguments do not match {name}.perform: {e}",
                {"migration": name, "arguments": list(arguments)},
            ) from None

        return unit

    async def _perform(self, unit: MigrationUnit, arguments: tuple[Any, ...]) -> None:
        async with self._session_factory() as session:
            try:
                await unit.perform(MigrationStorage(session), *arguments)
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def _bury(
        self, job: ClaimedJob, worker_id: str, error_code: str, error: str
    ) -> None:
        async with self._session_factory() as session:
            await self._queue.bury(session, job.id, worker_id, error_code, error)


def _describe(error: BaseException) -> str:
    if isinstance(error, MigrationError):
        return f"{error.__class__.__name__}: {error.message}"
    return f"{error.__class__.__name__}: {error}"
