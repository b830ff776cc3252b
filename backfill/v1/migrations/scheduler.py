"""
Scheduling of background migration jobs.

Scheduling is fire-and-forget: calls return once the job rows are committed.
Callers must only schedule after the data change that triggers a migration
has committed, otherwise a worker may observe the pre-commit state. Use
``enqueue_after_commit`` from inside an application transaction.
"""

import asyncio
import functools
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.expression import TableClause

from backfill.config.logging import get_logger
from backfill.config.settings import Settings
from backfill.v1.core.exceptions import (
    InvalidJobArgumentsError,
    UnresolvableMigrationError,
)
from backfill.v1.core.registries import MigrationRegistry
from backfill.v1.migrations.models import utcnow
from backfill.v1.migrations.queue import JobQueue
from backfill.v1.migrations.schemas import DEFAULT_PRIORITY, JobPayload
from backfill.v1.migrations.storage import MigrationStorage

logger = get_logger(__name__)

PENDING_INFO_KEY = "backfill.after_commit_jobs"
LISTENING_INFO_KEY = "backfill.after_commit_scheduler"

Delay = timedelta | float | int
# (name, arguments) or (name, arguments, priority)
JobSpec = tuple[str, Sequence[Any]] | tuple[str, Sequence[Any], int]


def to_timedelta(delay: Delay) -> timedelta:
    """Accept seconds or a timedelta, rejecting negative delays."""
    if not isinstance(delay, timedelta):
        delay = timedelta(seconds=delay)
    if delay < timedelta(0):
        raise ValueError(f"Delay must not be negative: {delay}")
    return delay


class MigrationScheduler:
    """Enqueues migration jobs singly, in bulk, delayed or by id range."""

    def __init__(
        self,
        settings: Settings,
        registry: MigrationRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        *,
        strict: bool = True,
    ):
        self.settings = settings
        self._registry = registry
        self._session_factory = session_factory
        self._queue = queue
        self._strict = strict
        self._after_commit_tasks: set[asyncio.Task] = set()

    async def schedule_one(
        self,
        name: str,
        arguments: Sequence[Any] = (),
        priority: int = DEFAULT_PRIORITY,
    ) -> UUID:
        """Enqueue one job for execution at the earliest opportunity."""
        (job_id,) = await self._enqueue([(name, arguments, priority)])
        return job_id

    async def schedule_in(
        self,
        delay: Delay,
        name: str,
        arguments: Sequence[Any] = (),
        priority: int = DEFAULT_PRIORITY,
    ) -> UUID:
        """Enqueue one job that becomes eligible after ``delay``."""
        (job_id,) = await self._enqueue(
            [(name, arguments, priority)], run_at=utcnow() + to_timedelta(delay)
        )
        return job_id

    async def schedule_bulk(self, jobs: Iterable[JobSpec]) -> list[UUID]:
        """Enqueue many jobs, possibly of different migrations, as one batch."""
        return await self._enqueue(list(jobs))

    async def schedule_bulk_delayed(
        self, delay: Delay, jobs: Iterable[JobSpec]
    ) -> list[UUID]:
        """Enqueue a batch where no job becomes eligible before now + delay."""
        return await self._enqueue(list(jobs), run_at=utcnow() + to_timedelta(delay))

    async def schedule_by_range(
        self,
        name: str,
        table: TableClause,
        batch_size: int,
        interval: Delay,
    ) -> int:
        """
        Schedule ``name(start_id, end_id)`` over every id batch of ``table``.

        The n-th batch (starting at 1) becomes eligible ``n * interval`` from
        now, which staggers the load on the storage layer.

        Returns:
            Number of jobs scheduled
        """
        self._check_registered(name)
        step = to_timedelta(interval)

        async with self._session_factory() as session:
            storage = MigrationStorage(session)
            payloads = [
                JobPayload(name=name, arguments=[start_id, end_id])
                async for start_id, end_id in storage.id_batches(table, batch_size)
            ]
            await self._queue.enqueue(
                session, payloads, run_at=utcnow() + step, stagger=step
            )
        scheduled = len(payloads)

        logger.info(
            "Range batches scheduled",
            migration=name,
            table=table.name,
            batch_size=batch_size,
            interval_s=step.total_seconds(),
            job_count=scheduled,
        )
        return scheduled

    def enqueue_after_commit(
        self, session: AsyncSession, name: str, arguments: Sequence[Any] = ()
    ) -> None:
        """
        Enqueue a job once ``session``'s current transaction commits.

        Nothing is enqueued if the transaction rolls back. The payload is
        validated immediately so bad arguments fail inside the request.
        """
        payload = self._build_payloads([(name, arguments)])[0]
        sync_session = session.sync_session

        if sync_session.info.get(LISTENING_INFO_KEY) is not self:
            event.listen(sync_session, "after_commit", self._flush_after_commit)
            event.listen(
                sync_session, "after_soft_rollback", self._discard_after_rollback
            )
            sync_session.info[LISTENING_INFO_KEY] = self

        # Rolling back a session with no transaction fires no rollback event
        if not sync_session.in_transaction():
            sync_session.begin()
        sync_session.info.setdefault(PENDING_INFO_KEY, []).append(payload)

    async def drain_after_commit_tasks(self) -> None:
        """
        Wait for post-commit enqueues started by this scheduler.

        Must run before the event loop shuts down, otherwise jobs for already
        committed changes are lost. Failures are logged, not raised.
        """
        if self._after_commit_tasks:
            await asyncio.gather(
                *list(self._after_commit_tasks), return_exceptions=True
            )

    def _flush_after_commit(self, sync_session) -> None:
        payloads = sync_session.info.pop(PENDING_INFO_KEY, [])
        if not payloads:
            return

        task = asyncio.get_running_loop().create_task(self._enqueue_payloads(payloads))
        self._after_commit_tasks.add(task)
        task.add_done_callback(functools.partial(self._after_commit_done, payloads))

    def _after_commit_done(
        self, payloads: list[JobPayload], task: asyncio.Task
    ) -> None:
        self._after_commit_tasks.discard(task)
        if task.cancelled():
            error = asyncio.CancelledError()
        else:
            error = task.exception()
            if error is None:
                return

        # Committed changes without their jobs need a manual re-schedule
        logger.error(
            "Post-commit enqueue failed, jobs were not scheduled",
            jobs=[
                {"name": payload.name, "arguments": payload.arguments}
                for payload in payloads
            ],
            cancelled=task.cancelled(),
            exc_info=error,
        )

    def _discard_after_rollback(self, sync_session, previous_transaction) -> None:
        # Savepoint rollbacks leave the outer transaction's jobs in place
        if previous_transaction.nested:
            return

        payloads = sync_session.info.pop(PENDING_INFO_KEY, [])
        if payloads:
            logger.info(
                "Transaction rolled back, discarding scheduled jobs",
                job_count=len(payloads),
            )

    async def _enqueue(
        self, jobs: Sequence[JobSpec], run_at: datetime | None = None
    ) -> list[UUID]:
        payloads = self._build_payloads(jobs)
        return await self._enqueue_payloads(payloads, run_at)

    async def _enqueue_payloads(
        self, payloads: list[JobPayload], run_at: datetime | None = None
    ) -> list[UUID]:
        async with self._session_factory() as session:
            return await self._queue.enqueue(session, payloads, run_at=run_at)

    def _build_payloads(self, jobs: Sequence[JobSpec]) -> list[JobPayload]:
        payloads = []
        for name, arguments, *rest in jobs:
            priority = rest[0] if rest else DEFAULT_PRIORITY
            self._check_registered(name)
            if isinstance(arguments, (str, bytes)):
                raise InvalidJobArgumentsError(
                    f"Arguments for {name} must be a sequence, not a string",
                    {"migration": name},
                )
            try:
                payloads.append(
                    JobPayload(name=name, arguments=list(arguments), priority=priority)
                )
            except PydanticValidationError as e:
                raise InvalidJobArgumentsError(
                    f"Invalid arguments or priority for {name}",
                    {"migration": name, "errors": [err["msg"] for err in e.errors()]},
                ) from None
        return payloads

    def _check_registered(self, name: str) -> None:
        if self._strict and name not in self._registry:
            raise UnresolvableMigrationError(name)
