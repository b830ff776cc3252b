"""
Durable, table-backed queue for background migration jobs.

Claims are atomic: candidates are selected with FOR UPDATE SKIP LOCKED where
the backend supports it, and each one is then moved from queued to running
with a conditional UPDATE. A claim only counts when that UPDATE touched the
row, so two claimers can never both own the same job.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backfill.config.logging import get_logger
from backfill.config.settings import Settings
from backfill.v1.migrations.models import (
    PENDING_STATUSES,
    JobStatus,
    ScheduledJob,
    as_utc,
    utcnow,
)
from backfill.v1.migrations.schemas import JobPayload, QueueStatsResponse

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job row owned by one worker or drainer."""

    id: UUID
    name: str
    arguments: tuple[Any, ...]
    attempts: int
    run_at: datetime


class JobQueue:
    """Queue operations over the background_migration_jobs table."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def enqueue(
        self,
        session: AsyncSession,
        payloads: Sequence[JobPayload],
        run_at: datetime | None = None,
        stagger: timedelta | None = None,
    ) -> list[UUID]:
        """
        Insert jobs in as few statements as possible and commit once.

        Args:
            session: Database session
            payloads: Validated job payloads, names may differ
            run_at: Earliest claim time for every job, defaults to now
            stagger: Extra delay added per position, the i-th job runs at
                run_at + i * stagger

        Returns:
            Ids of the inserted jobs, in payload order
        """
        if not payloads:
            return []

        now = utcnow()
        first_run_at = run_at or now
        stagger = stagger or timedelta(0)
        rows = [
            {
                "id": uuid4(),
                "name": payload.name,
                "arguments": list(payload.arguments),
                "priority": payload.priority,
                "status": JobStatus.QUEUED.value,
                "run_at": first_run_at + stagger * position,
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }
            for position, payload in enumerate(payloads)
        ]

        batch_size = self.settings.job_bulk_insert_batch_size
        for start in range(0, len(rows), batch_size):
            await session.execute(insert(ScheduledJob), rows[start : start + batch_size])
        await session.commit()

        logger.info(
            "Jobs enqueued",
            job_count=len(rows),
            names=sorted({row["name"] for row in rows}),
            run_at=first_run_at.isoformat(),
        )

        return [row["id"] for row in rows]

    async def claim(
        self,
        session: AsyncSession,
        worker_id: str,
        *,
        name: str | None = None,
        limit: int = 1,
        ignore_delay: bool = False,
    ) -> list[ClaimedJob]:
        """
        Claim up to ``limit`` queued jobs for ``worker_id``.

        Only jobs whose run_at has passed are considered unless ``ignore_delay``
        is set. Returns an empty list when nothing could be claimed.
        """
        if limit <= 0:
            return []

        now = utcnow()
        conditions = [ScheduledJob.status == JobStatus.QUEUED.value]
        if name is not None:
            conditions.append(ScheduledJob.name == name)
        if not ignore_delay:
            conditions.append(ScheduledJob.run_at <= now)

        candidates_query = (
            select(
                ScheduledJob.id,
                ScheduledJob.name,
                ScheduledJob.arguments,
                ScheduledJob.attempts,
                ScheduledJob.run_at,
            )
            .where(and_(*conditions))
            .order_by(
                ScheduledJob.priority, ScheduledJob.run_at, ScheduledJob.created_at
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidates = (await session.execute(candidates_query)).all()

        if not candidates:
            await session.commit()
            return []

        claimed: list[ClaimedJob] = []
        for candidate in candidates:
            result = await session.execute(
                update(ScheduledJob)
                .where(
                    and_(
                        ScheduledJob.id == candidate.id,
                        ScheduledJob.status == JobStatus.QUEUED.value,
                    )
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    locked_at=now,
                    locked_by=worker_id,
                    heartbeat_at=now,
                    attempts=ScheduledJob.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(
                    ClaimedJob(
                        id=candidate.id,
                        name=candidate.name,
                        arguments=tuple(candidate.arguments or ()),
                        attempts=candidate.attempts + 1,
                        run_at=as_utc(candidate.run_at),
                    )
                )

        await session.commit()

        if claimed:
            logger.info(
                "Claimed jobs",
                worker_id=worker_id,
                job_count=len(claimed),
                job_ids=[str(job.id) for job in claimed],
            )

        return claimed

    async def ack(self, session: AsyncSession, job_id: UUID, worker_id: str) -> bool:
        """Remove a successfully executed job. False if the claim was lost."""
        result = await session.execute(
            delete(ScheduledJob)
            .where(
                and_(
                    ScheduledJob.id == job_id,
                    ScheduledJob.locked_by == worker_id,
                    ScheduledJob.status == JobStatus.RUNNING.value,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount == 0:
            logger.warning(
                "Acknowledged job no longer held by claimer",
                job_id=str(job_id),
                worker_id=worker_id,
            )
            return False
        return True

    async def retry(
        self,
        session: AsyncSession,
        job_id: UUID,
        worker_id: str,
        run_at: datetime,
        error: str,
    ) -> bool:
        """Put a claimed job back in the queue, eligible again at ``run_at``."""
        result = await session.execute(
            update(ScheduledJob)
            .where(
                and_(ScheduledJob.id == job_id, ScheduledJob.locked_by == worker_id)
            )
            .values(
                status=JobStatus.QUEUED.value,
                run_at=run_at,
                locked_at=None,
                locked_by=None,
                heartbeat_at=None,
                last_error=error[:MAX_ERROR_LENGTH],
                error_code="RETRY_SCHEDULED",
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    async def bury(
        self,
        session: AsyncSession,
        job_id: UUID,
        worker_id: str,
        error_code: str,
        error: str,
    ) -> bool:
        """Move a claimed job to the dead letter state."""
        result = await session.execute(
            update(ScheduledJob)
            .where(
                and_(ScheduledJob.id == job_id, ScheduledJob.locked_by == worker_id)
            )
            .values(
                status=JobStatus.DEADLETTER.value,
                locked_at=None,
                locked_by=None,
                heartbeat_at=None,
                error_code=error_code,
                last_error=error[:MAX_ERROR_LENGTH],
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    async def heartbeat(
        self, session: AsyncSession, job_ids: Sequence[UUID], worker_id: str
    ) -> int:
        """Refresh heartbeats for jobs still held by ``worker_id``."""
        if not job_ids:
            return 0

        result = await session.execute(
            update(ScheduledJob)
            .where(
                and_(
                    ScheduledJob.id.in_(list(job_ids)),
                    ScheduledJob.locked_by == worker_id,
                    ScheduledJob.status == JobStatus.RUNNING.value,
                )
            )
            .values(heartbeat_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount

    async def recover_stale(self, session: AsyncSession, timeout_s: float) -> int:
        """
        Requeue running jobs whose claimer stopped heartbeating.

        This is what turns a crash between claim and acknowledgement into a
        redelivery instead of a lost job. Claims that already used their last
        attempt are dead-lettered with RETRIES_EXHAUSTED instead.

        Returns:
            Number of stale claims released, requeued or dead-lettered
        """
        now = utcnow()
        stale = and_(
            ScheduledJob.status == JobStatus.RUNNING.value,
            ScheduledJob.heartbeat_at < now - timedelta(seconds=timeout_s),
        )
        released = dict(
            locked_at=None, locked_by=None, heartbeat_at=None, updated_at=now
        )

        buried_result = await session.execute(
            update(ScheduledJob)
            .where(
                and_(stale, ScheduledJob.attempts >= self.settings.job_max_attempts)
            )
            .values(
                status=JobStatus.DEADLETTER.value,
                error_code="RETRIES_EXHAUSTED",
                last_error=f"Job timeout after {timeout_s}s on its final attempt",
                **released,
            )
            .execution_options(synchronize_session=False)
        )
        requeued_result = await session.execute(
            update(ScheduledJob)
            .where(stale)
            .values(
                status=JobStatus.QUEUED.value,
                error_code="WORKER_TIMEOUT",
                last_error=f"Job timeout after {timeout_s}s",
                **released,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        buried = buried_result.rowcount
        requeued = requeued_result.rowcount
        if buried:
            logger.error(
                "Stuck jobs moved to deadletter queue",
                stuck_job_count=buried,
                error_code="RETRIES_EXHAUSTED",
                timeout_seconds=timeout_s,
            )
        if requeued:
            logger.warning(
                "Recovered stuck jobs",
                stuck_job_count=requeued,
                timeout_seconds=timeout_s,
            )
        return buried + requeued

    async def count_pending(self, session: AsyncSession, name: str) -> int:
        """Queued (including delayed) plus running jobs for ``name``."""
        result = await session.execute(
            select(func.count(ScheduledJob.id)).where(
                and_(
                    ScheduledJob.name == name,
                    ScheduledJob.status.in_(PENDING_STATUSES),
                )
            )
        )
        return result.scalar() or 0

    async def count_eligible(
        self, session: AsyncSession, name: str, ignore_delay: bool = False
    ) -> int:
        """Queued jobs for ``name`` that could be claimed right now."""
        conditions = [
            ScheduledJob.name == name,
            ScheduledJob.status == JobStatus.QUEUED.value,
        ]
        if not ignore_delay:
            conditions.append(ScheduledJob.run_at <= utcnow())

        result = await session.execute(
            select(func.count(ScheduledJob.id)).where(and_(*conditions))
        )
        return result.scalar() or 0

    async def count_dead(self, session: AsyncSession, name: str) -> int:
        result = await session.execute(
            select(func.count(ScheduledJob.id)).where(
                and_(
                    ScheduledJob.name == name,
                    ScheduledJob.status == JobStatus.DEADLETTER.value,
                )
            )
        )
        return result.scalar() or 0

    async def next_run_at(self, session: AsyncSession, name: str) -> datetime | None:
        """Earliest run_at among queued jobs for ``name``."""
        result = await session.execute(
            select(func.min(ScheduledJob.run_at)).where(
                and_(
                    ScheduledJob.name == name,
                    ScheduledJob.status == JobStatus.QUEUED.value,
                )
            )
        )
        return as_utc(result.scalar())

    async def pending_by_name(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(ScheduledJob.name, func.count(ScheduledJob.id))
            .where(ScheduledJob.status.in_(PENDING_STATUSES))
            .group_by(ScheduledJob.name)
        )
        return dict(result.all())

    async def stats(self, session: AsyncSession) -> QueueStatsResponse:
        """Job counts for dashboards and the CLI."""
        total_result = await session.execute(select(func.count(ScheduledJob.id)))
        total_jobs = total_result.scalar() or 0

        status_result = await session.execute(
            select(ScheduledJob.status, func.count(ScheduledJob.id)).group_by(
                ScheduledJob.status
            )
        )
        by_status = dict(status_result.all())

        dead_result = await session.execute(
            select(ScheduledJob.name, func.count(ScheduledJob.id))
            .where(ScheduledJob.status == JobStatus.DEADLETTER.value)
            .group_by(ScheduledJob.name)
        )

        return QueueStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            pending_by_name=await self.pending_by_name(session),
            dead_by_name=dict(dead_result.all()),
        )

    async def list_dead(
        self, session: AsyncSession, name: str | None = None, limit: int = 100
    ) -> list[ScheduledJob]:
        query = select(ScheduledJob).where(
            ScheduledJob.status == JobStatus.DEADLETTER.value
        )
        if name is not None:
            query = query.where(ScheduledJob.name == name)

        result = await session.execute(
            query.order_by(ScheduledJob.updated_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def requeue_dead(self, session: AsyncSession, name: str) -> int:
        """Give dead-lettered jobs of ``name`` a fresh set of attempts."""
        now = utcnow()
        result = await session.execute(
            update(ScheduledJob)
            .where(
                and_(
                    ScheduledJob.name == name,
                    ScheduledJob.status == JobStatus.DEADLETTER.value,
                )
            )
            .values(
                status=JobStatus.QUEUED.value,
                attempts=0,
                run_at=now,
                error_code=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        requeued = result.rowcount
        if requeued:
            logger.info("Dead jobs requeued", migration=name, job_count=requeued)
        return requeued

    async def purge_dead(
        self, session: AsyncSession, older_than_days: int | None = None
    ) -> int:
        """Delete dead-lettered jobs past the retention window."""
        retention_days = (
            self.settings.job_cleanup_after_days
            if older_than_days is None
            else older_than_days
        )
        cutoff = utcnow() - timedelta(days=retention_days)

        result = await session.execute(
            delete(ScheduledJob)
            .where(
                and_(
                    ScheduledJob.status == JobStatus.DEADLETTER.value,
                    ScheduledJob.updated_at <= cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        deleted_count = result.rowcount
        if deleted_count > 0:
            logger.info(
                "Purged dead jobs",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )
        return deleted_count
