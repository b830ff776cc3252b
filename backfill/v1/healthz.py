from datetime import UTC, datetime, timedelta

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from backfill.config.settings import Settings, SettingsDep
from backfill.infra.database import SessionDep
from backfill.v1.core.exceptions import create_success_response
from backfill.v1.migrations.models import (
    PENDING_STATUSES,
    JobStatus,
    ScheduledJob,
    as_utc,
)

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    active_workers: int
    last_heartbeat_age_seconds: int | None = None
    stuck_jobs_count: int = 0
    queue_depth: int = 0
    dead_jobs_count: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = SessionDep
):
    """Health check endpoint with database and migration queue status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    # Check database health
    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    worker_health = None
    if db_health.connected:
        worker_health = await _check_worker_health(session, settings)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        # Simple query to test database connectivity
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Check migration worker health and queue status."""
    now = datetime.now(UTC)

    # Count active claimers based on recent heartbeats
    heartbeat_cutoff = now - timedelta(seconds=settings.job_visibility_timeout_s)

    active_workers_result = await session.execute(
        select(func.count(func.distinct(ScheduledJob.locked_by))).where(
            ScheduledJob.status == JobStatus.RUNNING.value,
            ScheduledJob.heartbeat_at > heartbeat_cutoff,
        )
    )
    active_workers = active_workers_result.scalar() or 0

    # Find most recent heartbeat
    last_heartbeat_result = await session.execute(
        select(func.max(ScheduledJob.heartbeat_at)).where(
            ScheduledJob.status == JobStatus.RUNNING.value,
            ScheduledJob.heartbeat_at.is_not(None),
        )
    )
    last_heartbeat = as_utc(last_heartbeat_result.scalar())

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    # Running jobs whose claimer stopped heartbeating
    stuck_jobs_result = await session.execute(
        select(func.count(ScheduledJob.id)).where(
            ScheduledJob.status == JobStatus.RUNNING.value,
            ScheduledJob.heartbeat_at < heartbeat_cutoff,
        )
    )
    stuck_jobs_count = stuck_jobs_result.scalar() or 0

    queue_depth_result = await session.execute(
        select(func.count(ScheduledJob.id)).where(
            ScheduledJob.status.in_(PENDING_STATUSES)
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    dead_result = await session.execute(
        select(func.count(ScheduledJob.id)).where(
            ScheduledJob.status == JobStatus.DEADLETTER.value
        )
    )

    return WorkerHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        stuck_jobs_count=stuck_jobs_count,
        queue_depth=queue_depth,
        dead_jobs_count=dead_result.scalar() or 0,
    )
