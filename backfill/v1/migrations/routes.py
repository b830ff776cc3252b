"""
Admin API for background migrations.

Operators schedule ad hoc jobs, inspect pending work and force a blocking
drain before cleaning up a migration's source data.
"""

from typing import Any

from fastapi import APIRouter, Query

from backfill.config.logging import get_logger
from backfill.v1.core.exceptions import NotFoundError, create_success_response
from backfill.v1.migrations.engine import EngineDep, MigrationEngine
from backfill.v1.migrations.models import utcnow
from backfill.v1.migrations.scheduler import to_timedelta
from backfill.v1.migrations.schemas import (
    DeadJobResponse,
    DrainRequest,
    PendingResponse,
    ScheduleRequest,
    ScheduleResponse,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/migrations", tags=["migrations"])


@router.post("/jobs", response_model=dict)
async def schedule_jobs(
    request: ScheduleRequest, engine: MigrationEngine = EngineDep
) -> dict[str, Any]:
    """Enqueue one or many migration jobs, optionally delayed."""
    scheduler = engine.scheduler
    jobs = [(job.name, job.arguments, job.priority) for job in request.jobs]

    if request.delay_s:
        run_at = utcnow() + to_timedelta(request.delay_s)
        job_ids = await scheduler.schedule_bulk_delayed(request.delay_s, jobs)
    else:
        run_at = None
        job_ids = await scheduler.schedule_bulk(jobs)

    logger.info(
        "Jobs scheduled via API",
        job_count=len(job_ids),
        delay_s=request.delay_s,
    )

    response = ScheduleResponse(job_ids=job_ids, run_at=run_at)
    return create_success_response(data=response.model_dump(mode="json"))


@router.get("/registered", response_model=dict)
async def list_registered(engine: MigrationEngine = EngineDep) -> dict[str, Any]:
    """List migration names this deployment can execute."""
    return create_success_response(data={"migrations": sorted(engine.registry.list())})


@router.get("/stats", response_model=dict)
async def queue_stats(engine: MigrationEngine = EngineDep) -> dict[str, Any]:
    """Get job counts by status and by migration."""
    async with engine.database.SessionLocal() as session:
        stats = await engine.queue.stats(session)

    return create_success_response(data=stats.model_dump())


@router.get("/{name}/pending", response_model=dict)
async def pending(name: str, engine: MigrationEngine = EngineDep) -> dict[str, Any]:
    """Report outstanding work for one migration."""
    tracker = engine.tracker
    count = await tracker.count_pending(name)
    next_run_at = await tracker.next_run_at(name)

    response = PendingResponse(
        name=name,
        pending=count,
        eligible=await tracker.count_eligible(name),
        dead=await tracker.dead_count(name),
        has_pending=count > 0,
        next_run_at=next_run_at,
    )
    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/{name}/drain", response_model=dict)
async def drain(
    name: str,
    request: DrainRequest | None = None,
    engine: MigrationEngine = EngineDep,
) -> dict[str, Any]:
    """Run every remaining job of a migration and block until none are pending."""
    request = request or DrainRequest()
    _require_registered(engine, name)

    report = await engine.drain_controller().drain(
        name, ignore_delay=request.ignore_delay, timeout=request.timeout_s
    )

    return create_success_response(
        data=report.model_dump(), message=f"{name} drained"
    )


@router.get("/{name}/dead", response_model=dict)
async def dead_jobs(
    name: str,
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    engine: MigrationEngine = EngineDep,
) -> dict[str, Any]:
    """List dead-lettered jobs of a migration, newest first."""
    async with engine.database.SessionLocal() as session:
        jobs = await engine.queue.list_dead(session, name, limit=limit)

    return create_success_response(
        data={
            "jobs": [
                DeadJobResponse.model_validate(job).model_dump(mode="json")
                for job in jobs
            ]
        }
    )


@router.post("/{name}/dead/requeue", response_model=dict)
async def requeue_dead(name: str, engine: MigrationEngine = EngineDep) -> dict[str, Any]:
    """Give dead-lettered jobs of a migration a fresh set of attempts."""
    _require_registered(engine, name)

    async with engine.database.SessionLocal() as session:
        requeued = await engine.queue.requeue_dead(session, name)

    return create_success_response(data={"name": name, "requeued": requeued})


def _require_registered(engine: MigrationEngine, name: str) -> None:
    # Requeued or drained jobs of an unknown name would only die again
    if name not in engine.registry:
        raise NotFoundError(
            f"No migration registered with name: {name}",
            {"migration": name, "registered": sorted(engine.registry.list())},
        )
