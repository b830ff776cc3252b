import json
from datetime import timedelta

import pytest

from backfill.v1.core.exceptions import (
    InvalidJobArgumentsError,
    UnresolvableMigrationError,
)
from backfill.v1.migrations.models import JobStatus, ScheduledJob, utcnow
from backfill.v1.migrations.schemas import JobOutcome, JobPayload


async def schedule_and_claim(engine, database, name, arguments):
    """Enqueue one job bypassing name checks and claim it for worker-1."""
    async with database.SessionLocal() as session:
        (job_id,) = await engine.queue.enqueue(
            session, [JobPayload(name=name, arguments=arguments)]
        )
    async with database.SessionLocal() as session:
        (claimed,) = await engine.queue.claim(session, "worker-1")
    return job_id, claimed


async def get_job(database, job_id) -> ScheduledJob | None:
    async with database.SessionLocal() as session:
        return await session.get(ScheduledJob, job_id)


class TestOutcomes:
    async def test_success_acknowledges_job(self, engine, database, registry):
        job_id, claimed = await schedule_and_claim(engine, database, "Recording", [7])

        outcome = await engine.runtime.execute(claimed, "worker-1")

        assert outcome is JobOutcome.SUCCEEDED
        assert registry.get("Recording").calls == [(7,)]
        assert await get_job(database, job_id) is None

    async def test_vanished_record_counts_as_success(self, engine, database):
        job_id, claimed = await schedule_and_claim(engine, database, "Vanishing", [1])

        outcome = await engine.runtime.execute(claimed, "worker-1")

        assert outcome is JobOutcome.SUCCEEDED
        assert await get_job(database, job_id) is None

    @pytest.mark.parametrize(
        "name,arguments,error_code",
        [
            ("RemovedInLastRelease", [1], "UNRESOLVABLE_MIGRATION"),
            ("Recording", [1, 2], "INVALID_ARGUMENTS"),
            ("Recording", [], "INVALID_ARGUMENTS"),
            ("LeakyParser", [1], "MALFORMED_DATA"),
        ],
    )
    async def test_terminal_errors_dead_letter_after_one_attempt(
        self, engine, database, name, arguments, error_code
    ):
        """Test that errors a retry cannot fix are never retried."""
        job_id, claimed = await schedule_and_claim(engine, database, name, arguments)

        outcome = await engine.runtime.execute(claimed, "worker-1")

        job = await get_job(database, job_id)
        assert outcome is JobOutcome.DEAD
        assert job.status == JobStatus.DEADLETTER.value
        assert job.error_code == error_code
        assert job.attempts == 1

    async def test_transient_error_is_retried(self, engine, database, registry):
        job_id, claimed = await schedule_and_claim(engine, database, "Flaky", [1])

        outcome = await engine.runtime.execute(claimed, "worker-1")

        job = await get_job(database, job_id)
        assert outcome is JobOutcome.RETRY
        assert job.status == JobStatus.QUEUED.value
        assert job.error_code == "RETRY_SCHEDULED"
        assert "database restarting" in job.last_error

        async with database.SessionLocal() as session:
            (again,) = await engine.queue.claim(session, "worker-1")
        assert await engine.runtime.execute(again, "worker-1") is JobOutcome.SUCCEEDED
        assert registry.get("Flaky").calls == 2

    async def test_retries_exhausted(self, engine, database, registry, settings):
        """Test that a job is dead-lettered after job_max_attempts attempts."""
        job_id, claimed = await schedule_and_claim(engine, database, "Broken", [1])

        outcomes = [await engine.runtime.execute(claimed, "worker-1")]
        while outcomes[-1] is JobOutcome.RETRY:
            async with database.SessionLocal() as session:
                (claimed,) = await engine.queue.claim(session, "worker-1")
            outcomes.append(await engine.runtime.execute(claimed, "worker-1"))

        job = await get_job(database, job_id)
        assert outcomes == [JobOutcome.RETRY] * (settings.job_max_attempts - 1) + [
            JobOutcome.DEAD
        ]
        assert registry.get("Broken").calls == settings.job_max_attempts
        assert job.error_code == "RETRIES_EXHAUSTED"
        assert "RuntimeError: boom" in job.last_error


class TestBackoff:
    async def test_retry_time_grows_exponentially(self, engine, settings):
        settings.job_backoff_base_ms = 1000
        settings.job_max_backoff_s = 600

        now = utcnow()
        first = engine.runtime.calculate_retry_time(1) - now
        fourth = engine.runtime.calculate_retry_time(4) - now

        assert timedelta(seconds=0.75) <= first <= timedelta(seconds=1.3)
        assert timedelta(seconds=6) <= fourth <= timedelta(seconds=10.1)

    async def test_retry_time_is_capped(self, engine, settings):
        settings.job_backoff_base_ms = 1000
        settings.job_max_backoff_s = 5

        delay = engine.runtime.calculate_retry_time(20) - utcnow()

        assert delay <= timedelta(seconds=6.3)


class TestRunInline:
    async def test_runs_unit_without_queue(self, engine, insert_webhooks, webhook_urls):
        await insert_webhooks({"id": 42, "properties": json.dumps({"url": "http://x"})})

        await engine.runtime.run_inline("ExtractUrl", [42])

        assert (await webhook_urls())[42] == "http://x"
        assert not await engine.tracker.has_pending("ExtractUrl")

    async def test_errors_propagate(self, engine):
        with pytest.raises(UnresolvableMigrationError):
            await engine.runtime.run_inline("Nope", [1])

        with pytest.raises(InvalidJobArgumentsError):
            await engine.runtime.run_inline("ExtractUrl", [1, 2, 3])

        with pytest.raises(RuntimeError, match="boom"):
            await engine.runtime.run_inline("Broken", [1])
