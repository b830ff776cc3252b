import asyncio
import json
import time
from datetime import timedelta

import pytest
from sqlalchemy import update

from backfill.v1.core.exceptions import DrainTimeoutError
from backfill.v1.migrations.models import ScheduledJob, utcnow


async def test_drain_scenario_live_and_deleted_records(
    engine, insert_webhooks, webhook_urls
):
    """Test draining a live record next to one deleted before execution."""
    await insert_webhooks({"id": 42, "properties": json.dumps({"url": "http://x"})})
    await engine.scheduler.schedule_bulk([("ExtractUrl", [42]), ("ExtractUrl", [43])])

    report = await engine.drain_controller().drain("ExtractUrl")

    assert (await webhook_urls())[42] == "http://x"
    assert report.executed == 2
    assert report.succeeded == 2
    assert report.dead == 0
    assert not await engine.tracker.has_pending("ExtractUrl")


async def test_duplicate_delivery_is_harmless(engine, insert_webhooks, webhook_urls):
    """Test that executing the same payload twice matches a single execution."""
    await insert_webhooks({"id": 42, "properties": json.dumps({"url": "http://x"})})

    await engine.scheduler.schedule_one("ExtractUrl", [42])
    await engine.drain_controller().drain("ExtractUrl")
    once = await webhook_urls()

    await engine.scheduler.schedule_bulk([("ExtractUrl", [42]), ("ExtractUrl", [42])])
    report = await engine.drain_controller().drain("ExtractUrl")

    assert report.succeeded == 2
    assert await webhook_urls() == once


async def test_bulk_then_drain_executes_every_job(engine, registry):
    """Test that draining a bulk schedule runs each job and empties the queue."""
    await engine.scheduler.schedule_bulk(("Recording", [i]) for i in range(25))

    report = await engine.drain_controller().drain("Recording")

    assert report.executed == 25
    assert sorted(registry.get("Recording").calls) == [(i,) for i in range(25)]
    assert not await engine.tracker.has_pending("Recording")


async def test_drain_only_touches_its_migration(engine, registry):
    await engine.scheduler.schedule_bulk([("Recording", [1]), ("Flaky", [2])])

    await engine.drain_controller().drain("Recording")

    assert registry.get("Flaky").calls == 0
    assert await engine.tracker.count_pending("Flaky") == 1


class TestDelayedJobs:
    async def test_pending_before_eligibility(self, engine):
        """Test that delayed jobs are visible as pending right away."""
        await engine.scheduler.schedule_bulk_delayed(
            0.5, [("Recording", [1]), ("Recording", [2])]
        )

        assert await engine.tracker.has_pending("Recording")
        assert await engine.tracker.count_pending("Recording") == 2
        assert await engine.tracker.count_eligible("Recording") == 0

    async def test_drain_waits_for_delay(self, engine, registry):
        """Test that the default drain does not run jobs before now + delay."""
        scheduled_at = time.monotonic()
        await engine.scheduler.schedule_bulk_delayed(
            0.3, [("Recording", [1]), ("Recording", [2])]
        )

        report = await engine.drain_controller().drain("Recording", timeout=10)

        assert time.monotonic() - scheduled_at >= 0.3
        assert report.executed == 2
        assert len(registry.get("Recording").calls) == 2
        assert not await engine.tracker.has_pending("Recording")

    async def test_ignore_delay_runs_immediately(self, engine, registry):
        """Test that ignore_delay steals jobs scheduled far in the future."""
        await engine.scheduler.schedule_bulk_delayed(
            timedelta(hours=1), [("Recording", [1]), ("Recording", [2])]
        )

        report = await engine.drain_controller().drain(
            "Recording", ignore_delay=True, timeout=5
        )

        assert report.executed == 2
        assert not await engine.tracker.has_pending("Recording")

    async def test_timeout_reports_remaining_jobs(self, engine, registry):
        await engine.scheduler.schedule_in(timedelta(hours=1), "Recording", [1])

        with pytest.raises(DrainTimeoutError) as exc_info:
            await engine.drain_controller().drain("Recording", timeout=0.1)

        assert exc_info.value.pending == 1
        assert registry.get("Recording").calls == []
        assert await engine.tracker.has_pending("Recording")


class TestFailures:
    async def test_retried_job_is_drained(self, engine, registry):
        """Test that a retry scheduled during the drain is picked up again."""
        await engine.scheduler.schedule_one("Flaky", [1])

        report = await engine.drain_controller().drain("Flaky", timeout=5)

        assert report.retried == 1
        assert report.succeeded == 1
        assert registry.get("Flaky").calls == 2
        assert not await engine.tracker.has_pending("Flaky")

    async def test_dead_jobs_end_the_drain(self, engine, settings):
        """Test that dead-lettered jobs no longer count as pending."""
        await engine.scheduler.schedule_one("Broken", [1])

        report = await engine.drain_controller().drain("Broken", timeout=5)

        assert report.retried == settings.job_max_attempts - 1
        assert report.dead == 1
        assert not await engine.tracker.has_pending("Broken")
        assert await engine.tracker.dead_count("Broken") == 1


class TestConcurrency:
    async def test_concurrent_drains_never_share_a_job(self, engine, registry):
        """Test that two drains of the same migration split the work."""
        await engine.scheduler.schedule_bulk(("Slow", [i]) for i in range(12))

        first, second = await asyncio.gather(
            engine.drain_controller("drain-a").drain("Slow", timeout=30),
            engine.drain_controller("drain-b").drain("Slow", timeout=30),
        )

        calls = registry.get("Slow").calls
        assert first.executed + second.executed == 12
        assert len(calls) == 12
        assert sorted(calls) == [(i,) for i in range(12)]
        assert not await engine.tracker.has_pending("Slow")

    async def test_waits_for_job_running_elsewhere(self, engine, database):
        """Test that a job claimed by a live worker keeps the drain waiting."""
        (job_id,) = await engine.scheduler.schedule_bulk([("Recording", [1])])
        async with database.SessionLocal() as session:
            await engine.queue.claim(session, "worker-1")

        drain = asyncio.create_task(engine.drain_controller().drain("Recording"))
        await asyncio.sleep(0.2)
        assert not drain.done()

        async with database.SessionLocal() as session:
            await engine.queue.ack(session, job_id, "worker-1")

        report = await asyncio.wait_for(drain, timeout=5)
        assert report.executed == 0

    async def test_recovers_job_of_crashed_worker(
        self, engine, database, registry, settings
    ):
        """Test that a claim without heartbeats is stolen back and executed."""
        settings.job_visibility_timeout_s = 1
        (job_id,) = await engine.scheduler.schedule_bulk([("Recording", [1])])
        async with database.SessionLocal() as session:
            await engine.queue.claim(session, "crashed-worker")
            await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id)
                .values(heartbeat_at=utcnow() - timedelta(minutes=10))
            )
            await session.commit()

        report = await engine.drain_controller().drain("Recording", timeout=5)

        assert report.executed == 1
        assert registry.get("Recording").calls == [(1,)]

    async def test_long_job_keeps_its_claim(self, engine, registry, settings):
        """Test that a job slower than the visibility timeout runs exactly once."""
        settings.job_visibility_timeout_s = 1
        settings.job_heartbeat_interval_s = 0.2
        await engine.scheduler.schedule_one("Sluggish", [7])

        async def second_drain():
            await asyncio.sleep(0.3)
            return await engine.drain_controller("drain-b").drain(
                "Sluggish", timeout=20
            )

        first, second = await asyncio.gather(
            engine.drain_controller("drain-a").drain("Sluggish", timeout=20),
            second_drain(),
        )

        assert registry.get("Sluggish").calls == [(7,)]
        assert (first.succeeded, second.executed) == (1, 0)
        assert not await engine.tracker.has_pending("Sluggish")

    async def test_lost_claims_still_wait_and_time_out(self, engine, monkeypatch):
        """Test that a drain whose claims keep losing polls until its deadline."""
        await engine.scheduler.schedule_one("Recording", [1])
        attempts = 0

        async def losing_claim(session, worker_id, **kwargs):
            nonlocal attempts
            attempts += 1
            return []

        monkeypatch.setattr(engine.queue, "claim", losing_claim)

        with pytest.raises(DrainTimeoutError):
            await asyncio.wait_for(
                engine.drain_controller().drain("Recording", timeout=0.2), timeout=5
            )

        assert attempts < 50
