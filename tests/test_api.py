import json
from uuid import UUID

from httpx import AsyncClient

from backfill.v1.migrations.models import ScheduledJob


class TestScheduleEndpoint:
    async def test_schedule_jobs(self, async_client: AsyncClient, engine):
        """Test scheduling several jobs in one request."""
        response = await async_client.post(
            "/v1/migrations/jobs",
            json={
                "jobs": [
                    {"name": "ExtractUrl", "arguments": [1]},
                    {"name": "ExtractUrl", "arguments": [2]},
                ]
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert len(data["data"]["job_ids"]) == 2
        assert data["data"]["run_at"] is None
        assert await engine.tracker.count_pending("ExtractUrl") == 2

    async def test_schedule_delayed(self, async_client: AsyncClient, engine):
        response = await async_client.post(
            "/v1/migrations/jobs",
            json={"jobs": [{"name": "Recording", "arguments": [1]}], "delay_s": 60},
        )

        assert response.status_code == 200
        assert response.json()["data"]["run_at"] is not None
        assert await engine.tracker.count_pending("Recording") == 1
        assert await engine.tracker.count_eligible("Recording") == 0

    async def test_priority_is_kept(self, async_client: AsyncClient, database):
        """Test that the priority sent with each job is stored."""
        response = await async_client.post(
            "/v1/migrations/jobs",
            json={
                "jobs": [
                    {"name": "Recording", "arguments": [1], "priority": 1},
                    {"name": "Recording", "arguments": [2]},
                ]
            },
        )

        assert response.status_code == 200
        job_ids = response.json()["data"]["job_ids"]
        async with database.SessionLocal() as session:
            jobs = [
                await session.get(ScheduledJob, UUID(job_id)) for job_id in job_ids
            ]
        assert [job.priority for job in jobs] == [1, 5]

    async def test_unknown_migration_is_404(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/migrations/jobs",
            json={"jobs": [{"name": "Nope", "arguments": [1]}]},
        )

        assert response.status_code == 404
        data = response.json()
        assert data["ok"] is False
        assert data["error"]["details"] == {"migration": "Nope"}

    async def test_non_primitive_arguments_rejected(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/migrations/jobs",
            json={"jobs": [{"name": "ExtractUrl", "arguments": [{"id": 1}]}]},
        )

        assert response.status_code == 422

    async def test_empty_job_list_rejected(self, async_client: AsyncClient):
        response = await async_client.post("/v1/migrations/jobs", json={"jobs": []})

        assert response.status_code == 422


async def test_pending_endpoint(async_client: AsyncClient, engine):
    await engine.scheduler.schedule_one("Recording", [1])
    await engine.scheduler.schedule_in(60, "Recording", [2])

    response = await async_client.get("/v1/migrations/Recording/pending")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == "Recording"
    assert data["pending"] == 2
    assert data["eligible"] == 1
    assert data["dead"] == 0
    assert data["has_pending"] is True
    assert data["next_run_at"] is not None


async def test_drain_endpoint(
    async_client: AsyncClient, engine, insert_webhooks, webhook_urls
):
    """Test that the drain endpoint blocks until the migration is done."""
    await insert_webhooks({"id": 42, "properties": json.dumps({"url": "http://x"})})
    await engine.scheduler.schedule_bulk([("ExtractUrl", [42]), ("ExtractUrl", [43])])

    response = await async_client.post("/v1/migrations/ExtractUrl/drain")

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "ExtractUrl drained"
    assert data["data"]["executed"] == 2
    assert (await webhook_urls())[42] == "http://x"
    assert not await engine.tracker.has_pending("ExtractUrl")


async def test_drain_endpoint_timeout_is_409(async_client: AsyncClient, engine):
    await engine.scheduler.schedule_in(3600, "Recording", [1])

    response = await async_client.post(
        "/v1/migrations/Recording/drain", json={"timeout_s": 0.1}
    )

    assert response.status_code == 409
    assert response.json()["error"]["details"]["pending"] == 1


async def test_drain_unknown_migration_is_404(async_client: AsyncClient):
    response = await async_client.post("/v1/migrations/Nope/drain")

    assert response.status_code == 404


async def test_registered_and_stats(async_client: AsyncClient, engine):
    await engine.scheduler.schedule_one("Recording", [1])

    registered = await async_client.get("/v1/migrations/registered")
    stats = await async_client.get("/v1/migrations/stats")

    assert "ExtractUrl" in registered.json()["data"]["migrations"]
    assert stats.json()["data"]["total_jobs"] == 1
    assert stats.json()["data"]["pending_by_name"] == {"Recording": 1}


async def test_dead_jobs_and_requeue(async_client: AsyncClient, engine):
    """Test inspecting and requeueing dead-lettered jobs."""
    await engine.scheduler.schedule_one("LeakyParser", [1])
    await engine.drain_controller().drain("LeakyParser")

    dead = await async_client.get("/v1/migrations/LeakyParser/dead")
    jobs = dead.json()["data"]["jobs"]
    assert len(jobs) == 1
    assert jobs[0]["error_code"] == "MALFORMED_DATA"
    assert jobs[0]["arguments"] == [1]

    requeued = await async_client.post("/v1/migrations/LeakyParser/dead/requeue")
    assert requeued.json()["data"] == {"name": "LeakyParser", "requeued": 1}
    assert await engine.tracker.count_pending("LeakyParser") == 1
