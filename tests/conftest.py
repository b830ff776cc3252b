import asyncio
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import Column, Integer, MetaData, Table, Text, insert, select

from backfill.config.settings import Settings, get_settings
from backfill.infra.database import Database, get_session
from backfill.main import create_app
from backfill.v1.core.exceptions import (
    MalformedDataError,
    StaleRecordError,
    TransientInfrastructureError,
)
from backfill.v1.core.registries import MigrationRegistry
from backfill.v1.migrations.engine import MigrationEngine, get_engine
from backfill.v1.migrations.registry_init import register_migrations

# Application table the webhook units migrate, kept off the queue metadata
app_metadata = MetaData()
webhooks_table = Table(
    "webhooks",
    app_metadata,
    Column("id", Integer, primary_key=True),
    Column("properties", Text),
    Column("url", Text, nullable=True),
)


class RecordingUnit:
    """Remembers every argument tuple it was performed with."""

    def __init__(self, delay_s: float = 0.0):
        self.calls: list[tuple[Any, ...]] = []
        self.delay_s = delay_s

    async def perform(self, storage, record_id) -> None:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self.calls.append((record_id,))


class FlakyUnit:
    """Raises a transient error for the first ``failures`` calls."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def perform(self, storage, record_id) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientInfrastructureError("database restarting")


class BrokenUnit:
    """Fails on every call with a non-engine error."""

    def __init__(self):
        self.calls = 0

    async def perform(self, storage, record_id) -> None:
        self.calls += 1
        raise RuntimeError("boom")


class LeakyParserUnit:
    """Lets a MalformedDataError escape instead of handling it."""

    async def perform(self, storage, record_id) -> None:
        raise MalformedDataError("Properties are not valid JSON")


class VanishingUnit:
    """Reports that its record was deleted."""

    async def perform(self, storage, record_id) -> None:
        raise StaleRecordError("webhooks", record_id)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a fresh SQLite file with fast timings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'backfill.db'}",
        environment="test",
        job_max_attempts=3,
        job_backoff_base_ms=0,
        job_poll_interval_ms=20,
        drain_poll_interval_ms=20,
        job_heartbeat_interval_s=1,
        job_shutdown_timeout_s=2,
    )


async def create_schema(database: Database) -> None:
    await database.init_models()
    async with database.engine.begin() as conn:
        await conn.run_sync(app_metadata.create_all)


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Database with the queue and webhooks tables created."""
    database = Database(settings)
    await create_schema(database)
    yield database
    await database.close()


@pytest.fixture
def database_url(settings) -> str:
    """Initialized database URL for tests that run outside an event loop."""

    async def _setup():
        database = Database(settings)
        await create_schema(database)
        await database.close()

    asyncio.run(_setup())
    return settings.database_url


@pytest.fixture
def registry() -> MigrationRegistry:
    """Fresh registry with the real units plus test doubles."""
    registry = MigrationRegistry()
    register_migrations(registry)
    registry.register("Recording", RecordingUnit())
    registry.register("Slow", RecordingUnit(delay_s=0.05))
    registry.register("Sluggish", RecordingUnit(delay_s=2.5))
    registry.register("Flaky", FlakyUnit(failures=1))
    registry.register("Broken", BrokenUnit())
    registry.register("LeakyParser", LeakyParserUnit())
    registry.register("Vanishing", VanishingUnit())
    return registry


@pytest.fixture
def engine(settings, database, registry) -> MigrationEngine:
    return MigrationEngine(settings, database, registry)


@pytest.fixture
def insert_webhooks(database):
    """Insert rows into the webhooks table."""

    async def _insert(*rows: dict[str, Any]) -> None:
        async with database.engine.begin() as conn:
            await conn.execute(insert(webhooks_table), [dict(row) for row in rows])

    return _insert


@pytest.fixture
def webhook_urls(database):
    """Read back the url column keyed by webhook id."""

    async def _urls() -> dict[int, str | None]:
        async with database.engine.connect() as conn:
            result = await conn.execute(
                select(webhooks_table.c.id, webhooks_table.c.url)
            )
            return dict(result.all())

    return _urls


@pytest.fixture
def app(settings, database, engine):
    """Create a test FastAPI application bound to the test engine."""
    app = create_app()

    async def _get_test_session():
        async with database.SessionLocal() as session:
            yield session

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_session] = _get_test_session

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
