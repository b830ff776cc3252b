"""
Wiring of the background migration components around one database.
"""

from fastapi import Depends

from backfill.config.settings import Settings, get_settings
from backfill.infra.database import Database, get_database
from backfill.v1.core.registries import MigrationRegistry, migration_registry
from backfill.v1.migrations.drain import DrainController
from backfill.v1.migrations.queue import JobQueue
from backfill.v1.migrations.runtime import MigrationRuntime
from backfill.v1.migrations.scheduler import MigrationScheduler
from backfill.v1.migrations.tracker import CompletionTracker
from backfill.v1.migrations.worker import MigrationWorker


class MigrationEngine:
    """Queue, scheduler, runtime, tracker and drain sharing one session factory."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        registry: MigrationRegistry | None = None,
    ):
        # Importing registry_init populates the global registry
        if registry is None:
            from backfill.v1.migrations import registry_init  # noqa: F401

            registry = migration_registry

        self.settings = settings
        self.database = database
        self.registry = registry
        session_factory = database.SessionLocal

        self.queue = JobQueue(settings)
        self.tracker = CompletionTracker(session_factory, self.queue)
        self.runtime = MigrationRuntime(settings, registry, session_factory, self.queue)
        self.scheduler = MigrationScheduler(
            settings, registry, session_factory, self.queue
        )

    def drain_controller(self, drainer_id: str | None = None) -> DrainController:
        """New drainer with its own claim identity."""
        return DrainController(
            self.settings,
            self.database.SessionLocal,
            self.queue,
            self.runtime,
            self.tracker,
            drainer_id=drainer_id,
        )

    def worker(self) -> MigrationWorker:
        return MigrationWorker(
            self.settings, self.database.SessionLocal, self.queue, self.runtime
        )


# Engine instance management
_engine_instance: MigrationEngine | None = None


def get_engine(
    settings: Settings = Depends(get_settings),
    database: Database = Depends(get_database),
) -> MigrationEngine:
    """Get or create the global engine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = MigrationEngine(settings, database)
    return _engine_instance


# Convenience type alias for dependency injection
EngineDep = Depends(get_engine)


async def shutdown_engine() -> None:
    """Finish in-flight post-commit enqueues of the global engine."""
    if _engine_instance is not None:
        await _engine_instance.scheduler.drain_after_commit_tasks()
