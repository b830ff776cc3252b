"""Engine construction for one-off CLI invocations"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer

from backfill.config.logging import setup_logging
from backfill.config.settings import Settings
from backfill.infra.database import Database
from backfill.v1.migrations.engine import MigrationEngine

T = TypeVar("T")


def load_settings(database_url: str | None = None) -> Settings:
    """Settings from the environment, with an optional database override"""
    if database_url:
        return Settings(database_url=database_url)
    return Settings()


def run_with_engine(
    ctx: typer.Context, action: Callable[[MigrationEngine], Awaitable[T]]
) -> T:
    """Build an engine, run ``action`` to completion and dispose the engine"""
    settings: Settings = ctx.obj["settings"]

    async def _run() -> T:
        database = Database(settings)
        try:
            return await action(MigrationEngine(settings, database))
        finally:
            await database.close()

    return asyncio.run(_run())


def configure(ctx: typer.Context, database_url: str | None) -> None:
    """Store settings on the context and set up logging"""
    settings = load_settings(database_url)
    setup_logging(settings)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
