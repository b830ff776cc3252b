"""
Migration registry initialization.

Registers every migration unit with the global migration registry.
"""

import logging

from backfill.v1.core.registries import MigrationRegistry, migration_registry
from backfill.v1.migrations.units import ExtractUrl, ExtractUrlRange

logger = logging.getLogger(__name__)


def register_migrations(registry: MigrationRegistry = migration_registry) -> None:
    """Register all migration units with the migration registry."""

    logger.info("Registering migration units")

    # Webhook url extraction
    registry.register("ExtractUrl", ExtractUrl())
    registry.register("ExtractUrlRange", ExtractUrlRange())

    logger.info(
        "Migration units registered", extra={"registered_units": registry.list()}
    )


# Auto-register units when module is imported
register_migrations()
