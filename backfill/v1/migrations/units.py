"""
Background migration units.

Each unit is stateless, idempotent and scoped to the rows named by its
arguments. Units only see the columns declared here, never application models.
"""

import json
from collections.abc import Mapping
from typing import Any

from sqlalchemy import column, or_, table

from backfill.config.logging import get_logger
from backfill.v1.core.exceptions import MalformedDataError
from backfill.v1.migrations.storage import MigrationStorage

logger = get_logger(__name__)

webhooks = table(
    "webhooks",
    column("id"),
    column("properties"),
    column("url"),
)


def extract_url(properties: Any) -> str | None:
    """
    Pull the ``url`` string out of a webhook's serialized properties.

    Returns None when the document has no url. Raises MalformedDataError when
    the document is not a JSON object or the url is not a string.
    """
    if properties is None:
        return None

    document = properties
    if isinstance(properties, (str, bytes)):
        try:
            document = json.loads(properties)
        except ValueError as e:
            raise MalformedDataError(
                "Properties are not valid JSON", {"error": str(e)}
            ) from e

    if not isinstance(document, Mapping):
        raise MalformedDataError(
            "Properties are not a JSON object",
            {"type": type(document).__name__},
        )

    url = document.get("url")
    if url is not None and not isinstance(url, str):
        raise MalformedDataError(
            "Property url is not a string", {"type": type(url).__name__}
        )
    return url


class ExtractUrl:
    """
    Copy ``properties["url"]`` of one webhook into its ``url`` column.

    Arguments: ``(webhook_id,)``
    """

    async def perform(self, storage: MigrationStorage, webhook_id: int) -> None:
        row = await storage.fetch_row(webhooks, webhook_id)
        if row is None:
            logger.info("Webhook deleted before migration ran", webhook_id=webhook_id)
            return

        await _migrate_row(storage, row)


class ExtractUrlRange:
    """
    Batch form of ExtractUrl for ``start_id <= id <= end_id``.

    Arguments: ``(start_id, end_id)``
    """

    async def perform(
        self, storage: MigrationStorage, start_id: int, end_id: int
    ) -> None:
        rows = await storage.fetch_rows(
            webhooks, start_id, end_id, where=webhooks.c.url.is_(None)
        )
        migrated = 0
        for row in rows:
            migrated += await _migrate_row(storage, row)

        logger.info(
            "Webhook range migrated",
            start_id=start_id,
            end_id=end_id,
            scanned=len(rows),
            migrated=migrated,
        )


async def _migrate_row(storage: MigrationStorage, row: Mapping[str, Any]) -> int:
    try:
        url = extract_url(row["properties"])
    except MalformedDataError as e:
        # Rerunning cannot fix bad source data, leave the row as it is
        logger.warning(
            "Skipping webhook with malformed properties",
            webhook_id=row["id"],
            reason=e.message,
        )
        return 0

    if url is None or row["url"] == url:
        return 0

    return await storage.update_fields(
        webhooks,
        row["id"],
        {"url": url},
        where=or_(webhooks.c.url.is_(None), webhooks.c.url != url),
    )
