"""
Narrow storage interface handed to migration units.

Units describe the columns they touch with lightweight ``table()`` /
``column()`` constructs and go through this class for every read and write.
They never import application models, so a deploy that changes model logic
cannot change what an already-queued migration does.
"""

from collections.abc import AsyncIterator, Mapping
from typing import Any

from sqlalchemy import ColumnElement, and_, func, select, update
from sqlalchemy.engine import Result, RowMapping
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import TableClause

from backfill.v1.core.exceptions import TransientInfrastructureError


class MigrationStorage:
    """Row-level reads and field-level conditional writes by identifier."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def fetch_row(
        self, table: TableClause, record_id: Any
    ) -> RowMapping | None:
        """Fetch one row by id, or None when it no longer exists."""
        result = await self._execute(select(table).where(table.c.id == record_id))
        return result.mappings().first()

    async def fetch_rows(
        self,
        table: TableClause,
        start_id: Any,
        end_id: Any,
        where: ColumnElement[bool] | None = None,
    ) -> list[RowMapping]:
        """Fetch rows with ``start_id <= id <= end_id`` ordered by id."""
        conditions = [table.c.id >= start_id, table.c.id <= end_id]
        if where is not None:
            conditions.append(where)

        result = await self._execute(
            select(table).where(and_(*conditions)).order_by(table.c.id)
        )
        return list(result.mappings().all())

    async def update_fields(
        self,
        table: TableClause,
        record_id: Any,
        values: Mapping[str, Any],
        where: ColumnElement[bool] | None = None,
    ) -> int:
        """
        Update only ``values`` on one row, optionally guarded by ``where``.

        Returns the number of rows changed, 0 when the row is gone or the
        guard did not match.
        """
        conditions = [table.c.id == record_id]
        if where is not None:
            conditions.append(where)

        result = await self._execute(
            update(table).where(and_(*conditions)).values(**values)
        )
        return result.rowcount

    async def id_range(self, table: TableClause) -> tuple[Any, Any]:
        result = await self._execute(select(func.min(table.c.id), func.max(table.c.id)))
        low, high = result.one()
        return low, high

    async def id_batches(
        self, table: TableClause, batch_size: int
    ) -> AsyncIterator[tuple[Any, Any]]:
        """Yield ``(first_id, last_id)`` for consecutive batches of existing ids."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        last_id = None
        while True:
            query = select(table.c.id).order_by(table.c.id).limit(batch_size)
            if last_id is not None:
                query = query.where(table.c.id > last_id)

            ids = (await self._execute(query)).scalars().all()
            if not ids:
                return

            yield ids[0], ids[-1]
            last_id = ids[-1]

    async def _execute(self, statement) -> Result:
        try:
            return await self._session.execute(statement)
        except (OperationalError, InterfaceError) as e:
            raise TransientInfrastructureError(
                "Storage temporarily unavailable", {"error": str(e.orig or e)}
            ) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientInfrastructureError(
                    "Storage connection lost", {"error": str(e.orig or e)}
                ) from e
            raise
        except TimeoutError as e:
            raise TransientInfrastructureError(
                "Storage timed out", {"error": str(e)}
            ) from e
