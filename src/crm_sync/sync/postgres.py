"""Primary store connector -- the Logos CRM tables via async SQLAlchemy.

Upserts use INSERT ... ON CONFLICT (id) DO UPDATE for the engine's dialect
(PostgreSQL in production, SQLite for local runs and tests). A batch is
written in one statement; if the statement is rejected for row data
(constraint or type violations) the batch is replayed row by row in separate
transactions so only the offending ids are reported as failed.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import Table, select
from sqlalchemy.exc import CompileError, DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.crm_sync.sync.connector import Row, StoreConnector
from src.crm_sync.sync.errors import ConnectorError
from src.crm_sync.sync.models import (
    ActivityModel,
    CaseModel,
    ClientModel,
    ProjectModel,
    TaskModel,
)
from src.crm_sync.sync.schemas import EntityType, UpsertOutcome

logger = structlog.get_logger(__name__)

PRIMARY_MODELS = {
    EntityType.CONTACT: ClientModel,
    EntityType.PROJECT: ProjectModel,
    EntityType.CASE: CaseModel,
    EntityType.TASK: TaskModel,
    EntityType.ACTIVITY: ActivityModel,
}

# Statement errors caused by the rows themselves rather than the connection
_ROW_DATA_ERRORS = (IntegrityError, DataError, CompileError)

# Keep IN (...) lists well under driver parameter limits
_LOOKUP_CHUNK = 500


class PostgresConnector(StoreConnector):
    """Connector for the primary CRM store.

    Args:
        engine: Async SQLAlchemy engine bound to the primary database.
        name: Store name used in logs and run locking.
    """

    def __init__(self, engine: AsyncEngine, name: str = "logos") -> None:
        self._engine = engine
        self.name = name

    @staticmethod
    def _table(entity_type: EntityType) -> Table:
        return PRIMARY_MODELS[entity_type].__table__

    def _insert(self, table: Table):
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise ConnectorError(self.name, f"Upsert not supported for dialect {dialect!r}")
        return insert(table)

    def _upsert_statement(self, table: Table, rows: list[Row], conflict_key: str):
        stmt = self._insert(table).values(rows)
        columns = rows[0].keys()
        update_set = {
            name: stmt.excluded[name]
            for name in columns
            if name != conflict_key and name in table.c
        }
        if not update_set:
            return stmt.on_conflict_do_nothing(index_elements=[conflict_key])
        return stmt.on_conflict_do_update(index_elements=[conflict_key], set_=update_set)

    async def fetch_all(self, entity_type: EntityType) -> list[Row]:
        """Fetch every row of a primary table."""
        table = self._table(entity_type)
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(select(table))
                rows = [dict(row) for row in result.mappings().all()]
        except (SQLAlchemyError, OSError) as exc:
            raise ConnectorError(self.name, f"fetch {table.name} failed: {exc}") from exc

        logger.info("postgres_store.fetched", table=table.name, rows=len(rows))
        return rows

    async def exists_batch(self, entity_type: EntityType, ids: list[str]) -> set[str]:
        """Return which ids exist in a primary table."""
        if not ids:
            return set()

        table = self._table(entity_type)
        found: set[str] = set()
        try:
            async with self._engine.connect() as conn:
                for start in range(0, len(ids), _LOOKUP_CHUNK):
                    chunk = ids[start:start + _LOOKUP_CHUNK]
                    result = await conn.execute(select(table.c.id).where(table.c.id.in_(chunk)))
                    found.update(str(value) for value in result.scalars().all())
        except (SQLAlchemyError, OSError) as exc:
            raise ConnectorError(self.name, f"lookup in {table.name} failed: {exc}") from exc
        return found

    async def upsert_batch(
        self,
        entity_type: EntityType,
        rows: list[Row],
        conflict_key: str = "id",
    ) -> UpsertOutcome:
        """Upsert rows keyed on conflict_key, isolating per-row failures.

        Raises:
            ConnectorError: The store could not be reached or the statement
                failed for reasons unrelated to row data.
        """
        if not rows:
            return UpsertOutcome()

        table = self._table(entity_type)
        try:
            async with self._engine.begin() as conn:
                await conn.execute(self._upsert_statement(table, rows, conflict_key))
        except _ROW_DATA_ERRORS as exc:
            logger.warning(
                "postgres_store.batch_rejected",
                table=table.name,
                rows=len(rows),
                error=_describe(exc),
            )
            return await self._upsert_rows(table, rows, conflict_key)
        except (SQLAlchemyError, OSError) as exc:
            raise ConnectorError(self.name, f"upsert into {table.name} failed: {exc}") from exc

        logger.info("postgres_store.upserted", table=table.name, rows=len(rows))
        return UpsertOutcome(succeeded_ids=[str(row[conflict_key]) for row in rows])

    async def _upsert_rows(self, table: Table, rows: list[Row], conflict_key: str) -> UpsertOutcome:
        """Replay a rejected batch one row per transaction."""
        outcome = UpsertOutcome()
        for row in rows:
            row_id = str(row.get(conflict_key))
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(self._upsert_statement(table, [row], conflict_key))
            except (SQLAlchemyError, OSError) as exc:
                outcome.failures[row_id] = _describe(exc)
                logger.warning(
                    "postgres_store.row_rejected",
                    table=table.name,
                    entity_id=row_id,
                    error=outcome.failures[row_id],
                )
            else:
                outcome.succeeded_ids.append(row_id)
        return outcome


def _describe(exc: Any) -> str:
    """Driver message without SQLAlchemy's statement/parameter dump."""
    orig = getattr(exc, "orig", None)
    if orig is not None:
        return str(orig)
    lines = str(exc).splitlines()
    return lines[0] if lines else type(exc).__name__
