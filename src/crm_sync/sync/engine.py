"""Reconciliation engine -- one directional sync run between the two stores.

Orchestrates a run: collections are processed strictly in dependency order
(contacts, then projects and cases, then tasks and activities) so every
reference check sees the rows written earlier in the same run. Within a
collection, rows are mapped, their references resolved against the target
store in one batched lookup, and then written in bounded batches dispatched
concurrently.

Key policies:
- No diffing before writing: idempotency comes from upserting on id
- No retries within a run: re-running is always safe
- Row independence: mapping, row and batch failures are tallied, never raised
- Deadline: in-flight batches finish, nothing new starts, the run is partial
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping, Sequence
from datetime import datetime

import structlog

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.sync.connector import Row, StoreConnector
from src.crm_sync.sync.errors import MappingError, RunTimeoutError
from src.crm_sync.sync.field_mapping import map_row, target_reference_columns
from src.crm_sync.sync.guard import ReferenceGuard
from src.crm_sync.sync.report import ReportBuilder
from src.crm_sync.sync.schemas import (
    DEPENDENCY_STAGES,
    Direction,
    EntityType,
    SyncRunReport,
)

logger = structlog.get_logger(__name__)

CollectionsInput = Mapping[EntityType | str, Sequence[Row]]


def _error_text(exc: BaseException) -> str:
    """Message for the report; bare OS errors often stringify empty."""
    return str(exc) or type(exc).__name__


class ReconciliationEngine:
    """Runs directional syncs between the primary and partner stores.

    The engine holds no state between runs; each run owns its report and its
    reference guard. Use SyncCoordinator to keep runs for the same direction
    from overlapping.

    Args:
        primary: Connector for the primary CRM store.
        partner: Connector for the partner platform store.
        settings: Batch size, concurrency and default deadline. Defaults to get_settings().
    """

    def __init__(
        self,
        primary: StoreConnector,
        partner: StoreConnector,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._primary = primary
        self._partner = partner
        self._batch_size = max(1, settings.SYNC_BATCH_SIZE)
        self._max_concurrency = max(1, settings.SYNC_MAX_CONCURRENCY)
        self._default_deadline = settings.SYNC_RUN_TIMEOUT_SECONDS

    def connectors(self, direction: Direction | str) -> tuple[StoreConnector, StoreConnector]:
        """Return (source, target) connectors for a direction."""
        direction = Direction.parse(direction)
        if direction == Direction.PRIMARY_TO_PARTNER:
            return self._primary, self._partner
        return self._partner, self._primary

    async def run(
        self,
        direction: Direction | str,
        collections: CollectionsInput | None = None,
        deadline: float | None = None,
    ) -> SyncRunReport:
        """Execute one sync run.

        Args:
            direction: PRIMARY_TO_PARTNER pushes the caller's rows to the partner
                store; PARTNER_TO_PRIMARY pulls every collection from the partner
                store into the primary store.
            collections: Push only -- already-loaded source rows per entity type.
                Missing collections are treated as empty.
            deadline: Seconds before no new batches are started. Defaults to
                SYNC_RUN_TIMEOUT_SECONDS; 0 or negative disables the deadline.

        Returns:
            The frozen SyncRunReport.

        Raises:
            ValueError: Unknown direction (before any I/O).
        """
        direction = Direction.parse(direction)
        inputs = self._normalize_inputs(collections)
        source, target = self.connectors(direction)

        deadline_seconds = self._default_deadline if deadline is None else deadline
        expires_at = time.monotonic() + deadline_seconds if deadline_seconds and deadline_seconds > 0 else None

        report = ReportBuilder(direction)

        # Connector and guard events inherit the run context, batch tasks included
        with structlog.contextvars.bound_contextvars(run_id=report.run_id, direction=direction.value):
            logger.info("sync.run_started", source=source.name, target=target.name)
            await self._run_stages(report, source, target, direction, inputs, expires_at, deadline_seconds)

            result = report.build()
            logger.info(
                "sync.run_complete",
                status=result.status.value,
                attempted=result.total_attempted,
                succeeded=result.total_succeeded,
                failed=result.total_failed,
                warnings=result.warning_count,
                partial_reason=result.partial_reason,
            )
        return result

    async def _run_stages(
        self,
        report: ReportBuilder,
        source: StoreConnector,
        target: StoreConnector,
        direction: Direction,
        inputs: dict[EntityType, list[Row]],
        expires_at: float | None,
        deadline_seconds: float,
    ) -> None:
        """Process every collection stage by stage."""
        guard = ReferenceGuard(target)
        synced_at = report.started_at

        for stage in DEPENDENCY_STAGES:
            for entity_type in stage:
                report.open(entity_type)
                if expires_at is not None and time.monotonic() >= expires_at:
                    report.mark_partial(str(RunTimeoutError(deadline_seconds)))
                if report.is_partial:
                    # Deadline passed: supplied rows are reported as skipped
                    pending = len(inputs.get(entity_type, []))
                    report.attempted(entity_type, pending)
                    report.skipped(entity_type, pending)
                    continue

                if direction == Direction.PRIMARY_TO_PARTNER:
                    rows = inputs.get(entity_type, [])
                else:
                    try:
                        rows = await source.fetch_all(entity_type)
                    except Exception as exc:
                        # Unreachable or misbehaving source: later collections still run
                        self._collection_failed(report, entity_type, exc)
                        continue

                await self._sync_collection(
                    report,
                    guard,
                    target,
                    direction,
                    entity_type,
                    rows,
                    synced_at,
                    expires_at,
                    deadline_seconds,
                )

    @staticmethod
    def _normalize_inputs(collections: CollectionsInput | None) -> dict[EntityType, list[Row]]:
        if not collections:
            return {}
        return {EntityType(key): list(rows or []) for key, rows in collections.items()}

    @staticmethod
    def _collection_failed(report: ReportBuilder, entity_type: EntityType, exc: Exception) -> None:
        report.collection_error(entity_type, _error_text(exc))
        logger.error(
            "sync.collection_error",
            entity_type=entity_type.value,
            error=_error_text(exc),
        )

    async def _sync_collection(
        self,
        report: ReportBuilder,
        guard: ReferenceGuard,
        target: StoreConnector,
        direction: Direction,
        entity_type: EntityType,
        rows: list[Row],
        synced_at: datetime,
        expires_at: float | None,
        deadline_seconds: float,
    ) -> None:
        """Map, resolve and write one collection, tallying every row."""
        report.attempted(entity_type, len(rows))
        if not rows:
            return

        # 1. Map every row; later duplicates of an id replace earlier ones
        mapped: dict[str, Row] = {}
        for source_row in rows:
            try:
                target_row = map_row(entity_type, source_row, direction, synced_at)
            except MappingError as exc:
                report.failed(entity_type, str(exc))
                logger.warning(
                    "sync.row_mapping_failed",
                    entity_type=entity_type.value,
                    entity_id=exc.entity_id,
                    reason=exc.reason,
                )
                continue
            if target_row["id"] in mapped:
                report.skipped(entity_type)
                logger.debug(
                    "sync.duplicate_row_skipped",
                    entity_type=entity_type.value,
                    entity_id=target_row["id"],
                )
            mapped[target_row["id"]] = target_row

        # 2. Resolve references before any write of this collection
        references = target_reference_columns(entity_type, direction)
        ready: list[Row] = []
        try:
            for column, referenced in references.items():
                await guard.prime(referenced, (row.get(column) for row in mapped.values()))

            for target_row in mapped.values():
                resolved, warnings = await guard.apply(entity_type, target_row, references)
                if warnings:
                    report.warn(entity_type, warnings)
                ready.append(resolved)
        except Exception as exc:
            # Without lookups no row can be written safely
            report.failed(entity_type, _error_text(exc), count=len(mapped))
            self._collection_failed(report, entity_type, exc)
            return

        # 3. Write in bounded batches on a bounded pool
        batches = [ready[i:i + self._batch_size] for i in range(0, len(ready), self._batch_size)]
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def write(batch: list[Row]) -> None:
            async with semaphore:
                if expires_at is not None and time.monotonic() >= expires_at:
                    report.skipped(entity_type, len(batch))
                    report.mark_partial(str(RunTimeoutError(deadline_seconds)))
                    return
                await self._write_batch(report, target, entity_type, batch)

        await asyncio.gather(*(write(batch) for batch in batches))

        collection = report.collection(entity_type)
        logger.info(
            "sync.collection_complete",
            entity_type=entity_type.value,
            attempted=collection.attempted,
            succeeded=collection.succeeded,
            failed=collection.failed,
            skipped=collection.skipped,
            warnings=len(collection.warnings),
        )

    async def _write_batch(
        self,
        report: ReportBuilder,
        target: StoreConnector,
        entity_type: EntityType,
        batch: list[Row],
    ) -> None:
        """Upsert one batch and tally its per-id outcome."""
        try:
            outcome = await target.upsert_batch(entity_type, batch, conflict_key="id")
        except Exception as exc:
            # A batch-scoped failure fails only this batch's rows
            report.failed(entity_type, _error_text(exc), count=len(batch))
            logger.error(
                "sync.batch_failed",
                entity_type=entity_type.value,
                rows=len(batch),
                error=_error_text(exc),
            )
            return

        succeeded = set(outcome.succeeded_ids)
        for row in batch:
            row_id = row["id"]
            if row_id in succeeded:
                report.succeeded(entity_type)
                continue
            error = outcome.failures.get(row_id, "upsert not acknowledged by store")
            report.failed(entity_type, f"{row_id}: {error}")
