"""Mutable run tally that freezes into an immutable SyncRunReport.

A ReportBuilder is created at the start of a run, owned exclusively by that
run, and frozen by `build()` when the run returns.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.crm_sync.sync.schemas import (
    CollectionReport,
    Direction,
    EntityType,
    IntegrityWarning,
    RunStatus,
    SyncRunReport,
)


@dataclass
class _Tally:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    first_error: str | None = None
    warnings: list[IntegrityWarning] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        if self.first_error is None:
            self.first_error = message


class ReportBuilder:
    """Accumulates per-collection counters for one run."""

    def __init__(self, direction: Direction, started_at: datetime | None = None) -> None:
        self.run_id = str(uuid.uuid4())
        self.direction = direction
        self.started_at = started_at or datetime.now(timezone.utc)
        self._tallies: dict[EntityType, _Tally] = {}
        self._partial_reason: str | None = None

    def _tally(self, entity_type: EntityType) -> _Tally:
        return self._tallies.setdefault(entity_type, _Tally())

    def open(self, entity_type: EntityType) -> None:
        """Register a collection so it appears in the report even when empty."""
        self._tally(entity_type)

    def attempted(self, entity_type: EntityType, count: int) -> None:
        self._tally(entity_type).attempted += count

    def succeeded(self, entity_type: EntityType, count: int = 1) -> None:
        self._tally(entity_type).succeeded += count

    def failed(self, entity_type: EntityType, error: str, count: int = 1) -> None:
        tally = self._tally(entity_type)
        tally.failed += count
        tally.record_error(error)

    def skipped(self, entity_type: EntityType, count: int = 1) -> None:
        self._tally(entity_type).skipped += count

    def collection_error(self, entity_type: EntityType, error: str) -> None:
        """Record a collection-level failure that attempted no rows."""
        self._tally(entity_type).record_error(error)

    def warn(self, entity_type: EntityType, warnings: list[IntegrityWarning]) -> None:
        self._tally(entity_type).warnings.extend(warnings)

    def mark_partial(self, reason: str) -> None:
        if self._partial_reason is None:
            self._partial_reason = reason

    @property
    def is_partial(self) -> bool:
        return self._partial_reason is not None

    def _status(self) -> RunStatus:
        if self._partial_reason is not None:
            return RunStatus.PARTIAL
        tallies = self._tallies.values()
        attempted = sum(t.attempted for t in tallies)
        succeeded = sum(t.succeeded for t in tallies)
        failed = sum(t.failed for t in tallies)
        collection_errors = any(t.first_error for t in tallies)
        if attempted and not succeeded and (failed or collection_errors):
            return RunStatus.FAILED
        if not attempted and collection_errors:
            return RunStatus.FAILED
        if failed or collection_errors:
            return RunStatus.PARTIAL
        return RunStatus.SUCCESS

    def collection(self, entity_type: EntityType) -> CollectionReport:
        """Frozen snapshot of one collection's counters."""
        t = self._tally(entity_type)
        return CollectionReport(
            attempted=t.attempted,
            succeeded=t.succeeded,
            failed=t.failed,
            skipped=t.skipped,
            first_error=t.first_error,
            warnings=tuple(t.warnings),
        )

    def build(self) -> SyncRunReport:
        """Freeze the tally into the report returned to the caller."""
        return SyncRunReport(
            run_id=self.run_id,
            direction=self.direction,
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc),
            status=self._status(),
            partial_reason=self._partial_reason,
            collections={entity_type: self.collection(entity_type) for entity_type in self._tallies},
        )
