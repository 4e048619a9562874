"""Error taxonomy for reconciliation runs.

Row- and collection-scoped errors are captured into the SyncRunReport by the
engine; only programmer errors (e.g. an unknown direction) escape a run.
Dropped references are not errors -- see schemas.IntegrityWarning.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for reconciliation errors."""


class MappingError(SyncError):
    """A source row cannot be translated into the target schema.

    The row is skipped, counted failed, and never retried automatically.
    """

    def __init__(self, reason: str, entity_id: str | None = None) -> None:
        self.reason = reason
        self.entity_id = entity_id
        super().__init__(f"{reason} (id={entity_id})" if entity_id else reason)


class ConnectorError(SyncError):
    """Network or store-level failure on fetch, lookup or upsert."""

    def __init__(self, store: str, message: str) -> None:
        self.store = store
        super().__init__(f"[{store}] {message}")


class RunTimeoutError(SyncError):
    """The run deadline expired before every row was started."""

    def __init__(self, deadline_seconds: float) -> None:
        self.deadline_seconds = deadline_seconds
        super().__init__(f"Run deadline of {deadline_seconds:g}s exceeded")
