"""Pydantic schemas for cross-store reconciliation.

Defines:
- Enums: EntityType, Direction, RunStatus
- Canonical records: ContactRecord, ProjectRecord, CaseRecord, TaskRecord,
  ActivityRecord -- the typed shape every row passes through between the
  primary (Logos) and partner (Pulse) schemas
- Connector results: UpsertOutcome
- Run reporting: IntegrityWarning, CollectionReport, SyncRunReport
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Synchronized collections, named by the canonical entity."""

    CONTACT = "contact"
    PROJECT = "project"
    CASE = "case"
    TASK = "task"
    ACTIVITY = "activity"


class Direction(str, Enum):
    """Which store is the source of a sync run."""

    PRIMARY_TO_PARTNER = "primary_to_partner"
    PARTNER_TO_PRIMARY = "partner_to_primary"

    @classmethod
    def parse(cls, value: Direction | str) -> Direction:
        """Coerce a direction value, raising ValueError for unknown ones."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown sync direction {value!r}; expected one of "
                f"{[d.value for d in cls]}"
            ) from None


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# Processing stages: every collection in a stage only references collections
# from earlier stages.
DEPENDENCY_STAGES: tuple[tuple[EntityType, ...], ...] = (
    (EntityType.CONTACT,),
    (EntityType.PROJECT, EntityType.CASE),
    (EntityType.TASK, EntityType.ACTIVITY),
)


# ── Canonical Records ───────────────────────────────────────────────────────


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class _Record(BaseModel):
    """Common behaviour: ids are required, blank optional strings become None."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str = Field(min_length=1)

    @field_validator("*", mode="before")
    @classmethod
    def blank_optional(cls, value, info):
        if info.field_name == "id":
            # Numeric ids from loosely-typed sources keep their text form
            return value if value is None or isinstance(value, str) else str(value)
        return _blank_to_none(value)


def _coerce_date(value):
    """Normalize a date/datetime/ISO string to a date, None if absent."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    # Accept full timestamps ("2026-03-01T10:00:00Z") as well as bare dates
    return date.fromisoformat(text[:10])


class ContactRecord(_Record):
    """Contact/donor. `name` is the display name; the parts feed its fallback chain."""

    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    organization: str | None = None
    email: str | None = None
    phone: str | None = None
    status: str = "active"

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, value):
        return value or "active"


class ProjectRecord(_Record):
    name: str
    description: str | None = None
    contact_id: str | None = None
    status: str | None = None
    start_date: date | None = None
    end_date: date | None = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def coerce_dates(cls, value):
        return _coerce_date(value)


class CaseRecord(_Record):
    title: str
    description: str | None = None
    contact_id: str | None = None
    status: str | None = None
    priority: str | None = None


class TaskRecord(_Record):
    description: str
    project_id: str | None = None
    assignee_id: str | None = None
    status: str | None = None
    due_date: date | None = None

    @field_validator("due_date", mode="before")
    @classmethod
    def coerce_dates(cls, value):
        return _coerce_date(value)


class ActivityRecord(_Record):
    type: str | None = None
    title: str
    description: str | None = None
    project_id: str | None = None
    contact_id: str | None = None
    case_id: str | None = None
    activity_date: date | None = None
    status: str | None = None

    @field_validator("activity_date", mode="before")
    @classmethod
    def coerce_dates(cls, value):
        return _coerce_date(value)


RECORD_TYPES: dict[EntityType, type[_Record]] = {
    EntityType.CONTACT: ContactRecord,
    EntityType.PROJECT: ProjectRecord,
    EntityType.CASE: CaseRecord,
    EntityType.TASK: TaskRecord,
    EntityType.ACTIVITY: ActivityRecord,
}


# ── Connector Results ───────────────────────────────────────────────────────


class UpsertOutcome(BaseModel):
    """Per-row result of a batched upsert: which ids landed, which failed and why."""

    succeeded_ids: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)


# ── Run Reporting ───────────────────────────────────────────────────────────


class IntegrityWarning(BaseModel):
    """A reference dropped because the referenced row is absent from the target."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    field: str
    dropped_id: str


class CollectionReport(BaseModel):
    """Counters for one collection within a run."""

    model_config = ConfigDict(frozen=True)

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    first_error: str | None = None
    warnings: tuple[IntegrityWarning, ...] = ()


class SyncRunReport(BaseModel):
    """Immutable record of one engine invocation."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    direction: Direction
    started_at: datetime
    finished_at: datetime
    status: RunStatus
    partial_reason: str | None = None
    collections: Mapping[EntityType, CollectionReport] = Field(default_factory=dict, validate_default=True)

    @field_validator("collections", mode="after")
    @classmethod
    def freeze_collections(cls, value: Mapping[EntityType, CollectionReport]) -> Mapping[EntityType, CollectionReport]:
        # Read-only view; frozen=True only guards attribute assignment
        return MappingProxyType(dict(value))

    @field_serializer("collections")
    def serialize_collections(
        self, value: Mapping[EntityType, CollectionReport]
    ) -> dict[EntityType, CollectionReport]:
        return dict(value)

    @property
    def total_attempted(self) -> int:
        return sum(c.attempted for c in self.collections.values())

    @property
    def total_succeeded(self) -> int:
        return sum(c.succeeded for c in self.collections.values())

    @property
    def total_failed(self) -> int:
        return sum(c.failed for c in self.collections.values())

    @property
    def warning_count(self) -> int:
        return sum(len(c.warnings) for c in self.collections.values())

    def collection(self, entity_type: EntityType | str) -> CollectionReport:
        """Counters for a collection (an empty report if it never ran)."""
        return self.collections.get(EntityType(entity_type), CollectionReport())
