"""Schema mapping between the primary (Logos) and partner (Pulse) stores.

Defines:
- PRIMARY_TABLES / PARTNER_TABLES: collection name per entity in each store.
- PRIMARY_FIELD_MAP / PARTNER_FIELD_MAP: canonical field -> store column
  renames for projects, cases, tasks and activities. Contacts have their own
  parse/render pair because names are split differently on each side.
- REFERENCES: foreign-key-shaped canonical fields and the entity they point at.
- display_name(): the contact name fallback chain.
- map_row(): translate one source row into the target schema (pure, no I/O).

Every row passes through a canonical record (schemas.*Record) between the two
schemas, so this module is the only place that tolerates missing or renamed
source fields.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import ValidationError

from src.crm_sync.sync.connector import Row
from src.crm_sync.sync.errors import MappingError
from src.crm_sync.sync.schemas import (
    RECORD_TYPES,
    Direction,
    EntityType,
)


UNKNOWN_NAME = "Unknown"


# ── Store Tables ───────────────────────────────────────────────────────────

PRIMARY_TABLES: dict[EntityType, str] = {
    EntityType.CONTACT: "lv_clients",
    EntityType.PROJECT: "lv_projects",
    EntityType.CASE: "lv_cases",
    EntityType.TASK: "lv_tasks",
    EntityType.ACTIVITY: "lv_activities",
}

PARTNER_TABLES: dict[EntityType, str] = {
    EntityType.CONTACT: "logos_contacts",
    EntityType.PROJECT: "logos_projects",
    EntityType.CASE: "logos_cases",
    EntityType.TASK: "logos_tasks",
    EntityType.ACTIVITY: "logos_activities",
}


# ── Field Renames ──────────────────────────────────────────────────────────
# Canonical field name -> store column name. Fields absent from a map are
# not carried to that store.

PRIMARY_FIELD_MAP: dict[EntityType, dict[str, str]] = {
    EntityType.PROJECT: {
        "id": "id",
        "name": "name",
        "description": "description",
        "contact_id": "client_id",
        "status": "status",
        "start_date": "start_date",
        "end_date": "end_date",
    },
    EntityType.CASE: {
        "id": "id",
        "title": "title",
        "description": "description",
        "contact_id": "client_id",
        "status": "status",
        "priority": "priority",
    },
    EntityType.TASK: {
        "id": "id",
        "description": "description",
        "project_id": "project_id",
        "assignee_id": "team_member_id",
        "status": "status",
        "due_date": "due_date",
    },
    EntityType.ACTIVITY: {
        "id": "id",
        "type": "type",
        "title": "title",
        "description": "description",
        "project_id": "project_id",
        "contact_id": "client_id",
        "case_id": "case_id",
        "activity_date": "activity_date",
        "status": "status",
    },
}

PARTNER_FIELD_MAP: dict[EntityType, dict[str, str]] = {
    EntityType.PROJECT: {
        "id": "id",
        "name": "name",
        "description": "description",
        "contact_id": "client_id",
        "status": "status",
        "start_date": "start_date",
        "end_date": "due_date",
    },
    EntityType.CASE: {
        "id": "id",
        "title": "title",
        "description": "description",
        "contact_id": "contact_id",
        "status": "status",
        "priority": "priority",
    },
    EntityType.TASK: {
        "id": "id",
        "description": "title",
        "project_id": "project_id",
        "assignee_id": "assignee_id",
        "status": "status",
        "due_date": "due_date",
    },
    EntityType.ACTIVITY: {
        "id": "id",
        "type": "type",
        "title": "title",
        "description": "description",
        "project_id": "project_id",
        "contact_id": "client_id",
        "case_id": "case_id",
        "activity_date": "activity_date",
        "status": "status",
    },
}

# Canonical reference fields. Task assignees point at team members, which are
# not a synced collection, so they are not listed here.
REFERENCES: dict[EntityType, dict[str, EntityType]] = {
    EntityType.CONTACT: {},
    EntityType.PROJECT: {"contact_id": EntityType.CONTACT},
    EntityType.CASE: {"contact_id": EntityType.CONTACT},
    EntityType.TASK: {"project_id": EntityType.PROJECT},
    EntityType.ACTIVITY: {
        "project_id": EntityType.PROJECT,
        "contact_id": EntityType.CONTACT,
        "case_id": EntityType.CASE,
    },
}


# ── Value Vocabularies ─────────────────────────────────────────────────────
# Canonical task statuses use the primary store's vocabulary.

TASK_STATUS_TO_PARTNER: dict[str, str] = {
    "To Do": "pending",
    "In Progress": "in_progress",
    "Done": "complete",
}
TASK_STATUS_FROM_PARTNER: dict[str, str] = {v: k for k, v in TASK_STATUS_TO_PARTNER.items()}


# ── Helpers ────────────────────────────────────────────────────────────────


def display_name(
    first_name: str | None,
    last_name: str | None,
    organization: str | None,
) -> str:
    """Resolve a contact's display name.

    First and last name joined by a single space (empty parts dropped),
    falling back to the organization, falling back to "Unknown". Downstream
    display logic relies on the result never being empty.
    """
    person = " ".join(part.strip() for part in (first_name, last_name) if part and part.strip())
    if person:
        return person
    if organization and organization.strip():
        return organization.strip()
    return UNKNOWN_NAME


def _split_person(full_name: str | None) -> tuple[str | None, str | None]:
    """Split "First Rest Of Name" on the first space."""
    if not full_name or not full_name.strip():
        return None, None
    first, _, rest = full_name.strip().partition(" ")
    return first, (rest.strip() or None)


def _iso_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _row_id(row: Row) -> str | None:
    value = row.get("id")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _validate(entity_type: EntityType, data: dict[str, Any], entity_id: str):
    """Build the canonical record, turning validation failures into MappingError."""
    try:
        return RECORD_TYPES[entity_type].model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "row"
        raise MappingError(f"unparseable field {location}: {first.get('msg')}", entity_id) from exc


def _rename(row: Row, field_map: dict[str, str]) -> dict[str, Any]:
    """Pick store columns out of a row under their canonical names."""
    return {canonical: row.get(column) for canonical, column in field_map.items()}


# ── Parse: store row -> canonical record ───────────────────────────────────


def parse_primary(entity_type: EntityType, row: Row):
    """Parse a primary store row into its canonical record."""
    entity_id = _row_id(row)
    if entity_id is None:
        raise MappingError("missing id")

    if entity_type == EntityType.CONTACT:
        first, last = _split_person(row.get("contact_person"))
        data = {
            "id": entity_id,
            "name": row.get("name"),
            "first_name": first,
            "last_name": last,
            "organization": row.get("location"),
            "email": row.get("email"),
            "phone": row.get("phone"),
            "status": row.get("status"),
        }
    else:
        data = _rename(row, PRIMARY_FIELD_MAP[entity_type])
        data["id"] = entity_id

    return _validate(entity_type, data, entity_id)


def parse_partner(entity_type: EntityType, row: Row):
    """Parse a partner store row into its canonical record."""
    entity_id = _row_id(row)
    if entity_id is None:
        raise MappingError("missing id")

    if entity_type == EntityType.CONTACT:
        # display_name is derived on the partner side; the name chain is
        # always rebuilt from its parts.
        data = {
            "id": entity_id,
            "first_name": row.get("first_name"),
            "last_name": row.get("last_name"),
            "organization": row.get("company"),
            "email": row.get("email"),
            "phone": row.get("phone"),
            "status": row.get("status"),
        }
    else:
        data = _rename(row, PARTNER_FIELD_MAP[entity_type])
        data["id"] = entity_id
        if entity_type == EntityType.TASK and data.get("status"):
            data["status"] = TASK_STATUS_FROM_PARTNER.get(data["status"], "To Do")

    return _validate(entity_type, data, entity_id)


# ── Render: canonical record -> store row ──────────────────────────────────


def _render(record, field_map: dict[str, str]) -> Row:
    row: Row = {}
    for canonical, column in field_map.items():
        value = getattr(record, canonical)
        row[column] = _iso_date(value) if isinstance(value, date) else value
    return row


def render_primary(entity_type: EntityType, record, synced_at: datetime) -> Row:
    """Render a canonical record as a primary store row stamped with the run clock."""
    if entity_type == EntityType.CONTACT:
        person = " ".join(p for p in (record.first_name, record.last_name) if p) or None
        row = {
            "id": record.id,
            "name": record.name or display_name(
                record.first_name, record.last_name, record.organization
            ),
            "contact_person": person,
            "email": record.email,
            "phone": record.phone,
            "location": record.organization,
            "status": record.status,
        }
    else:
        row = _render(record, PRIMARY_FIELD_MAP[entity_type])

    row["updated_at"] = synced_at
    return row


def render_partner(entity_type: EntityType, record, synced_at: datetime) -> Row:
    """Render a canonical record as a partner store row stamped with the run clock."""
    if entity_type == EntityType.CONTACT:
        first, last = record.first_name, record.last_name
        if not first and not last:
            first, last = _split_person(record.name)
        row = {
            "id": record.id,
            "first_name": first or "",
            "last_name": last or "",
            "display_name": record.name or display_name(first, last, record.organization),
            "email": record.email,
            "phone": record.phone,
            "company": record.organization,
            "status": record.status,
        }
    else:
        row = _render(record, PARTNER_FIELD_MAP[entity_type])
        if entity_type == EntityType.TASK and row.get("status"):
            row["status"] = TASK_STATUS_TO_PARTNER.get(row["status"], "pending")

    stamp = synced_at.isoformat()
    row["updated_at"] = stamp
    row["synced_at"] = stamp
    return row


# ── Public Mapping API ─────────────────────────────────────────────────────


def map_row(
    entity_type: EntityType,
    source_row: Row,
    direction: Direction,
    synced_at: datetime,
) -> Row:
    """Translate one source row into the target store's schema.

    Args:
        entity_type: Collection the row belongs to.
        source_row: Row in the source store's native schema.
        direction: Which store is the source.
        synced_at: Wall-clock time of the sync run, stamped as updated_at.

    Returns:
        Row in the target store's native schema, keyed by the same id.

    Raises:
        MappingError: The row has no id or a field cannot be parsed.
    """
    if direction == Direction.PRIMARY_TO_PARTNER:
        record = parse_primary(entity_type, source_row)
        return render_partner(entity_type, record, synced_at)
    record = parse_partner(entity_type, source_row)
    return render_primary(entity_type, record, synced_at)


def target_reference_columns(
    entity_type: EntityType,
    direction: Direction,
) -> dict[str, EntityType]:
    """Target-schema columns holding references, with the entity each points at."""
    if entity_type == EntityType.CONTACT:
        return {}
    field_map = (
        PARTNER_FIELD_MAP if direction == Direction.PRIMARY_TO_PARTNER else PRIMARY_FIELD_MAP
    )[entity_type]
    return {
        field_map[canonical]: referenced
        for canonical, referenced in REFERENCES[entity_type].items()
    }
