"""Cross-store CRM reconciliation -- keeps the primary CRM store and the partner platform in step.

Provides abstract StoreConnector interface with concrete implementations:
- PostgresConnector: Primary CRM store (lv_* tables) via async SQLAlchemy
- PulseConnector: Partner platform store (logos_* tables) via its REST API
- ReconciliationEngine: Directional runs in dependency order with reference guarding
- SyncCoordinator: Serializes runs per direction and target store, plus periodic scheduling

Architecture: every run moves rows one way. Rows are upserted on their
shared id, references to rows missing from the target are nulled with a
warning, and the outcome of every row is tallied into a SyncRunReport.
"""

from src.crm_sync.sync.connector import StoreConnector
from src.crm_sync.sync.coordinator import RunHandle, SyncCoordinator
from src.crm_sync.sync.engine import ReconciliationEngine
from src.crm_sync.sync.errors import (
    ConnectorError,
    MappingError,
    RunTimeoutError,
    SyncError,
)
from src.crm_sync.sync.field_mapping import display_name, map_row
from src.crm_sync.sync.postgres import PostgresConnector
from src.crm_sync.sync.pulse import PulseConnector
from src.crm_sync.sync.schemas import (
    CollectionReport,
    Direction,
    EntityType,
    IntegrityWarning,
    RunStatus,
    SyncRunReport,
    UpsertOutcome,
)

__all__ = [
    "StoreConnector",
    "PostgresConnector",
    "PulseConnector",
    "ReconciliationEngine",
    "SyncCoordinator",
    "RunHandle",
    "SyncError",
    "MappingError",
    "ConnectorError",
    "RunTimeoutError",
    "display_name",
    "map_row",
    "Direction",
    "EntityType",
    "RunStatus",
    "IntegrityWarning",
    "CollectionReport",
    "SyncRunReport",
    "UpsertOutcome",
]
