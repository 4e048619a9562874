"""Store connector abstract base class -- the read/write interface each store implements.

Two stores implement this ABC: the primary CRM store (PostgresConnector) and
the partner platform store (PulseConnector). The ReconciliationEngine moves
rows between them; connectors speak only their own native schema and never
translate fields or check references.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.crm_sync.sync.schemas import EntityType, UpsertOutcome

Row = dict[str, Any]


class StoreConnector(ABC):
    """Abstract interface for one store's native-schema operations.

    Attributes:
        name: Identifies the store; runs are serialized per target store name.

    Methods:
        fetch_all: Read every row of a collection.
        upsert_batch: Insert-or-update rows keyed on the conflict key, reporting
            partial success per id.
        exists_batch: Return which of the given ids exist in a collection.
        close: Release network or pool resources.
    """

    name: str = "store"

    @abstractmethod
    async def fetch_all(self, entity_type: EntityType) -> list[Row]:
        """Fetch all rows of a collection in this store's schema."""
        ...

    @abstractmethod
    async def upsert_batch(
        self,
        entity_type: EntityType,
        rows: list[Row],
        conflict_key: str = "id",
    ) -> UpsertOutcome:
        """Upsert rows, returning succeeded ids and per-id failures."""
        ...

    @abstractmethod
    async def exists_batch(self, entity_type: EntityType, ids: list[str]) -> set[str]:
        """Return the subset of ids present in the collection."""
        ...

    async def close(self) -> None:
        """Release resources held by the connector."""
        return None
