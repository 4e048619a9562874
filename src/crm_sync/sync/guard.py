"""Referential integrity guard -- nulls references the target store cannot satisfy.

No database constraint spans the two stores, so before a dependent row is
written every foreign-key-shaped column is checked against the *target*
store. A reference to a missing row is written as null and reported as an
IntegrityWarning instead of failing the row: a project synced without its
owner is more useful than a project not synced at all.

Lookups are batched: `prime()` issues one existence query per referenced
collection for all ids a dependent collection needs, and `resolve()` answers
from that cache. Unprimed ids fall back to a point lookup with the same
semantics.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.crm_sync.sync.connector import StoreConnector
from src.crm_sync.sync.schemas import EntityType, IntegrityWarning

logger = structlog.get_logger(__name__)


def _clean_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ReferenceGuard:
    """Resolves references against one target store for the length of a run.

    Collections are written in dependency order, so a referenced collection
    is complete in the target before any dependent primes its ids and the
    cache stays valid for the rest of the run.

    Args:
        target: Connector for the store rows are being written to.
    """

    def __init__(self, target: StoreConnector) -> None:
        self._target = target
        self._known: dict[EntityType, dict[str, bool]] = {}

    async def prime(self, entity_type: EntityType, ids: Iterable[Any]) -> None:
        """Batch-check existence of ids in a target collection and cache the answers.

        Ids already cached are not re-queried. Must be awaited before any
        write of the dependent collection so per-row answers are stable.

        Raises:
            ConnectorError: The existence query failed.
        """
        cache = self._known.setdefault(entity_type, {})
        wanted = sorted({cid for cid in (_clean_id(v) for v in ids) if cid and cid not in cache})
        if not wanted:
            return

        found = await self._target.exists_batch(entity_type, wanted)
        for ref_id in wanted:
            cache[ref_id] = ref_id in found

        logger.debug(
            "guard.primed",
            store=self._target.name,
            entity_type=entity_type.value,
            requested=len(wanted),
            found=len(found),
        )

    async def resolve(self, entity_type: EntityType, value: Any) -> str | None:
        """Return the reference if it exists in the target, else None.

        Null or empty references resolve to None; absence of a reference is valid.
        """
        ref_id = _clean_id(value)
        if ref_id is None:
            return None

        cache = self._known.setdefault(entity_type, {})
        if ref_id not in cache:
            found = await self._target.exists_batch(entity_type, [ref_id])
            cache[ref_id] = ref_id in found
        return ref_id if cache[ref_id] else None

    async def apply(
        self,
        entity_type: EntityType,
        row: dict[str, Any],
        references: dict[str, EntityType],
    ) -> tuple[dict[str, Any], list[IntegrityWarning]]:
        """Resolve every reference column of a mapped target row.

        Args:
            entity_type: Collection the row is being written to.
            row: Mapped row in the target schema.
            references: Target column -> referenced collection.

        Returns:
            (row with unresolved references nulled, warnings for each dropped reference)
        """
        warnings: list[IntegrityWarning] = []
        resolved = dict(row)

        for column, referenced in references.items():
            original = _clean_id(row.get(column))
            value = await self.resolve(referenced, original)
            resolved[column] = value

            if original is not None and value is None:
                warning = IntegrityWarning(
                    entity_type=entity_type,
                    entity_id=str(row.get("id")),
                    field=column,
                    dropped_id=original,
                )
                warnings.append(warning)
                logger.warning(
                    "guard.reference_dropped",
                    store=self._target.name,
                    entity_type=entity_type.value,
                    entity_id=warning.entity_id,
                    field=column,
                    dropped_id=original,
                )

        return resolved, warnings
