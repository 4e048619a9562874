"""Test fixtures for reconciliation tests.

Provides:
- FakeStore: in-memory StoreConnector with failure injection and call recording
- primary_store / partner_store: empty fake stores named like the real ones
- sync_settings: small batches and a generous deadline, isolated from .env
- engine: ReconciliationEngine wired to the two fake stores
"""

from __future__ import annotations

import asyncio

import pytest

from src.crm_sync.config import Settings
from src.crm_sync.sync.connector import Row, StoreConnector
from src.crm_sync.sync.engine import ReconciliationEngine
from src.crm_sync.sync.errors import ConnectorError
from src.crm_sync.sync.schemas import EntityType, UpsertOutcome


class FakeStore(StoreConnector):
    """In-memory store keyed by entity type then id.

    Attributes:
        tables: Rows per collection, merged on upsert like ON CONFLICT DO UPDATE.
        calls: (method, entity_type, size) for every connector call, in order.
        writes: (entity_type, id) for every row written, in order.
        reject: id -> error message; those rows fail inside an otherwise good batch.
        fail_upsert / fail_fetch / fail_exists: collections whose calls raise ConnectorError.
        crash_fetch / crash_exists: collections whose calls raise a plain OSError, as a
            driver does when the connection is refused.
        upsert_delay: Seconds each upsert_batch call sleeps (to observe concurrency).
        max_active_upserts: Peak number of concurrently running upsert_batch calls.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.tables: dict[EntityType, dict[str, Row]] = {et: {} for et in EntityType}
        self.calls: list[tuple[str, EntityType, int]] = []
        self.writes: list[tuple[EntityType, str]] = []
        self.reject: dict[str, str] = {}
        self.fail_upsert: set[EntityType] = set()
        self.fail_fetch: set[EntityType] = set()
        self.fail_exists: set[EntityType] = set()
        self.crash_fetch: set[EntityType] = set()
        self.crash_exists: set[EntityType] = set()
        self.upsert_delay = 0.0
        self.max_active_upserts = 0
        self._active_upserts = 0

    def seed(self, entity_type: EntityType, *rows: Row) -> None:
        for row in rows:
            self.tables[entity_type][str(row["id"])] = dict(row)

    def rows(self, entity_type: EntityType) -> dict[str, Row]:
        return self.tables[entity_type]

    def calls_to(self, method: str) -> list[tuple[str, EntityType, int]]:
        return [call for call in self.calls if call[0] == method]

    async def fetch_all(self, entity_type: EntityType) -> list[Row]:
        self.calls.append(("fetch_all", entity_type, 0))
        if entity_type in self.fail_fetch:
            raise ConnectorError(self.name, f"fetch {entity_type.value} failed: connection reset")
        if entity_type in self.crash_fetch:
            raise ConnectionRefusedError(111, "Connect call failed")
        return [dict(row) for _, row in sorted(self.tables[entity_type].items())]

    async def exists_batch(self, entity_type: EntityType, ids: list[str]) -> set[str]:
        self.calls.append(("exists_batch", entity_type, len(ids)))
        if entity_type in self.fail_exists:
            raise ConnectorError(self.name, f"lookup in {entity_type.value} failed: timeout")
        if entity_type in self.crash_exists:
            raise OSError()
        return {i for i in ids if i in self.tables[entity_type]}

    async def upsert_batch(
        self,
        entity_type: EntityType,
        rows: list[Row],
        conflict_key: str = "id",
    ) -> UpsertOutcome:
        self.calls.append(("upsert_batch", entity_type, len(rows)))
        self._active_upserts += 1
        self.max_active_upserts = max(self.max_active_upserts, self._active_upserts)
        try:
            if self.upsert_delay:
                await asyncio.sleep(self.upsert_delay)
            if entity_type in self.fail_upsert:
                raise ConnectorError(self.name, f"upsert into {entity_type.value} failed: 503")

            outcome = UpsertOutcome()
            for row in rows:
                row_id = str(row[conflict_key])
                if row_id in self.reject:
                    outcome.failures[row_id] = self.reject[row_id]
                    continue
                existing = self.tables[entity_type].get(row_id, {})
                self.tables[entity_type][row_id] = {**existing, **row}
                self.writes.append((entity_type, row_id))
                outcome.succeeded_ids.append(row_id)
            return outcome
        finally:
            self._active_upserts -= 1


@pytest.fixture
def primary_store() -> FakeStore:
    return FakeStore("logos")


@pytest.fixture
def partner_store() -> FakeStore:
    return FakeStore("pulse")


@pytest.fixture
def sync_settings() -> Settings:
    """Settings with small batches so multi-batch paths are exercised."""
    return Settings(
        _env_file=None,
        SYNC_BATCH_SIZE=2,
        SYNC_MAX_CONCURRENCY=2,
        SYNC_RUN_TIMEOUT_SECONDS=60,
    )


@pytest.fixture
def engine(primary_store, partner_store, sync_settings) -> ReconciliationEngine:
    return ReconciliationEngine(primary_store, partner_store, sync_settings)


@pytest.fixture
def make_store():
    """Factory for extra fake stores (e.g. a second target with another name)."""
    return FakeStore
