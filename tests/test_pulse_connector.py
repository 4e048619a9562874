"""Unit tests for the partner store connector.

The partner REST API is replaced with httpx.MockTransport -- no network calls.
Retries use tenacity's wait_none() so transient-failure tests run instantly.
"""

from __future__ import annotations

import json

import httpx
import pytest
from tenacity import wait_none

from src.crm_sync.sync.engine import ReconciliationEngine
from src.crm_sync.sync.errors import ConnectorError
from src.crm_sync.sync.pulse import PulseConnector
from src.crm_sync.sync.schemas import Direction, EntityType, RunStatus


# ── Helpers ────────────────────────────────────────────────────────────────


def _make_connector(handler, page_size: int = 1000) -> PulseConnector:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://pulse.test/rest/v1",
    )
    return PulseConnector(
        "https://pulse.test",
        "test-key",
        page_size=page_size,
        client=client,
        retry_wait=wait_none(),
    )


class _Recorder:
    """Handler wrapper that records every request it answers."""

    def __init__(self, respond):
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


# ── Construction ───────────────────────────────────────────────────────────


class TestPulseConnectorClient:
    """Test default client configuration."""

    async def test_default_client_sends_api_key_headers(self):
        connector = PulseConnector("https://pulse.test/", "secret-key")
        try:
            assert str(connector._client.base_url) == "https://pulse.test/rest/v1/"
            assert connector._client.headers["apikey"] == "secret-key"
            assert connector._client.headers["Authorization"] == "Bearer secret-key"
            assert connector.name == "pulse"
        finally:
            await connector.close()


# ── Fetch ──────────────────────────────────────────────────────────────────


class TestFetchAll:
    """Test paged reads."""

    async def test_fetch_all_pages_until_empty_page(self):
        rows = [{"id": f"c{i}"} for i in range(5)]

        def respond(request):
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            return httpx.Response(200, json=rows[offset:offset + limit])

        recorder = _Recorder(respond)
        connector = _make_connector(recorder, page_size=2)

        result = await connector.fetch_all(EntityType.CONTACT)

        assert result == rows
        assert [r.url.params["offset"] for r in recorder.requests] == ["0", "2", "4", "5"]
        assert all(r.url.path == "/rest/v1/logos_contacts" for r in recorder.requests)
        assert recorder.requests[0].url.params["order"] == "id.asc"

    async def test_server_row_cap_below_page_size_loses_nothing(self):
        rows = [{"id": f"c{i}"} for i in range(5)]

        def respond(request):
            # Server-side max-rows of 2 regardless of the requested limit
            offset = int(request.url.params["offset"])
            return httpx.Response(200, json=rows[offset:offset + 2])

        recorder = _Recorder(respond)
        connector = _make_connector(recorder, page_size=5)

        result = await connector.fetch_all(EntityType.CONTACT)

        assert result == rows
        assert [r.url.params["offset"] for r in recorder.requests] == ["0", "2", "4", "5"]

    async def test_html_maintenance_page_is_connector_error(self):
        recorder = _Recorder(
            lambda request: httpx.Response(200, text="<html>maintenance</html>", headers={"Content-Type": "text/html"})
        )
        connector = _make_connector(recorder)

        with pytest.raises(ConnectorError, match="non-JSON response") as exc_info:
            await connector.fetch_all(EntityType.CONTACT)

        assert "maintenance" in str(exc_info.value)

    async def test_non_array_body_is_connector_error(self):
        recorder = _Recorder(lambda request: httpx.Response(200, json={"rows": []}))
        connector = _make_connector(recorder)

        with pytest.raises(ConnectorError, match="expected a JSON array"):
            await connector.fetch_all(EntityType.PROJECT)

    async def test_fetch_client_error_is_connector_error(self):
        recorder = _Recorder(lambda request: httpx.Response(404, json={"message": "relation does not exist"}))
        connector = _make_connector(recorder)

        with pytest.raises(ConnectorError, match="relation does not exist"):
            await connector.fetch_all(EntityType.CASE)

        # 4xx is not transient
        assert len(recorder.requests) == 1


# ── Exists ─────────────────────────────────────────────────────────────────


class TestExistsBatch:
    """Test batched existence lookups."""

    async def test_exists_batch_uses_in_filter(self):
        recorder = _Recorder(lambda request: httpx.Response(200, json=[{"id": "p1"}]))
        connector = _make_connector(recorder)

        found = await connector.exists_batch(EntityType.PROJECT, ["p1", "p2"])

        assert found == {"p1"}
        request = recorder.requests[0]
        assert request.url.path == "/rest/v1/logos_projects"
        assert request.url.params["select"] == "id"
        assert request.url.params["id"] == 'in.("p1","p2")'

    async def test_exists_batch_chunks_long_id_lists(self):
        recorder = _Recorder(lambda request: httpx.Response(200, json=[]))
        connector = _make_connector(recorder)

        await connector.exists_batch(EntityType.CONTACT, [f"c{i}" for i in range(250)])

        assert len(recorder.requests) == 3

    async def test_lookup_rows_without_id_are_connector_error(self):
        recorder = _Recorder(lambda request: httpx.Response(200, json=[{"name": "Clinic"}]))
        connector = _make_connector(recorder)

        with pytest.raises(ConnectorError, match="row without 'id'"):
            await connector.exists_batch(EntityType.PROJECT, ["p1"])

    async def test_lookup_html_body_is_connector_error(self):
        recorder = _Recorder(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        connector = _make_connector(recorder)

        with pytest.raises(ConnectorError, match="lookup in logos_contacts failed"):
            await connector.exists_batch(EntityType.CONTACT, ["c1"])


# ── Upsert ─────────────────────────────────────────────────────────────────


class TestUpsertBatch:
    """Test batched upserts, per-row fallback and retries."""

    async def test_upsert_posts_batch_with_merge_duplicates(self):
        recorder = _Recorder(lambda request: httpx.Response(201))
        connector = _make_connector(recorder)
        rows = [{"id": "c1", "display_name": "Ada"}, {"id": "c2", "display_name": "Globex"}]

        outcome = await connector.upsert_batch(EntityType.CONTACT, rows)

        assert outcome.succeeded_ids == ["c1", "c2"]
        assert outcome.failures == {}
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "id"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]
        assert json.loads(request.content) == rows

    async def test_rejected_batch_is_replayed_row_by_row(self):
        def respond(request):
            body = json.loads(request.content)
            if len(body) > 1:
                return httpx.Response(400, json={"message": "batch rejected"})
            if body[0]["id"] == "p2":
                return httpx.Response(400, json={"message": 'null value in column "name"'})
            return httpx.Response(201)

        recorder = _Recorder(respond)
        connector = _make_connector(recorder)
        rows = [{"id": "p1", "name": "A"}, {"id": "p2", "name": None}, {"id": "p3", "name": "C"}]

        outcome = await connector.upsert_batch(EntityType.PROJECT, rows)

        assert outcome.succeeded_ids == ["p1", "p3"]
        assert list(outcome.failures) == ["p2"]
        assert "HTTP 400" in outcome.failures["p2"]
        assert "null value" in outcome.failures["p2"]
        assert len(recorder.requests) == 4

    async def test_conflict_response_is_replayed_row_by_row(self):
        def respond(request):
            body = json.loads(request.content)
            if len(body) > 1 or body[0]["id"] == "a2":
                return httpx.Response(409, json={"message": "duplicate key value violates unique constraint"})
            return httpx.Response(201)

        recorder = _Recorder(respond)
        connector = _make_connector(recorder)

        outcome = await connector.upsert_batch(EntityType.ACTIVITY, [{"id": "a1"}, {"id": "a2"}])

        assert outcome.succeeded_ids == ["a1"]
        assert "HTTP 409" in outcome.failures["a2"]
        assert len(recorder.requests) == 3

    @pytest.mark.parametrize("status", [401, 403, 404])
    async def test_non_row_rejection_fails_batch_without_replay(self, status):
        recorder = _Recorder(lambda request: httpx.Response(status, json={"message": "permission denied"}))
        connector = _make_connector(recorder)
        rows = [{"id": "c1", "display_name": "Ada"}, {"id": "c2", "display_name": "Globex"}]

        with pytest.raises(ConnectorError, match="upsert into logos_contacts failed") as exc_info:
            await connector.upsert_batch(EntityType.CONTACT, rows)

        assert f"HTTP {status}" in str(exc_info.value)
        assert len(recorder.requests) == 1

    async def test_transient_errors_are_retried(self):
        statuses = iter([503, 429, 201])
        recorder = _Recorder(lambda request: httpx.Response(next(statuses)))
        connector = _make_connector(recorder)

        outcome = await connector.upsert_batch(EntityType.TASK, [{"id": "t1", "title": "Call"}])

        assert outcome.succeeded_ids == ["t1"]
        assert len(recorder.requests) == 3

    async def test_exhausted_retries_raise_connector_error(self):
        recorder = _Recorder(lambda request: httpx.Response(503, text="upstream unavailable"))
        connector = _make_connector(recorder)

        with pytest.raises(ConnectorError) as exc_info:
            await connector.upsert_batch(EntityType.TASK, [{"id": "t1", "title": "Call"}])

        assert "[pulse]" in str(exc_info.value)
        assert "HTTP 503" in str(exc_info.value)
        assert len(recorder.requests) == 3

    async def test_connection_errors_are_retried_then_raised(self):
        def respond(request):
            raise httpx.ConnectError("connection refused", request=request)

        recorder = _Recorder(respond)
        connector = _make_connector(recorder)

        with pytest.raises(ConnectorError, match="connection refused"):
            await connector.exists_batch(EntityType.CONTACT, ["c1"])

        assert len(recorder.requests) == 3

    async def test_empty_batch_makes_no_request(self):
        recorder = _Recorder(lambda request: httpx.Response(201))
        connector = _make_connector(recorder)

        outcome = await connector.upsert_batch(EntityType.CONTACT, [])

        assert outcome.succeeded_ids == []
        assert recorder.requests == []


# ── Pull Through the Engine ────────────────────────────────────────────────


class TestPullFromUnhealthyPartner:
    """Test that a misbehaving partner API still yields a report."""

    async def test_maintenance_page_fails_run_without_raising(self, primary_store, sync_settings):
        recorder = _Recorder(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        partner = _make_connector(recorder)
        engine = ReconciliationEngine(primary_store, partner, sync_settings)

        report = await engine.run(Direction.PARTNER_TO_PRIMARY)

        assert report.status == RunStatus.FAILED
        assert report.total_attempted == 0
        for entity_type in EntityType:
            assert "non-JSON response" in report.collection(entity_type).first_error
        assert primary_store.calls_to("upsert_batch") == []
