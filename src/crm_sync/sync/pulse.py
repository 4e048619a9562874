"""Partner store connector -- the Pulse platform's logos_* tables over PostgREST.

Key implementation details:
- httpx.AsyncClient against `<PARTNER_API_URL>/rest/v1` with apikey + bearer headers
- Upserts POST the whole batch with `on_conflict=<key>` and
  `Prefer: resolution=merge-duplicates`; a batch rejected for row data
  (400, 409, 422) is replayed row by row so only the offending ids are
  reported as failed; other 4xx responses fail the batch
- Transient failures (connect errors, timeouts, 429, 5xx) retry with tenacity
  exponential backoff (3 attempts, 1-10s) before surfacing as ConnectorError
- fetch_all pages with limit/offset ordered by id until an empty page
- Non-JSON 2xx bodies (proxy or maintenance pages) surface as ConnectorError
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.crm_sync.sync.connector import Row, StoreConnector
from src.crm_sync.sync.errors import ConnectorError
from src.crm_sync.sync.field_mapping import PARTNER_TABLES
from src.crm_sync.sync.schemas import EntityType, UpsertOutcome

logger = structlog.get_logger(__name__)

# PostgREST builds `id=in.(...)` filters from the URL; keep them short
_LOOKUP_CHUNK = 100

# Statuses that can be caused by a single row (bad value, conflict, constraint);
# anything else (auth, missing table) fails every row alike
_ROW_DATA_STATUSES = frozenset({400, 409, 422})


def _is_transient(exc: BaseException) -> bool:
    """Retry network failures, rate limiting and server errors -- never 4xx."""
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _in_filter(ids: list[str]) -> str:
    """PostgREST `in.(...)` filter with each id double-quoted."""
    quoted = ",".join('"' + i.replace("\\", "\\\\").replace('"', '\\"') + '"' for i in ids)
    return f"in.({quoted})"


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body
        return f"HTTP {response.status_code}: {message}"
    return f"HTTP {response.status_code}: {body}"


class PulseConnector(StoreConnector):
    """Connector for the partner platform store.

    Args:
        base_url: Partner project URL (the REST API lives under /rest/v1).
        api_key: Partner API key, sent as apikey and bearer token.
        name: Store name used in logs and run locking.
        page_size: Rows per page for fetch_all.
        timeout: Request timeout in seconds.
        client: Optional preconfigured httpx.AsyncClient (tests inject a MockTransport).
        retry_wait: tenacity wait strategy between transient-failure retries.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        name: str = "pulse",
        page_size: int = 1000,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        retry_wait: Any = None,
    ) -> None:
        self.name = name
        self._page_size = page_size
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._client = client or httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transient failures.

        Returns the response for 2xx/4xx; raises ConnectorError once retries
        are exhausted.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=self._retry_wait,
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.request(method, path, **kwargs)
                    if response.status_code == 429 or response.status_code >= 500:
                        response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ConnectorError(self.name, _error_text(exc.response)) from exc
        except httpx.HTTPError as exc:
            raise ConnectorError(self.name, f"{method} {path} failed: {exc!r}") from exc
        return response

    def _decode_rows(self, response: httpx.Response, action: str) -> list[Row]:
        """Decode a 2xx body as a JSON array of objects.

        Raises:
            ConnectorError: The body is not JSON (e.g. a maintenance page) or not
                a list of rows.
        """
        try:
            body = response.json()
        except ValueError as exc:
            raise ConnectorError(
                self.name,
                f"{action} failed: non-JSON response (HTTP {response.status_code}): {response.text[:200]}",
            ) from exc
        if not isinstance(body, list) or not all(isinstance(item, dict) for item in body):
            raise ConnectorError(self.name, f"{action} failed: expected a JSON array of rows")
        return body

    async def fetch_all(self, entity_type: EntityType) -> list[Row]:
        """Fetch every row of a partner table, page by page."""
        table = PARTNER_TABLES[entity_type]
        rows: list[Row] = []
        offset = 0

        while True:
            response = await self._send(
                "GET",
                f"/{table}",
                params={
                    "select": "*",
                    "order": "id.asc",
                    "limit": str(self._page_size),
                    "offset": str(offset),
                },
            )
            if response.is_error:
                raise ConnectorError(self.name, f"fetch {table} failed: {_error_text(response)}")

            page = self._decode_rows(response, f"fetch {table}")
            if not page:
                break
            rows.extend(page)
            logger.debug("pulse_store.page_fetched", table=table, offset=offset, rows=len(page))

            # The server may cap pages below page_size (max-rows), so advance by
            # what came back and stop only on an empty page
            offset += len(page)

        logger.info("pulse_store.fetched", table=table, rows=len(rows))
        return rows

    async def exists_batch(self, entity_type: EntityType, ids: list[str]) -> set[str]:
        """Return which ids exist in a partner table."""
        table = PARTNER_TABLES[entity_type]
        found: set[str] = set()

        for start in range(0, len(ids), _LOOKUP_CHUNK):
            chunk = ids[start:start + _LOOKUP_CHUNK]
            response = await self._send(
                "GET",
                f"/{table}",
                params={"select": "id", "id": _in_filter(chunk)},
            )
            if response.is_error:
                raise ConnectorError(self.name, f"lookup in {table} failed: {_error_text(response)}")
            try:
                found.update(str(item["id"]) for item in self._decode_rows(response, f"lookup in {table}"))
            except KeyError as exc:
                raise ConnectorError(self.name, f"lookup in {table} failed: row without {exc}") from exc

        return found

    async def _post_rows(self, table: str, rows: list[Row], conflict_key: str) -> httpx.Response:
        return await self._send(
            "POST",
            f"/{table}",
            params={"on_conflict": conflict_key},
            json=rows,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def upsert_batch(
        self,
        entity_type: EntityType,
        rows: list[Row],
        conflict_key: str = "id",
    ) -> UpsertOutcome:
        """Upsert rows keyed on conflict_key, isolating per-row failures.

        Raises:
            ConnectorError: The batch could not be delivered after retries, or
                was rejected for a reason no single row caused (auth, missing table).
        """
        if not rows:
            return UpsertOutcome()

        table = PARTNER_TABLES[entity_type]
        response = await self._post_rows(table, rows, conflict_key)

        if not response.is_error:
            logger.info("pulse_store.upserted", table=table, rows=len(rows))
            return UpsertOutcome(succeeded_ids=[str(row[conflict_key]) for row in rows])

        if response.status_code not in _ROW_DATA_STATUSES:
            # Auth or table errors would reject every replayed row the same way
            raise ConnectorError(self.name, f"upsert into {table} failed: {_error_text(response)}")

        logger.warning(
            "pulse_store.batch_rejected",
            table=table,
            rows=len(rows),
            error=_error_text(response),
        )

        outcome = UpsertOutcome()
        for row in rows:
            row_id = str(row.get(conflict_key))
            try:
                row_response = await self._post_rows(table, [row], conflict_key)
            except ConnectorError as exc:
                outcome.failures[row_id] = str(exc)
                continue

            if row_response.is_error:
                outcome.failures[row_id] = _error_text(row_response)
                logger.warning(
                    "pulse_store.row_rejected",
                    table=table,
                    entity_id=row_id,
                    error=outcome.failures[row_id],
                )
            else:
                outcome.succeeded_ids.append(row_id)

        return outcome
