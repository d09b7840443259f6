"""Async http client for the semantic query api.

load and sql are GETs with the query json in the ?query= parameter, the
rest (batch, dry-run, explain) POST a json body. the token goes in
Authorization as-is, no Bearer prefix.
"""

import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from queryforge.config import Settings
from queryforge.errors import QueryExecutionError
from queryforge.models.meta import CubeMeta
from queryforge.models.modes import FlowQuery, FunnelQuery, RetentionQuery
from queryforge.models.query import CompiledQuery, ResultSet

logger = logging.getLogger(__name__)

QueryLike = CompiledQuery | FunnelQuery | FlowQuery | RetentionQuery | dict[str, Any]


def query_payload(query: QueryLike) -> dict[str, Any]:
    """Wire dict for anything the client accepts."""
    if isinstance(query, CompiledQuery):
        return query.to_server_payload()
    if isinstance(query, (FunnelQuery, FlowQuery, RetentionQuery)):
        return query.to_payload()
    if isinstance(query, dict):
        return query
    raise TypeError(f"Unsupported query type: {type(query).__name__}")


def extract_sql(body: dict[str, Any]) -> str | None:
    """Pull the sql text out of a /sql or /dry-run response.

    seen in the wild: {"sql": "..."}, {"sql": {"sql": "..."}} and
    {"sql": {"sql": ["...", params]}}.
    """
    sql = body.get("sql")
    if isinstance(sql, dict):
        sql = sql.get("sql")
    if isinstance(sql, list):
        sql = sql[0] if sql else None
    return sql if isinstance(sql, str) else None


class QueryClient:
    """Client for the query api.

    pass your own httpx.AsyncClient (or just a transport) to control
    connection pooling or to test against httpx.MockTransport.
    """

    def __init__(
        self,
        api_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client
        self._transport = transport
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "QueryClient":
        return cls(settings.api_url, settings.api_token, settings.timeout_seconds, **kwargs)

    @property
    def client(self) -> httpx.AsyncClient:
        # lazy so constructing a client never needs a running loop
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    def _headers(self, bust_cache: bool = False) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = self.token
        if bust_cache:
            headers["X-Cache-Control"] = "no-cache"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        error_prefix: str,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        bust_cache: bool = False,
    ) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = await self.client.request(
                method, url, json=body, params=params, headers=self._headers(bust_cache)
            )
        except httpx.TimeoutException as e:
            raise QueryExecutionError(
                f"{error_prefix}: request timed out after {self.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise QueryExecutionError(f"{error_prefix}: {e}") from e
        return self._handle_response(response, error_prefix)

    async def _request_object(
        self, method: str, path: str, error_prefix: str, **kwargs: Any
    ) -> dict[str, Any]:
        body = await self._request(method, path, error_prefix, **kwargs)
        if not isinstance(body, dict):
            raise QueryExecutionError(
                f"{error_prefix}: expected a JSON object, got {type(body).__name__}"
            )
        return body

    def _handle_response(self, response: httpx.Response, error_prefix: str) -> Any:
        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise QueryExecutionError(
                    f"{error_prefix}: response is not valid JSON",
                    status_code=response.status_code,
                    details={"body": response.text[:200]},
                ) from e

        message = f"{error_prefix}: {response.status_code}"
        details: dict[str, Any] = {}
        try:
            error_data = response.json()
        except ValueError:
            if response.text:
                message = f"{message} {response.text}"
        else:
            if isinstance(error_data, dict):
                details = error_data
                if error_data.get("error"):
                    message = str(error_data["error"])
                else:
                    message = f"{message} {response.text}"
        raise QueryExecutionError(message, status_code=response.status_code, details=details)

    # --- endpoints ---

    async def load(self, query: QueryLike, bust_cache: bool = False) -> ResultSet:
        body = await self._request_object(
            "GET",
            "/load",
            "Query failed",
            params={"query": json.dumps(query_payload(query))},
            bust_cache=bust_cache,
        )
        return ResultSet.from_response(body)

    async def sql(self, query: QueryLike) -> dict[str, Any]:
        return await self._request_object(
            "GET",
            "/sql",
            "SQL generation failed",
            params={"query": json.dumps(query_payload(query))},
        )

    async def dry_run(self, query: QueryLike) -> dict[str, Any]:
        return await self._request_object(
            "POST", "/dry-run", "Dry run failed", body={"query": query_payload(query)}
        )

    async def explain(
        self, query: QueryLike, options: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"query": query_payload(query)}
        if options is not None:
            body["options"] = options
        return await self._request_object("POST", "/explain", "Explain failed", body=body)

    async def batch_load(
        self, queries: list[QueryLike], bust_cache: bool = False
    ) -> list[ResultSet]:
        """Run several queries in one request.

        a failed position comes back as a ResultSet with error set, it does
        not raise - the batch coordinator turns those into per-future errors.
        """
        body = await self._request_object(
            "POST",
            "/batch",
            "Batch query failed",
            body={"queries": [query_payload(q) for q in queries]},
            bust_cache=bust_cache,
        )
        results = []
        for entry in body.get("results") or []:
            if not isinstance(entry, dict):
                results.append(ResultSet(error="Malformed batch result"))
            elif entry.get("success") is False or entry.get("error"):
                results.append(ResultSet(error=str(entry.get("error") or "Query failed")))
            else:
                results.append(ResultSet.from_response(entry))
        return results

    async def meta(self) -> CubeMeta:
        body = await self._request_object("GET", "/meta", "Failed to fetch meta")
        try:
            return CubeMeta.model_validate(body)
        except ValidationError as e:
            raise QueryExecutionError(f"Failed to fetch meta: unexpected response ({e})") from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "QueryClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
