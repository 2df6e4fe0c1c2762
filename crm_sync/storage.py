"""
Generic storage interface over CRM entities.

Adapters are interchangeable: the sync layer only calls ``list``. Single-row
lookups return the NOT_FOUND sentinel instead of raising; adapters raise
StorageError only on transport or validation failure.
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import httpx
import structlog

from .errors import StorageError

log = structlog.get_logger()

Record = dict[str, Any]
TokenProvider = Callable[[], Awaitable[str | None]]

# Entities served by the CRUD layer; the watched set is a subset.
STORAGE_ENTITIES = ("clients", "proposals", "organizations", "users", "forms")


class _NotFound(Enum):
    NOT_FOUND = "not_found"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound.NOT_FOUND


class Storage(Protocol):
    async def list(self, entity: str) -> list[Record]: ...

    async def get(self, entity: str, record_id: Any) -> Record | _NotFound: ...

    async def create(self, entity: str, data: Record) -> Record: ...

    async def update(self, entity: str, record_id: Any, data: Record) -> Record | _NotFound: ...

    async def delete(self, entity: str, record_id: Any) -> bool: ...


def _check_entity(entity: str) -> str:
    entity = getattr(entity, "value", entity)
    if entity not in STORAGE_ENTITIES:
        raise StorageError(f"Unknown entity: {entity}")
    return entity


class MemoryStorage:
    """Dict-backed storage with auto-incrementing integer ids."""

    def __init__(self, seed: dict[str, list[Record]] | None = None) -> None:
        self._tables: dict[str, dict[Any, Record]] = {name: {} for name in STORAGE_ENTITIES}
        self._next_id: dict[str, int] = {name: 1 for name in STORAGE_ENTITIES}
        for entity, rows in (seed or {}).items():
            for row in rows:
                self._insert(_check_entity(entity), dict(row))

    def _insert(self, entity: str, data: Record) -> Record:
        if "id" not in data:
            data["id"] = self._next_id[entity]
        if isinstance(data["id"], int):
            self._next_id[entity] = max(self._next_id[entity], data["id"] + 1)
        self._tables[entity][data["id"]] = data
        return copy.deepcopy(data)

    async def list(self, entity: str) -> list[Record]:
        entity = _check_entity(entity)
        return [copy.deepcopy(row) for row in self._tables[entity].values()]

    async def get(self, entity: str, record_id: Any) -> Record | _NotFound:
        row = self._tables[_check_entity(entity)].get(record_id)
        return copy.deepcopy(row) if row is not None else NOT_FOUND

    async def create(self, entity: str, data: Record) -> Record:
        return self._insert(_check_entity(entity), dict(data))

    async def update(self, entity: str, record_id: Any, data: Record) -> Record | _NotFound:
        table = self._tables[_check_entity(entity)]
        row = table.get(record_id)
        if row is None:
            return NOT_FOUND
        row.update({k: v for k, v in data.items() if k != "id"})
        return copy.deepcopy(row)

    async def delete(self, entity: str, record_id: Any) -> bool:
        return self._tables[_check_entity(entity)].pop(record_id, None) is not None


class RestStorage:
    """
    Storage over the backend's REST endpoints (``/rest/v1/{entity}``).

    Requests carry the project API key and the cached access token.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        token_provider: TokenProvider | None = None,
        verify_tls: bool = True,
        request_timeout: int = 30,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._token_provider = token_provider
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._http_transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def list(self, entity: str) -> list[Record]:
        resp = await self._request("GET", entity, params={"select": "*"})
        return resp.json()

    async def get(self, entity: str, record_id: Any) -> Record | _NotFound:
        resp = await self._request(
            "GET", entity, params={"select": "*", "id": f"eq.{record_id}"}
        )
        rows = resp.json()
        return rows[0] if rows else NOT_FOUND

    async def create(self, entity: str, data: Record) -> Record:
        resp = await self._request(
            "POST", entity, json=data, headers={"Prefer": "return=representation"}
        )
        rows = resp.json()
        return rows[0] if isinstance(rows, list) else rows

    async def update(self, entity: str, record_id: Any, data: Record) -> Record | _NotFound:
        resp = await self._request(
            "PATCH",
            entity,
            params={"id": f"eq.{record_id}"},
            json=data,
            headers={"Prefer": "return=representation"},
        )
        rows = resp.json()
        return rows[0] if rows else NOT_FOUND

    async def delete(self, entity: str, record_id: Any) -> bool:
        resp = await self._request(
            "DELETE",
            entity,
            params={"id": f"eq.{record_id}"},
            headers={"Prefer": "return=representation"},
        )
        return bool(resp.json())

    async def _request(
        self,
        method: str,
        entity: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if self._client is None:
            raise StorageError("Storage client is not open")
        entity = _check_entity(entity)
        token = await self._token_provider() if self._token_provider else None
        all_headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token or self._api_key}",
            **(headers or {}),
        }
        try:
            resp = await self._client.request(
                method,
                f"{self._url}/rest/v1/{entity}",
                params=params,
                json=json,
                headers=all_headers,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            log.error(
                "storage.request_rejected",
                method=method,
                entity=entity,
                status=exc.response.status_code,
            )
            raise StorageError(
                f"{method} {entity} failed: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            log.error("storage.request_failed", method=method, entity=entity, error=str(exc))
            raise StorageError(f"{method} {entity} failed: {exc}") from exc
        return resp
