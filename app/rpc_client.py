"""HTTP backend: talks to the /rpc endpoints of ``app.main``."""

from __future__ import annotations

import logging
from typing import Dict, List

import httpx

from app import config
from entity_backend import BackendError, EntityBackend
from entity_errors import TransportError
from entity_model import Entity, Transaction


logger = logging.getLogger("hera.rpc")


class HttpEntityBackend(EntityBackend):
    def __init__(self, base_url: str | None = None, timeout: float | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = (base_url or config.rpc_url()).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else config.rpc_timeout(),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpEntityBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, body: dict | None = None, allow_missing: bool = False) -> dict | None:
        try:
            resp = await self._client.request(method, path, json=body)
        except httpx.HTTPError as exc:
            logger.warning("rpc_transport_error method=%s path=%s error=%s", method, path, exc)
            raise TransportError(f"{method} {path} failed: {exc}", {"path": path}) from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.status_code == 404 and allow_missing:
            return None
        if resp.status_code >= 400 or data.get("ok") is False:
            errors = data.get("errors") or [{}]
            first = errors[0] if isinstance(errors[0], dict) else {}
            detail = first.get("detail") if isinstance(first.get("detail"), dict) else {}
            logger.info("rpc_error method=%s path=%s status=%s code=%s", method, path, resp.status_code, first.get("code"))
            raise BackendError(
                first.get("message") or f"{method} {path} returned {resp.status_code}",
                status=resp.status_code,
                code=first.get("code"),
                sqlstate=detail.get("sqlstate"),
                detail=detail,
            )
        return data

    async def entity_create(
        self,
        entity_type: str,
        entity_name: str,
        smart_code: str,
        fields: Dict[str, dict],
        relationships: Dict[str, List[str]],
        entity_code: str | None = None,
        relationship_smart_codes: Dict[str, str] | None = None,
    ) -> Entity:
        data = await self._request(
            "POST",
            "/rpc/entities/create",
            {
                "entity_type": entity_type,
                "entity_name": entity_name,
                "smart_code": smart_code,
                "dynamic_fields": fields,
                "relationships": relationships,
                "entity_code": entity_code,
                "relationship_smart_codes": relationship_smart_codes or {},
            },
        )
        return Entity.from_dict(data["entity"])

    async def entity_update(self, entity_id: str, patch: dict) -> Entity:
        data = await self._request("POST", "/rpc/entities/update", {"entity_id": entity_id, "patch": patch})
        return Entity.from_dict(data["entity"])

    async def entity_delete(self, entity_id: str, hard_delete: bool, cascade: bool, reason: str | None) -> dict:
        data = await self._request(
            "POST",
            "/rpc/entities/delete",
            {"entity_id": entity_id, "hard_delete": hard_delete, "cascade": cascade, "reason": reason},
        )
        return data.get("result") or {}

    async def entity_query(self, entity_type: str, filters: dict) -> List[Entity]:
        data = await self._request("POST", "/rpc/entities/query", {"entity_type": entity_type, "filters": filters})
        return [Entity.from_dict(item) for item in data.get("entities") or []]

    async def entity_get(self, entity_id: str) -> Entity | None:
        data = await self._request("GET", f"/rpc/entities/{entity_id}", allow_missing=True)
        return Entity.from_dict(data["entity"]) if data else None

    async def transaction_create(self, payload: dict) -> Transaction:
        data = await self._request("POST", "/rpc/transactions/create", {"payload": payload})
        return Transaction.from_dict(data["transaction"])

    async def transaction_update(self, transaction_id: str, patch: dict) -> Transaction:
        data = await self._request("POST", "/rpc/transactions/update", {"transaction_id": transaction_id, "patch": patch})
        return Transaction.from_dict(data["transaction"])

    async def transaction_delete(self, transaction_id: str) -> dict:
        data = await self._request("POST", "/rpc/transactions/delete", {"transaction_id": transaction_id})
        return data.get("result") or {}

    async def transaction_get(self, transaction_id: str) -> Transaction | None:
        data = await self._request("GET", f"/rpc/transactions/{transaction_id}", allow_missing=True)
        return Transaction.from_dict(data["transaction"]) if data else None

    async def transaction_query(self, filters: dict) -> List[Transaction]:
        data = await self._request("POST", "/rpc/transactions/query", {"filters": filters})
        return [Transaction.from_dict(item) for item in data.get("transactions") or []]
