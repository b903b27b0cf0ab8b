"""FastAPI service exposing the entity backend over the /rpc envelope."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app import config
from entity_backend import BackendError, EntityBackend, build_query_filters
from entity_errors import ConflictError, EntityError, NotFoundError


app = FastAPI(title="HERA Universal Entities")
logger = logging.getLogger("hera")
logging.basicConfig(level=logging.INFO)

_BACKEND: EntityBackend | None = None


def get_backend() -> EntityBackend:
    global _BACKEND
    if _BACKEND is None:
        if config.use_db():
            from app.stores_db import DbEntityBackend, ensure_schema

            ensure_schema()
            _BACKEND = DbEntityBackend()
        else:
            from app.stores import MemoryEntityBackend

            _BACKEND = MemoryEntityBackend()
        logger.info("backend_selected backend=%s env=%s", type(_BACKEND).__name__, config.app_env())
    return _BACKEND


def set_backend(backend: EntityBackend | None) -> None:
    global _BACKEND
    _BACKEND = backend


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _backend_error_response(exc: BackendError) -> JSONResponse:
    detail = dict(exc.detail or {})
    if exc.sqlstate:
        detail["sqlstate"] = exc.sqlstate
    return _error_response(exc.code or "BACKEND_ERROR", exc.message, None, detail or None, status=exc.status or 500)


def _entity_error_response(exc: EntityError) -> JSONResponse:
    status = 400
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, ConflictError):
        status = 409
    return _error_response(exc.code, exc.message, exc.path, exc.detail, status=status)


async def _safe_json(request: Request) -> dict:
    try:
        return await request.json()
    except Exception:
        return {}


async def _dispatch(operation: str, fn: Callable[[], Awaitable[JSONResponse]]) -> JSONResponse:
    start = time.perf_counter()
    try:
        return await fn()
    except BackendError as exc:
        logger.info("rpc_rejected op=%s status=%s code=%s", operation, exc.status, exc.code)
        return _backend_error_response(exc)
    except EntityError as exc:
        logger.info("rpc_rejected op=%s code=%s", operation, exc.code)
        return _entity_error_response(exc)
    finally:
        logger.debug("rpc_done op=%s ms=%s", operation, round((time.perf_counter() - start) * 1000, 2))


def _require(body: dict, key: str, kind: type = str) -> Any:
    value = body.get(key)
    if not isinstance(value, kind) or (kind is str and not value.strip()):
        raise EntityError("INVALID_REQUEST", f"{key} is required", key)
    return value


def _optional(body: dict, key: str, kind: type, default: Any) -> Any:
    value = body.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise EntityError("INVALID_REQUEST", f"{key} has the wrong type", key)
    return value


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/ops/db_ping")
async def db_ping() -> JSONResponse:
    if not config.use_db():
        return _ok_response({"backend": "memory"})
    from app.db import fetch_one, get_conn

    start = time.perf_counter()
    with get_conn() as conn:
        fetch_one(conn, "select 1 as ok", query_name="ops.db_ping")
    elapsed_ms = (time.perf_counter() - start) * 1000
    return _ok_response({"backend": "postgres", "ms": round(elapsed_ms, 2)})


@app.post("/rpc/entities/create")
async def rpc_entity_create(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        entity = await get_backend().entity_create(
            _require(body, "entity_type"),
            _require(body, "entity_name"),
            _require(body, "smart_code"),
            _optional(body, "dynamic_fields", dict, {}),
            _optional(body, "relationships", dict, {}),
            entity_code=_optional(body, "entity_code", str, None),
            relationship_smart_codes=_optional(body, "relationship_smart_codes", dict, {}),
        )
        return _ok_response({"entity": entity.to_dict()}, status=201)

    return await _dispatch("entity_create", _run)


@app.post("/rpc/entities/update")
async def rpc_entity_update(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        entity = await get_backend().entity_update(_require(body, "entity_id"), _require(body, "patch", dict))
        return _ok_response({"entity": entity.to_dict()})

    return await _dispatch("entity_update", _run)


@app.post("/rpc/entities/delete")
async def rpc_entity_delete(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        result = await get_backend().entity_delete(
            _require(body, "entity_id"),
            hard_delete=_optional(body, "hard_delete", bool, False),
            cascade=_optional(body, "cascade", bool, True),
            reason=_optional(body, "reason", str, None),
        )
        return _ok_response({"result": result})

    return await _dispatch("entity_delete", _run)


@app.post("/rpc/entities/query")
async def rpc_entity_query(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        raw = _optional(body, "filters", dict, {})
        filters = build_query_filters(
            status=raw.get("status"),
            search=raw.get("search"),
            limit=raw.get("limit"),
            offset=raw.get("offset"),
            filter_rel=raw.get("filter_rel"),
        )
        entities = await get_backend().entity_query(_require(body, "entity_type"), filters)
        return _ok_response({"entities": [entity.to_dict() for entity in entities]})

    return await _dispatch("entity_query", _run)


@app.get("/rpc/entities/{entity_id}")
async def rpc_entity_get(entity_id: str) -> JSONResponse:
    async def _run() -> JSONResponse:
        entity = await get_backend().entity_get(entity_id)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", f"Entity {entity_id} not found", "entity_id", status=404)
        return _ok_response({"entity": entity.to_dict()})

    return await _dispatch("entity_get", _run)


@app.post("/rpc/transactions/create")
async def rpc_transaction_create(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        txn = await get_backend().transaction_create(_require(body, "payload", dict))
        return _ok_response({"transaction": txn.to_dict()}, status=201)

    return await _dispatch("transaction_create", _run)


@app.post("/rpc/transactions/update")
async def rpc_transaction_update(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        txn = await get_backend().transaction_update(_require(body, "transaction_id"), _require(body, "patch", dict))
        return _ok_response({"transaction": txn.to_dict()})

    return await _dispatch("transaction_update", _run)


@app.post("/rpc/transactions/delete")
async def rpc_transaction_delete(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        result = await get_backend().transaction_delete(_require(body, "transaction_id"))
        return _ok_response({"result": result})

    return await _dispatch("transaction_delete", _run)


@app.post("/rpc/transactions/query")
async def rpc_transaction_query(request: Request) -> JSONResponse:
    body = await _safe_json(request)

    async def _run() -> JSONResponse:
        txns = await get_backend().transaction_query(_optional(body, "filters", dict, {}))
        return _ok_response({"transactions": [txn.to_dict() for txn in txns]})

    return await _dispatch("transaction_query", _run)


@app.get("/rpc/transactions/{transaction_id}")
async def rpc_transaction_get(transaction_id: str) -> JSONResponse:
    async def _run() -> JSONResponse:
        txn = await get_backend().transaction_get(transaction_id)
        if txn is None:
            return _error_response("TRANSACTION_NOT_FOUND", f"Transaction {transaction_id} not found", "transaction_id", status=404)
        return _ok_response({"transaction": txn.to_dict()})

    return await _dispatch("transaction_get", _run)
