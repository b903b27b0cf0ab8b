"""Postgres-backed entity backend (core_entities / core_dynamic_data / core_relationships)."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List

import anyio
import psycopg2
import psycopg2.extras

from hera.field_types import format_timestamp, parse_timestamp

from app.db import execute, fetch_all, fetch_one, get_conn
from entity_backend import FOREIGN_KEY_VIOLATION, BackendError, EntityBackend
from entity_model import STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_DELETED, Entity, Transaction


logger = logging.getLogger("hera.db")

SCHEMA_SQL = """
create table if not exists core_entities (
    id uuid primary key,
    entity_type text not null,
    entity_name text not null,
    entity_code text,
    smart_code text not null,
    status text not null default 'active',
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);
create index if not exists core_entities_type_idx on core_entities (entity_type, status, updated_at desc);

create table if not exists core_dynamic_data (
    entity_id uuid not null references core_entities(id) on delete cascade,
    field_name text not null,
    field_type text not null,
    smart_code text not null,
    field_value_text text,
    field_value_number numeric,
    field_value_boolean boolean,
    field_value_date timestamptz,
    field_value_json jsonb,
    updated_at timestamptz not null default now(),
    primary key (entity_id, field_name)
);

create table if not exists core_relationships (
    id uuid primary key,
    from_entity_id uuid not null references core_entities(id) on delete cascade,
    to_entity_id uuid not null references core_entities(id),
    relationship_type text not null,
    smart_code text,
    created_at timestamptz not null default now(),
    unique (from_entity_id, relationship_type, to_entity_id)
);

create table if not exists universal_transactions (
    id uuid primary key,
    transaction_type text not null,
    transaction_date timestamptz not null,
    total_amount numeric not null default 0,
    smart_code text not null,
    status text not null default 'draft',
    source_entity_id uuid references core_entities(id),
    target_entity_id uuid references core_entities(id),
    metadata jsonb not null default '{}'::jsonb,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);

create table if not exists universal_transaction_lines (
    transaction_id uuid not null references universal_transactions(id) on delete cascade,
    line_number integer not null,
    line_type text not null,
    entity_id uuid references core_entities(id),
    quantity numeric not null default 1,
    unit_amount numeric not null default 0,
    line_amount numeric not null default 0,
    smart_code text,
    primary key (transaction_id, line_number)
);
"""

_VALUE_COLUMNS = {
    "text": "field_value_text",
    "number": "field_value_number",
    "boolean": "field_value_boolean",
    "date": "field_value_date",
    "json": "field_value_json",
}


def ensure_schema() -> None:
    with get_conn() as conn:
        execute(conn, SCHEMA_SQL, query_name="schema.ensure")


def _to_iso(value):
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return format_timestamp(parse_timestamp(value))
    return value


def _plain_number(value):
    if value is None:
        return None
    number = float(value)
    return int(number) if number.is_integer() else number


def _db_error(exc: psycopg2.Error, operation: str) -> BackendError:
    diag = getattr(exc, "diag", None)
    detail = {
        "constraint": getattr(diag, "constraint_name", None) if diag else None,
        "table": getattr(diag, "table_name", None) if diag else None,
        "column": getattr(diag, "column_name", None) if diag else None,
        "sqlstate": exc.pgcode,
    }
    message = (getattr(diag, "message_primary", None) if diag else None) or str(exc).strip()
    if exc.pgcode == FOREIGN_KEY_VIOLATION and operation == "entity_delete":
        return BackendError(message, status=409, code="REFERENTIAL_CONFLICT", sqlstate=exc.pgcode, detail=detail)
    if isinstance(exc, psycopg2.IntegrityError):
        return BackendError(message, status=422, code="DB_CONSTRAINT", sqlstate=exc.pgcode, detail=detail)
    if isinstance(exc, psycopg2.DataError):
        return BackendError(message, status=422, code="DB_INVALID_INPUT", sqlstate=exc.pgcode, detail=detail)
    # connection level failures keep no status so they classify as transport
    return BackendError(message, status=None, code="DB_ERROR", sqlstate=exc.pgcode, detail=detail)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _require_id(kind: str, value: Any) -> None:
    if not _is_uuid(value):
        raise BackendError(f"{kind} {value} not found", status=404, code=f"{kind.upper()}_NOT_FOUND")


def _field_row_value(row: dict) -> Any:
    field_type = row.get("field_type") or "text"
    value = row.get(_VALUE_COLUMNS.get(field_type, "field_value_text"))
    if field_type == "number":
        return _plain_number(value)
    if field_type == "date":
        return _to_iso(value)
    if field_type == "json" and isinstance(value, str):
        return json.loads(value)
    return value


def _load_entity(conn, entity_id: str) -> Entity | None:
    header = fetch_one(
        conn,
        "select * from core_entities where id = %s",
        [entity_id],
        query_name="entity.get",
    )
    if not header:
        return None
    fields = fetch_all(
        conn,
        "select * from core_dynamic_data where entity_id = %s order by field_name",
        [entity_id],
        query_name="entity.dynamic_data",
    )
    edges = fetch_all(
        conn,
        """
        select r.relationship_type, r.from_entity_id, r.to_entity_id, r.smart_code,
               t.entity_type as to_entity_type, t.entity_name as to_entity_name
        from core_relationships r
        left join core_entities t on t.id = r.to_entity_id
        where r.from_entity_id = %s
        order by r.created_at, r.id
        """,
        [entity_id],
        query_name="entity.relationships",
    )
    relationships: Dict[str, List[dict]] = {}
    for edge in edges:
        to_id = str(edge["to_entity_id"])
        relationships.setdefault(edge["relationship_type"], []).append(
            {
                "from_entity_id": str(edge["from_entity_id"]),
                "to_entity_id": to_id,
                "smart_code": edge.get("smart_code"),
                "to_entity": {"id": to_id, "entity_type": edge["to_entity_type"], "entity_name": edge["to_entity_name"]}
                if edge.get("to_entity_type")
                else None,
            }
        )
    data = {
        "id": str(header["id"]),
        "entity_type": header["entity_type"],
        "entity_name": header["entity_name"],
        "entity_code": header.get("entity_code"),
        "smart_code": header["smart_code"],
        "status": header["status"],
        "created_at": _to_iso(header.get("created_at")),
        "updated_at": _to_iso(header.get("updated_at")),
        "dynamic_fields": {
            row["field_name"]: {"value": _field_row_value(row), "type": row["field_type"], "smart_code": row["smart_code"]}
            for row in fields
        },
        "relationships": relationships,
    }
    return Entity.from_dict(data)


def _write_fields(conn, entity_id: str, fields: Dict[str, dict]) -> None:
    for name, item in fields.items():
        field_type = item.get("type") or "text"
        columns = {col: None for col in _VALUE_COLUMNS.values()}
        value = item.get("value")
        if field_type == "json" and value is not None:
            value = psycopg2.extras.Json(value)
        columns[_VALUE_COLUMNS.get(field_type, "field_value_text")] = value
        execute(
            conn,
            """
            insert into core_dynamic_data (entity_id, field_name, field_type, smart_code,
                field_value_text, field_value_number, field_value_boolean, field_value_date, field_value_json, updated_at)
            values (%s, %s, %s, %s, %s, %s, %s, %s, %s, now())
            on conflict (entity_id, field_name) do update set
                field_type = excluded.field_type,
                smart_code = excluded.smart_code,
                field_value_text = excluded.field_value_text,
                field_value_number = excluded.field_value_number,
                field_value_boolean = excluded.field_value_boolean,
                field_value_date = excluded.field_value_date,
                field_value_json = excluded.field_value_json,
                updated_at = now()
            """,
            [
                entity_id,
                name,
                field_type,
                item.get("smart_code") or "",
                columns["field_value_text"],
                columns["field_value_number"],
                columns["field_value_boolean"],
                columns["field_value_date"],
                columns["field_value_json"],
            ],
            query_name="entity.dynamic_upsert",
        )


def _write_relationships(
    conn, entity_id: str, relationships: Dict[str, List[str]], smart_codes: Dict[str, str] | None = None
) -> None:
    for rel_type, targets in relationships.items():
        existing = fetch_all(
            conn,
            "select to_entity_id, smart_code from core_relationships where from_entity_id = %s and relationship_type = %s",
            [entity_id, rel_type],
            query_name="entity.relationships_current",
        )
        smart_code = (smart_codes or {}).get(rel_type) or (existing[0]["smart_code"] if existing else None)
        execute(
            conn,
            "delete from core_relationships where from_entity_id = %s and relationship_type = %s and not (to_entity_id::text = any(%s))",
            [entity_id, rel_type, list(targets)],
            query_name="entity.relationships_prune",
        )
        for target in targets:
            execute(
                conn,
                """
                insert into core_relationships (id, from_entity_id, to_entity_id, relationship_type, smart_code)
                values (%s, %s, %s, %s, %s)
                on conflict (from_entity_id, relationship_type, to_entity_id) do nothing
                """,
                [str(uuid.uuid4()), entity_id, target, rel_type, smart_code],
                query_name="entity.relationships_insert",
            )


def _load_transaction(conn, transaction_id: str) -> Transaction | None:
    header = fetch_one(
        conn,
        "select * from universal_transactions where id = %s",
        [transaction_id],
        query_name="transaction.get",
    )
    if not header:
        return None
    lines = fetch_all(
        conn,
        "select * from universal_transaction_lines where transaction_id = %s order by line_number",
        [transaction_id],
        query_name="transaction.lines",
    )
    metadata = header.get("metadata") or {}
    data = {
        "id": str(header["id"]),
        "transaction_type": header["transaction_type"],
        "transaction_date": _to_iso(header["transaction_date"]),
        "total_amount": _plain_number(header["total_amount"]),
        "smart_code": header["smart_code"],
        "status": header["status"],
        "source_entity_id": str(header["source_entity_id"]) if header.get("source_entity_id") else None,
        "target_entity_id": str(header["target_entity_id"]) if header.get("target_entity_id") else None,
        "metadata": json.loads(metadata) if isinstance(metadata, str) else metadata,
        "created_at": _to_iso(header.get("created_at")),
        "updated_at": _to_iso(header.get("updated_at")),
        "lines": [
            {
                "line_number": line["line_number"],
                "line_type": line["line_type"],
                "entity_id": str(line["entity_id"]) if line.get("entity_id") else None,
                "quantity": _plain_number(line["quantity"]),
                "unit_amount": _plain_number(line["unit_amount"]),
                "line_amount": _plain_number(line["line_amount"]),
                "smart_code": line.get("smart_code"),
            }
            for line in lines
        ],
    }
    return Transaction.from_dict(data)


def _write_lines(conn, transaction_id: str, lines: List[dict]) -> None:
    execute(
        conn,
        "delete from universal_transaction_lines where transaction_id = %s",
        [transaction_id],
        query_name="transaction.lines_clear",
    )
    for idx, line in enumerate(lines):
        execute(
            conn,
            """
            insert into universal_transaction_lines
                (transaction_id, line_number, line_type, entity_id, quantity, unit_amount, line_amount, smart_code)
            values (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            [
                transaction_id,
                idx + 1,
                line.get("line_type") or "item",
                line.get("entity_id"),
                line.get("quantity", 1),
                line.get("unit_amount", 0),
                line.get("line_amount", 0),
                line.get("smart_code"),
            ],
            query_name="transaction.line_insert",
        )


class DbEntityBackend(EntityBackend):
    """Each call runs in one connection transaction on a worker thread."""

    def __init__(self, conn_factory: Callable[[], Any] = get_conn) -> None:
        self._conn_factory = conn_factory

    async def _run(self, operation: str, fn: Callable[[Any], Any]) -> Any:
        def _work():
            try:
                with self._conn_factory() as conn:
                    return fn(conn)
            except psycopg2.Error as exc:
                logger.warning("db_backend_error op=%s sqlstate=%s error=%s", operation, exc.pgcode, exc)
                raise _db_error(exc, operation) from exc

        return await anyio.to_thread.run_sync(_work)

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
        entity_id = str(uuid.uuid4())

        def _create(conn):
            execute(
                conn,
                """
                insert into core_entities (id, entity_type, entity_name, entity_code, smart_code, status)
                values (%s, %s, %s, %s, %s, 'active')
                """,
                [entity_id, entity_type, entity_name, entity_code, smart_code],
                query_name="entity.insert",
            )
            _write_fields(conn, entity_id, fields or {})
            _write_relationships(conn, entity_id, relationships or {}, relationship_smart_codes)
            return _load_entity(conn, entity_id)

        return await self._run("entity_create", _create)

    async def entity_update(self, entity_id: str, patch: dict) -> Entity:
        _require_id("entity", entity_id)

        def _update(conn):
            row = fetch_one(
                conn,
                "select status from core_entities where id = %s for update",
                [entity_id],
                query_name="entity.lock",
            )
            if not row:
                raise BackendError(f"entity {entity_id} not found", status=404, code="ENTITY_NOT_FOUND")
            if row["status"] == STATUS_DELETED:
                raise BackendError(f"entity {entity_id} is deleted", status=422, code="ENTITY_DELETED")
            sets = ["updated_at = now()"]
            params: List[Any] = []
            for key in ("entity_name", "entity_code", "status"):
                if patch.get(key) is not None:
                    sets.append(f"{key} = %s")
                    params.append(patch[key])
            execute(
                conn,
                f"update core_entities set {', '.join(sets)} where id = %s",
                params + [entity_id],
                query_name="entity.update",
            )
            _write_fields(conn, entity_id, patch.get("dynamic_fields") or {})
            _write_relationships(conn, entity_id, patch.get("relationships") or {}, patch.get("relationship_smart_codes"))
            return _load_entity(conn, entity_id)

        return await self._run("entity_update", _update)

    async def entity_delete(self, entity_id: str, hard_delete: bool, cascade: bool, reason: str | None) -> dict:
        _require_id("entity", entity_id)
        if not hard_delete:
            await self.entity_update(entity_id, {"status": STATUS_ARCHIVED})
            return {"deleted": False, "archived": True}

        def _delete(conn):
            row = fetch_one(conn, "select id from core_entities where id = %s", [entity_id], query_name="entity.exists")
            if not row:
                raise BackendError(f"entity {entity_id} not found", status=404, code="ENTITY_NOT_FOUND")
            if not cascade:
                owned = fetch_one(
                    conn,
                    """
                    select (select count(*) from core_dynamic_data where entity_id = %s)
                         + (select count(*) from core_relationships where from_entity_id = %s) as n
                    """,
                    [entity_id, entity_id],
                    query_name="entity.owned_count",
                )
                if owned and owned["n"]:
                    raise BackendError(
                        f"entity {entity_id} still owns dynamic data or relationships",
                        status=409,
                        code="REFERENTIAL_CONFLICT",
                        sqlstate=FOREIGN_KEY_VIOLATION,
                    )
            # edges pointing here from tombstoned entities no longer count as references
            execute(
                conn,
                """
                delete from core_relationships r
                using core_entities src
                where r.to_entity_id = %s and src.id = r.from_entity_id and src.status = %s
                """,
                [entity_id, STATUS_DELETED],
                query_name="entity.tombstone_edges",
            )
            execute(conn, "delete from core_entities where id = %s", [entity_id], query_name="entity.delete")
            return {"deleted": True, "archived": False, "reason": reason}

        return await self._run("entity_delete", _delete)

    async def entity_get(self, entity_id: str) -> Entity | None:
        if not _is_uuid(entity_id):
            return None
        return await self._run("entity_get", lambda conn: _load_entity(conn, entity_id))

    async def entity_query(self, entity_type: str, filters: dict) -> List[Entity]:
        clauses = ["e.entity_type = %s"]
        params: List[Any] = [entity_type]
        clauses.append("e.status = %s")
        params.append(filters.get("status") or STATUS_ACTIVE)
        if filters.get("search"):
            clauses.append("(e.entity_name ilike %s or coalesce(e.entity_code, '') ilike %s)")
            pattern = f"%{filters['search']}%"
            params.extend([pattern, pattern])
        for rel_type, target in (filters.get("filter_rel") or {}).items():
            clauses.append(
                "exists (select 1 from core_relationships r where r.from_entity_id = e.id"
                " and r.relationship_type = %s and r.to_entity_id::text = %s)"
            )
            params.extend([rel_type, target])
        sql = f"select e.id from core_entities e where {' and '.join(clauses)} order by e.updated_at desc, e.id"
        if filters.get("limit") is not None:
            sql += " limit %s"
            params.append(filters["limit"])
        if filters.get("offset"):
            sql += " offset %s"
            params.append(filters["offset"])

        def _query(conn):
            rows = fetch_all(conn, sql, params, query_name="entity.query")
            return [_load_entity(conn, str(row["id"])) for row in rows]

        return await self._run("entity_query", _query)

    async def transaction_create(self, payload: dict) -> Transaction:
        transaction_id = str(uuid.uuid4())

        def _create(conn):
            execute(
                conn,
                """
                insert into universal_transactions (id, transaction_type, transaction_date, total_amount,
                    smart_code, status, source_entity_id, target_entity_id, metadata)
                values (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                [
                    transaction_id,
                    payload["transaction_type"],
                    payload["transaction_date"],
                    payload.get("total_amount", 0),
                    payload["smart_code"],
                    payload.get("status") or "draft",
                    payload.get("source_entity_id"),
                    payload.get("target_entity_id"),
                    psycopg2.extras.Json(payload.get("metadata") or {}),
                ],
                query_name="transaction.insert",
            )
            _write_lines(conn, transaction_id, payload.get("lines") or [])
            return _load_transaction(conn, transaction_id)

        return await self._run("transaction_create", _create)

    async def transaction_update(self, transaction_id: str, patch: dict) -> Transaction:
        _require_id("transaction", transaction_id)

        def _update(conn):
            row = fetch_one(
                conn,
                "select id from universal_transactions where id = %s for update",
                [transaction_id],
                query_name="transaction.lock",
            )
            if not row:
                raise BackendError(f"transaction {transaction_id} not found", status=404, code="TRANSACTION_NOT_FOUND")
            sets = ["updated_at = now()"]
            params: List[Any] = []
            for key in ("transaction_date", "total_amount", "status", "source_entity_id", "target_entity_id"):
                if key in patch:
                    sets.append(f"{key} = %s")
                    params.append(patch[key])
            if "metadata" in patch:
                sets.append("metadata = %s")
                params.append(psycopg2.extras.Json(patch["metadata"] or {}))
            execute(
                conn,
                f"update universal_transactions set {', '.join(sets)} where id = %s",
                params + [transaction_id],
                query_name="transaction.update",
            )
            if "lines" in patch:
                _write_lines(conn, transaction_id, patch["lines"] or [])
            return _load_transaction(conn, transaction_id)

        return await self._run("transaction_update", _update)

    async def transaction_delete(self, transaction_id: str) -> dict:
        _require_id("transaction", transaction_id)

        def _delete(conn):
            count = execute(
                conn,
                "delete from universal_transactions where id = %s",
                [transaction_id],
                query_name="transaction.delete",
            )
            if not count:
                raise BackendError(f"transaction {transaction_id} not found", status=404, code="TRANSACTION_NOT_FOUND")
            return {"deleted": True}

        return await self._run("transaction_delete", _delete)

    async def transaction_get(self, transaction_id: str) -> Transaction | None:
        if not _is_uuid(transaction_id):
            return None
        return await self._run("transaction_get", lambda conn: _load_transaction(conn, transaction_id))

    async def transaction_query(self, filters: dict) -> List[Transaction]:
        clauses = ["true"]
        params: List[Any] = []
        for key in ("transaction_type", "status", "source_entity_id", "target_entity_id"):
            if filters.get(key) is not None:
                clauses.append(f"{key}::text = %s")
                params.append(filters[key])
        sql = f"select id from universal_transactions where {' and '.join(clauses)} order by created_at desc, id"
        if filters.get("limit") is not None:
            sql += " limit %s"
            params.append(filters["limit"])
        if filters.get("offset"):
            sql += " offset %s"
            params.append(filters["offset"])

        def _query(conn):
            rows = fetch_all(conn, sql, params, query_name="transaction.query")
            return [_load_transaction(conn, str(row["id"])) for row in rows]

        return await self._run("transaction_query", _query)
