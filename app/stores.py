"""In-memory entity backend with atomic multi-part writes."""

from __future__ import annotations

import copy
import itertools
import uuid
from datetime import datetime, timezone
from typing import Dict, List

from entity_backend import FOREIGN_KEY_VIOLATION, BackendError, EntityBackend
from entity_model import STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_DELETED, ENTITY_STATUSES, Entity, RelationshipInstance, Transaction
from relationship_model import replace_edges


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _not_found(kind: str, record_id: str) -> BackendError:
    return BackendError(f"{kind} {record_id} not found", status=404, code=f"{kind.upper()}_NOT_FOUND")


class MemoryTx:
    """Snapshot of every collection; rollback restores it."""

    def __init__(self, store: "MemoryEntityBackend") -> None:
        self._store = store
        self._snapshot = store._snapshot()
        self.committed = False
        self.rolled_back = False

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self._store._restore(self._snapshot)
        self.rolled_back = True


class MemoryEntityBackend(EntityBackend):
    """Five logical collections: entities, dynamic data, relationships,
    transactions and transaction lines, joined by id like the Postgres layout.
    """

    def __init__(self) -> None:
        self._entities: Dict[str, dict] = {}
        self._dynamic: Dict[str, Dict[str, dict]] = {}
        self._relationships: List[dict] = []
        self._transactions: Dict[str, dict] = {}
        self._lines: Dict[str, List[dict]] = {}
        self._seq = itertools.count(1)

    def _snapshot(self) -> tuple:
        return copy.deepcopy((self._entities, self._dynamic, self._relationships, self._transactions, self._lines))

    def _restore(self, snapshot: tuple) -> None:
        self._entities, self._dynamic, self._relationships, self._transactions, self._lines = snapshot

    def _with_tx(self, fn):
        tx = MemoryTx(self)
        try:
            result = fn(tx)
            tx.commit()
            return result
        except Exception:
            tx.rollback()
            raise

    def _require_entity(self, entity_id: str, path: str) -> dict:
        row = self._entities.get(entity_id)
        if row is None:
            raise BackendError(
                f"{path} references missing entity {entity_id}",
                status=422,
                code="REFERENCE_NOT_FOUND",
                detail={"path": path, "entity_id": entity_id},
            )
        return row

    def _edges_from(self, entity_id: str, rel_type: str | None = None) -> List[dict]:
        return [
            e
            for e in self._relationships
            if e["from_entity_id"] == entity_id and (rel_type is None or e["relationship_type"] == rel_type)
        ]

    def _write_fields(self, entity_id: str, fields: Dict[str, dict]) -> None:
        bucket = self._dynamic.setdefault(entity_id, {})
        for name, item in fields.items():
            bucket[name] = {
                "value": copy.deepcopy(item.get("value")),
                "type": item.get("type") or "text",
                "smart_code": item.get("smart_code") or "",
            }

    def _write_relationships(
        self, entity_id: str, relationships: Dict[str, List[str]], smart_codes: Dict[str, str] | None = None
    ) -> None:
        for rel_type, targets in relationships.items():
            for idx, target in enumerate(targets):
                self._require_entity(target, f"relationships.{rel_type}[{idx}]")
            current = [
                RelationshipInstance(e["from_entity_id"], rel_type, e["to_entity_id"], e.get("smart_code"))
                for e in self._edges_from(entity_id, rel_type)
            ]
            smart_code = (smart_codes or {}).get(rel_type) or (current[0].smart_code if current else None)
            kept = replace_edges(current, entity_id, rel_type, list(targets), smart_code)
            self._relationships = [
                e
                for e in self._relationships
                if not (e["from_entity_id"] == entity_id and e["relationship_type"] == rel_type)
            ]
            for rel in kept:
                self._relationships.append(
                    {
                        "id": str(uuid.uuid4()),
                        "from_entity_id": entity_id,
                        "to_entity_id": rel.to_entity_id,
                        "relationship_type": rel_type,
                        "smart_code": rel.smart_code,
                        "created_at": _now(),
                    }
                )

    def _materialize(self, entity_id: str) -> Entity:
        row = self._entities[entity_id]
        relationships: Dict[str, List[dict]] = {}
        for edge in self._edges_from(entity_id):
            target = self._entities.get(edge["to_entity_id"])
            snapshot = (
                {"id": target["id"], "entity_type": target["entity_type"], "entity_name": target["entity_name"]}
                if target
                else None
            )
            relationships.setdefault(edge["relationship_type"], []).append(
                {
                    "from_entity_id": entity_id,
                    "to_entity_id": edge["to_entity_id"],
                    "smart_code": edge.get("smart_code"),
                    "to_entity": snapshot,
                }
            )
        data = {**copy.deepcopy(row), "dynamic_fields": copy.deepcopy(self._dynamic.get(entity_id, {})), "relationships": relationships}
        return Entity.from_dict(data)

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
        def _create(tx: MemoryTx) -> str:
            entity_id = str(uuid.uuid4())
            now = _now()
            self._entities[entity_id] = {
                "id": entity_id,
                "entity_type": entity_type,
                "entity_name": entity_name,
                "entity_code": entity_code,
                "smart_code": smart_code,
                "status": "active",
                "created_at": now,
                "updated_at": now,
                "_seq": next(self._seq),
            }
            self._write_fields(entity_id, fields or {})
            self._write_relationships(entity_id, relationships or {}, relationship_smart_codes)
            return entity_id

        return self._materialize(self._with_tx(_create))

    async def entity_update(self, entity_id: str, patch: dict) -> Entity:
        row = self._entities.get(entity_id)
        if row is None:
            raise _not_found("entity", entity_id)
        if row["status"] == STATUS_DELETED:
            raise BackendError(f"entity {entity_id} is deleted", status=422, code="ENTITY_DELETED")
        status = patch.get("status")
        if status is not None and status not in ENTITY_STATUSES:
            raise BackendError(f"invalid status {status!r}", status=422, code="INVALID_STATUS")

        def _update(tx: MemoryTx) -> None:
            header = self._entities[entity_id]
            for key in ("entity_name", "entity_code", "status"):
                if patch.get(key) is not None:
                    header[key] = patch[key]
            header["updated_at"] = _now()
            header["_seq"] = next(self._seq)
            self._write_fields(entity_id, patch.get("dynamic_fields") or {})
            self._write_relationships(entity_id, patch.get("relationships") or {}, patch.get("relationship_smart_codes"))

        self._with_tx(_update)
        return self._materialize(entity_id)

    def _references(self, entity_id: str) -> List[str]:
        refs = []
        for edge in self._relationships:
            if edge["to_entity_id"] != entity_id or edge["from_entity_id"] == entity_id:
                continue
            source = self._entities.get(edge["from_entity_id"])
            if source and source["status"] != STATUS_DELETED:
                refs.append(f"relationship:{edge['relationship_type']}:{edge['from_entity_id']}")
        for txn_id, txn in self._transactions.items():
            if entity_id in (txn.get("source_entity_id"), txn.get("target_entity_id")):
                refs.append(f"transaction:{txn_id}")
                continue
            if any(line.get("entity_id") == entity_id for line in self._lines.get(txn_id, [])):
                refs.append(f"transaction_line:{txn_id}")
        return refs

    async def entity_delete(self, entity_id: str, hard_delete: bool, cascade: bool, reason: str | None) -> dict:
        row = self._entities.get(entity_id)
        if row is None:
            raise _not_found("entity", entity_id)
        if not hard_delete:
            await self.entity_update(entity_id, {"status": STATUS_ARCHIVED})
            return {"deleted": False, "archived": True}
        refs = self._references(entity_id)
        owned = bool(self._dynamic.get(entity_id)) or bool(self._edges_from(entity_id))
        if refs or (owned and not cascade):
            raise BackendError(
                f"delete on entity {entity_id} violates foreign key constraint: still referenced",
                status=409,
                code="REFERENTIAL_CONFLICT",
                sqlstate=FOREIGN_KEY_VIOLATION,
                detail={"references": refs[:20], "cascade": cascade},
            )

        def _delete(tx: MemoryTx) -> None:
            self._entities.pop(entity_id, None)
            self._dynamic.pop(entity_id, None)
            # edges owned by the entity, and edges pointing at it from tombstones
            self._relationships = [
                e for e in self._relationships if e["from_entity_id"] != entity_id and e["to_entity_id"] != entity_id
            ]

        self._with_tx(_delete)
        return {"deleted": True, "archived": False, "reason": reason}

    async def entity_get(self, entity_id: str) -> Entity | None:
        if entity_id not in self._entities:
            return None
        return self._materialize(entity_id)

    async def entity_query(self, entity_type: str, filters: dict) -> List[Entity]:
        status = filters.get("status")
        search = (filters.get("search") or "").lower()
        rel_filters = filters.get("filter_rel") or {}
        rows = []
        for row in self._entities.values():
            if row["entity_type"] != entity_type:
                continue
            if row["status"] != (status or STATUS_ACTIVE):
                continue
            if search and search not in f"{row['entity_name']} {row.get('entity_code') or ''}".lower():
                continue
            if any(
                not any(e["to_entity_id"] == target for e in self._edges_from(row["id"], rel_type))
                for rel_type, target in rel_filters.items()
            ):
                continue
            rows.append(row)
        rows.sort(key=lambda r: r["_seq"], reverse=True)
        offset = filters.get("offset") or 0
        limit = filters.get("limit")
        rows = rows[offset : offset + limit] if limit is not None else rows[offset:]
        return [self._materialize(r["id"]) for r in rows]

    def _materialize_txn(self, transaction_id: str) -> Transaction:
        data = copy.deepcopy(self._transactions[transaction_id])
        data["lines"] = copy.deepcopy(self._lines.get(transaction_id, []))
        return Transaction.from_dict(data)

    def _write_lines(self, transaction_id: str, lines: List[dict]) -> None:
        rows = []
        for idx, line in enumerate(lines):
            if line.get("entity_id"):
                self._require_entity(line["entity_id"], f"lines[{idx}].entity_id")
            rows.append({**copy.deepcopy(line), "transaction_id": transaction_id, "line_number": idx + 1})
        self._lines[transaction_id] = rows

    def _check_parties(self, payload: dict) -> None:
        for key in ("source_entity_id", "target_entity_id"):
            if payload.get(key):
                self._require_entity(payload[key], key)

    async def transaction_create(self, payload: dict) -> Transaction:
        def _create(tx: MemoryTx) -> str:
            self._check_parties(payload)
            txn_id = str(uuid.uuid4())
            now = _now()
            header = {k: copy.deepcopy(v) for k, v in payload.items() if k != "lines"}
            self._transactions[txn_id] = {**header, "id": txn_id, "created_at": now, "updated_at": now, "_seq": next(self._seq)}
            self._write_lines(txn_id, payload.get("lines") or [])
            return txn_id

        return self._materialize_txn(self._with_tx(_create))

    async def transaction_update(self, transaction_id: str, patch: dict) -> Transaction:
        if transaction_id not in self._transactions:
            raise _not_found("transaction", transaction_id)

        def _update(tx: MemoryTx) -> None:
            self._check_parties(patch)
            header = self._transactions[transaction_id]
            for key, value in patch.items():
                if key != "lines":
                    header[key] = copy.deepcopy(value)
            header["updated_at"] = _now()
            if "lines" in patch:
                self._write_lines(transaction_id, patch["lines"] or [])

        self._with_tx(_update)
        return self._materialize_txn(transaction_id)

    async def transaction_delete(self, transaction_id: str) -> dict:
        if transaction_id not in self._transactions:
            raise _not_found("transaction", transaction_id)
        self._transactions.pop(transaction_id, None)
        self._lines.pop(transaction_id, None)
        return {"deleted": True}

    async def transaction_get(self, transaction_id: str) -> Transaction | None:
        if transaction_id not in self._transactions:
            return None
        return self._materialize_txn(transaction_id)

    async def transaction_query(self, filters: dict) -> List[Transaction]:
        rows = []
        for row in self._transactions.values():
            if any(
                filters.get(key) is not None and row.get(key) != filters[key]
                for key in ("transaction_type", "status", "source_entity_id", "target_entity_id")
            ):
                continue
            rows.append(row)
        rows.sort(key=lambda r: r["_seq"], reverse=True)
        offset = filters.get("offset") or 0
        limit = filters.get("limit")
        rows = rows[offset : offset + limit] if limit is not None else rows[offset:]
        return [self._materialize_txn(r["id"]) for r in rows]
