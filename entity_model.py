"""Entity, dynamic field, relationship and transaction records."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List


STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"
STATUS_DELETED = "deleted"
ENTITY_STATUSES = (STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_DELETED)

TXN_DRAFT = "draft"
TXN_FINALIZED = "finalized"
TXN_VOIDED = "voided"
TXN_REVERSED = "reversed"
TRANSACTION_STATUSES = (TXN_DRAFT, TXN_FINALIZED, TXN_VOIDED, TXN_REVERSED)


@dataclass
class DynamicFieldValue:
    name: str
    value: Any
    type: str
    smart_code: str

    def to_dict(self) -> dict:
        return {"value": copy.deepcopy(self.value), "type": self.type, "smart_code": self.smart_code}


@dataclass
class RelationshipInstance:
    from_entity_id: str
    relationship_type: str
    to_entity_id: str
    smart_code: str | None = None
    to_entity: dict | None = None

    def to_dict(self) -> dict:
        return {
            "from_entity_id": self.from_entity_id,
            "to_entity_id": self.to_entity_id,
            "smart_code": self.smart_code,
            "to_entity": copy.deepcopy(self.to_entity),
        }


@dataclass
class Entity:
    id: str
    entity_type: str
    entity_name: str
    smart_code: str
    status: str = STATUS_ACTIVE
    entity_code: str | None = None
    dynamic_fields: Dict[str, DynamicFieldValue] = field(default_factory=dict)
    relationships: Dict[str, List[RelationshipInstance]] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    def field_value(self, name: str, default: Any = None) -> Any:
        item = self.dynamic_fields.get(name)
        return item.value if item is not None else default

    def values(self) -> Dict[str, Any]:
        return {name: item.value for name, item in self.dynamic_fields.items()}

    def targets(self, relationship_type: str) -> List[str]:
        return [rel.to_entity_id for rel in self.relationships.get(relationship_type, [])]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_name": self.entity_name,
            "entity_code": self.entity_code,
            "smart_code": self.smart_code,
            "status": self.status,
            "dynamic_fields": {name: item.to_dict() for name, item in self.dynamic_fields.items()},
            "relationships": {
                rel_type: [rel.to_dict() for rel in rels] for rel_type, rels in self.relationships.items()
            },
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Entity":
        entity_id = str(data["id"])
        fields = {}
        for name, item in (data.get("dynamic_fields") or {}).items():
            item = item if isinstance(item, dict) else {"value": item}
            fields[name] = DynamicFieldValue(
                name=name,
                value=copy.deepcopy(item.get("value")),
                type=item.get("type") or "text",
                smart_code=item.get("smart_code") or "",
            )
        relationships: Dict[str, List[RelationshipInstance]] = {}
        for rel_type, rels in (data.get("relationships") or {}).items():
            relationships[rel_type] = [
                RelationshipInstance(
                    from_entity_id=str(rel.get("from_entity_id") or entity_id),
                    relationship_type=rel_type,
                    to_entity_id=str(rel["to_entity_id"]),
                    smart_code=rel.get("smart_code"),
                    to_entity=copy.deepcopy(rel.get("to_entity")),
                )
                for rel in rels
            ]
        return cls(
            id=entity_id,
            entity_type=data["entity_type"],
            entity_name=data.get("entity_name") or "",
            smart_code=data.get("smart_code") or "",
            status=data.get("status") or STATUS_ACTIVE,
            entity_code=data.get("entity_code"),
            dynamic_fields=fields,
            relationships=relationships,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class TransactionLine:
    line_number: int
    line_type: str
    entity_id: str | None
    quantity: float
    unit_amount: float
    line_amount: float
    smart_code: str | None = None

    def to_dict(self) -> dict:
        return {
            "line_number": self.line_number,
            "line_type": self.line_type,
            "entity_id": self.entity_id,
            "quantity": self.quantity,
            "unit_amount": self.unit_amount,
            "line_amount": self.line_amount,
            "smart_code": self.smart_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransactionLine":
        return cls(
            line_number=int(data["line_number"]),
            line_type=data.get("line_type") or "item",
            entity_id=data.get("entity_id"),
            quantity=data.get("quantity", 0),
            unit_amount=data.get("unit_amount", 0),
            line_amount=data.get("line_amount", 0),
            smart_code=data.get("smart_code"),
        )


@dataclass
class Transaction:
    id: str
    transaction_type: str
    transaction_date: str
    total_amount: float
    smart_code: str
    status: str = TXN_DRAFT
    source_entity_id: str | None = None
    target_entity_id: str | None = None
    lines: List[TransactionLine] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_type": self.transaction_type,
            "transaction_date": self.transaction_date,
            "total_amount": self.total_amount,
            "smart_code": self.smart_code,
            "status": self.status,
            "source_entity_id": self.source_entity_id,
            "target_entity_id": self.target_entity_id,
            "lines": [line.to_dict() for line in self.lines],
            "metadata": copy.deepcopy(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        return cls(
            id=str(data["id"]),
            transaction_type=data["transaction_type"],
            transaction_date=data.get("transaction_date") or "",
            total_amount=data.get("total_amount", 0),
            smart_code=data.get("smart_code") or "",
            status=data.get("status") or TXN_DRAFT,
            source_entity_id=data.get("source_entity_id"),
            target_entity_id=data.get("target_entity_id"),
            lines=[TransactionLine.from_dict(line) for line in data.get("lines") or []],
            metadata=copy.deepcopy(data.get("metadata") or {}),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
