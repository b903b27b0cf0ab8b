"""Error taxonomy for the universal entity layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List


Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass
class EntityError(Exception):
    code: str
    message: str
    path: str | None = None
    detail: dict | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    def to_issue(self) -> Issue:
        return _issue(self.code, self.message, self.path, self.detail)


# Schema errors are configuration bugs and never retried.


class SchemaError(EntityError):
    pass


class PresetNotFound(SchemaError):
    def __init__(self, entity_type: Any) -> None:
        super().__init__(
            "PRESET_NOT_FOUND",
            f"No preset registered for entity_type {entity_type!r}",
            "entity_type",
            {"entity_type": entity_type},
        )


class DuplicatePreset(SchemaError):
    def __init__(self, entity_type: str) -> None:
        super().__init__("DUPLICATE_PRESET", f"Preset {entity_type} already registered", "entity_type", {"entity_type": entity_type})


class DuplicateFieldName(SchemaError):
    def __init__(self, entity_type: str, name: str) -> None:
        super().__init__(
            "DUPLICATE_FIELD_NAME",
            f"Field {name!r} declared twice in {entity_type}",
            f"fields.{name}",
            {"entity_type": entity_type, "field": name},
        )


class DuplicateFieldSmartCode(SchemaError):
    def __init__(self, entity_type: str, smart_code: str) -> None:
        super().__init__(
            "DUPLICATE_FIELD_SMART_CODE",
            f"Smart code {smart_code} used by two fields in {entity_type}",
            "fields",
            {"entity_type": entity_type, "smart_code": smart_code},
        )


class DuplicateRelationshipType(SchemaError):
    def __init__(self, entity_type: str, relationship_type: str) -> None:
        super().__init__(
            "DUPLICATE_RELATIONSHIP_TYPE",
            f"Relationship {relationship_type} declared twice in {entity_type}",
            f"relationships.{relationship_type}",
            {"entity_type": entity_type, "relationship_type": relationship_type},
        )


# Validation errors are surfaced immediately and never retried.


class ValidationError(EntityError):
    def __init__(
        self,
        code: str,
        message: str,
        path: str | None = None,
        detail: dict | None = None,
        issues: List[Issue] | None = None,
    ) -> None:
        super().__init__(code, message, path, detail)
        self.issues = issues if issues is not None else [self.to_issue()]


class MissingRequiredField(ValidationError):
    def __init__(self, issues: List[Issue]) -> None:
        names = [str((i.get("detail") or {}).get("field")) for i in issues]
        super().__init__(
            "MISSING_REQUIRED_FIELD",
            f"Missing required fields: {', '.join(names)}",
            issues[0].get("path") if issues else None,
            {"fields": names},
            issues=issues,
        )


class TypeMismatch(ValidationError):
    def __init__(self, issues: List[Issue]) -> None:
        first = issues[0] if issues else {}
        super().__init__("TYPE_MISMATCH", first.get("message") or "Type mismatch", first.get("path"), first.get("detail"), issues=issues)


class UnknownField(ValidationError):
    def __init__(self, entity_type: str, name: str) -> None:
        super().__init__(
            "UNKNOWN_FIELD",
            f"{entity_type} has no dynamic field {name!r}",
            f"dynamic_fields.{name}",
            {"entity_type": entity_type, "field": name},
        )


class UnknownRelationship(ValidationError):
    def __init__(self, entity_type: str, relationship_type: str) -> None:
        super().__init__(
            "UNKNOWN_RELATIONSHIP",
            f"{entity_type} has no relationship {relationship_type!r}",
            f"relationships.{relationship_type}",
            {"entity_type": entity_type, "relationship_type": relationship_type},
        )


class CardinalityViolation(ValidationError):
    def __init__(self, relationship_type: str, count: int) -> None:
        super().__init__(
            "CARDINALITY_VIOLATION",
            f"{relationship_type} allows at most one target, got {count}",
            f"relationships.{relationship_type}",
            {"relationship_type": relationship_type, "count": count},
        )


class InvalidSmartCode(ValidationError):
    def __init__(self, smart_code: Any, issues: List[Issue]) -> None:
        super().__init__(
            "INVALID_SMART_CODE",
            f"Invalid smart code {smart_code!r}",
            "smart_code",
            {"smart_code": smart_code},
            issues=issues,
        )


class EntityAlreadyDeleted(ValidationError):
    def __init__(self, entity_id: str) -> None:
        super().__init__("ENTITY_ALREADY_DELETED", f"Entity {entity_id} is deleted", "entity_id", {"entity_id": entity_id})


class ConflictError(EntityError):
    def __init__(self, message: str, detail: dict | None = None) -> None:
        super().__init__("REFERENTIAL_CONFLICT", message, None, detail)


class IllegalTransitionError(EntityError):
    def __init__(self, current: Any, next_state: Any, reason: str, message: str | None = None) -> None:
        super().__init__(
            "ILLEGAL_TRANSITION",
            message or f"Cannot move from {current} to {next_state}",
            "status",
            {"current": current, "next": next_state, "reason": reason},
        )
        self.current = current
        self.next_state = next_state
        self.reason = reason


class NotFoundError(EntityError):
    pass


class EntityNotFound(NotFoundError):
    def __init__(self, entity_id: Any) -> None:
        super().__init__("ENTITY_NOT_FOUND", f"Entity {entity_id} not found", "entity_id", {"entity_id": entity_id})


class TransactionNotFound(NotFoundError):
    def __init__(self, transaction_id: Any) -> None:
        super().__init__(
            "TRANSACTION_NOT_FOUND",
            f"Transaction {transaction_id} not found",
            "transaction_id",
            {"transaction_id": transaction_id},
        )


class TransportError(EntityError):
    def __init__(self, message: str, detail: dict | None = None) -> None:
        super().__init__("TRANSPORT_ERROR", message, None, detail)


class CompensationFailed(EntityError):
    def __init__(self, entity_id: str, conflict: BaseException, error: BaseException, message: str | None = None) -> None:
        super().__init__(
            "COMPENSATION_FAILED",
            message or f"Hard delete of {entity_id} was blocked and the fallback archive failed: {error}",
            "entity_id",
            {"entity_id": entity_id, "conflict": str(conflict)},
        )
        self.conflict = conflict
        self.error = error


class UnexpectedDeleteError(EntityError):
    def __init__(self, entity_id: str, error: BaseException) -> None:
        super().__init__("UNEXPECTED_DELETE_ERROR", str(error), "entity_id", {"entity_id": entity_id})
        self.error = error
