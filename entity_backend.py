"""Backend service contract and error classification."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from entity_errors import (
    ConflictError,
    EntityError,
    IllegalTransitionError,
    NotFoundError,
    SchemaError,
    ValidationError,
)
from entity_model import Entity, Transaction


VALIDATION = "validation"
CONFLICT = "conflict"
NOT_FOUND = "not_found"
TRANSPORT = "transport"

FOREIGN_KEY_VIOLATION = "23503"
_CONFLICT_SIGNATURES = ("foreign key", "referenced")


@dataclass
class BackendError(Exception):
    message: str
    status: int | None = None
    code: str | None = None
    sqlstate: str | None = None
    detail: dict | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code or 'BACKEND_ERROR'}: {self.message}"
        return f"{base} (status={self.status})" if self.status else base


def classify_backend_error(exc: BaseException) -> str:
    """Sort a backend failure into validation, conflict, not_found or transport.

    HTTP status wins when present; sqlstate and message signatures are only
    consulted for status-less database errors.
    """
    if isinstance(exc, EntityError):
        if isinstance(exc, ConflictError):
            return CONFLICT
        if isinstance(exc, NotFoundError):
            return NOT_FOUND
        if isinstance(exc, (ValidationError, SchemaError, IllegalTransitionError)):
            return VALIDATION
        return TRANSPORT
    status = getattr(exc, "status", None)
    if status == 409:
        return CONFLICT
    if status is None:
        sqlstate = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
        if sqlstate == FOREIGN_KEY_VIOLATION:
            return CONFLICT
        if isinstance(exc, BackendError):
            message = (exc.message or "").lower()
            if any(sig in message for sig in _CONFLICT_SIGNATURES):
                return CONFLICT
        return TRANSPORT
    if status == 404:
        return NOT_FOUND
    if isinstance(status, int) and 400 <= status < 500:
        return VALIDATION
    return TRANSPORT


def to_domain_error(exc: BaseException) -> BaseException:
    """Map a backend failure onto the error taxonomy; transport errors pass through."""
    if isinstance(exc, EntityError):
        return exc
    kind = classify_backend_error(exc)
    message = getattr(exc, "message", None) or str(exc)
    detail = dict(getattr(exc, "detail", None) or {})
    code = getattr(exc, "code", None)
    if kind == CONFLICT:
        return ConflictError(message, detail)
    if kind == NOT_FOUND:
        return NotFoundError(code or "NOT_FOUND", message, None, detail)
    if kind == VALIDATION:
        return ValidationError(code or "BACKEND_VALIDATION", message, None, detail)
    return exc


def build_query_filters(
    status: str | None = None,
    search: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
    filter_rel: Mapping[str, str] | None = None,
) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    if status is not None:
        filters["status"] = status
    if search is not None and str(search).strip():
        filters["search"] = str(search).strip()
    for name, value in (("limit", limit), ("offset", offset)):
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("INVALID_FILTER", f"{name} must be a non-negative integer", f"filters.{name}")
        filters[name] = value
    if filter_rel:
        rel_filters = {}
        for rel_type, target in filter_rel.items():
            if not isinstance(target, str) or not target:
                raise ValidationError("INVALID_FILTER", f"filter_rel[{rel_type}] must be an entity id", f"filters.filter_rel.{rel_type}")
            rel_filters[rel_type] = target
        filters["filter_rel"] = rel_filters
    return filters


class EntityBackend(abc.ABC):
    """The remote service the orchestrators talk to.

    Every method is a network round-trip. Failures are raised as
    ``BackendError`` (or the transport's own exception).
    """

    @abc.abstractmethod
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
        ...

    @abc.abstractmethod
    async def entity_update(self, entity_id: str, patch: dict) -> Entity:
        ...

    @abc.abstractmethod
    async def entity_delete(self, entity_id: str, hard_delete: bool, cascade: bool, reason: str | None) -> dict:
        ...

    @abc.abstractmethod
    async def entity_query(self, entity_type: str, filters: dict) -> List[Entity]:
        ...

    @abc.abstractmethod
    async def entity_get(self, entity_id: str) -> Entity | None:
        ...

    @abc.abstractmethod
    async def transaction_create(self, payload: dict) -> Transaction:
        ...

    @abc.abstractmethod
    async def transaction_update(self, transaction_id: str, patch: dict) -> Transaction:
        ...

    @abc.abstractmethod
    async def transaction_delete(self, transaction_id: str) -> dict:
        ...

    @abc.abstractmethod
    async def transaction_get(self, transaction_id: str) -> Transaction | None:
        ...

    @abc.abstractmethod
    async def transaction_query(self, filters: dict) -> List[Transaction]:
        ...
