"""Generic per-kind accessor exposed to feature modules."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping

from entity_backend import build_query_filters
from entity_errors import UnknownField
from entity_model import Entity
from entity_orchestrator import DeleteOutcome, EntityOrchestrator


class EntityAccessor:
    """One entity kind, one filter set, one read model.

    Subclasses only map friendly argument names onto preset fields and
    relationships through ``field_aliases`` and ``relationship_aliases``.
    """

    field_aliases: Mapping[str, str] = {}
    relationship_aliases: Mapping[str, str] = {}

    def __init__(
        self,
        orchestrator: EntityOrchestrator,
        entity_type: str,
        status: str | None = None,
        search: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
        filter_rel: Mapping[str, str] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.preset = orchestrator.registry.resolve(entity_type)
        self.entity_type = self.preset.entity_type
        self.filters = build_query_filters(status=status, search=search, limit=limit, offset=offset, filter_rel=filter_rel)
        self.is_loading = False
        self.error: BaseException | None = None
        self._pending = {"create": 0, "update": 0, "delete": 0}

    @property
    def entities(self) -> List[Entity]:
        return self.orchestrator.cache.get_list(self.entity_type, self.filters) or []

    @property
    def is_creating(self) -> bool:
        return self._pending["create"] > 0

    @property
    def is_updating(self) -> bool:
        return self._pending["update"] > 0

    @property
    def is_deleting(self) -> bool:
        return self._pending["delete"] > 0

    @asynccontextmanager
    async def _running(self, kind: str) -> AsyncIterator[None]:
        self._pending[kind] += 1
        try:
            yield
        except Exception as exc:
            self.error = exc
            raise
        finally:
            self._pending[kind] -= 1

    def split_values(self, values: Mapping[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
        fields: Dict[str, Any] = {}
        relationships: Dict[str, Any] = {}
        for key, value in values.items():
            if key in self.relationship_aliases:
                relationships[self.relationship_aliases[key]] = value
            elif key in self.field_aliases:
                fields[self.field_aliases[key]] = value
            elif self.preset.get_field(key) is not None:
                fields[key] = value
            elif self.preset.get_relationship(key) is not None:
                relationships[key] = value
            else:
                raise UnknownField(self.entity_type, key)
        return fields, relationships

    async def load(self) -> List[Entity]:
        self.is_loading = True
        self.error = None
        try:
            return await self.orchestrator.query(self.entity_type, **self.filters)
        except Exception as exc:
            self.error = exc
            raise
        finally:
            self.is_loading = False

    async def create(
        self,
        entity_name: str,
        dynamic_fields: Mapping[str, Any] | None = None,
        relationships: Mapping[str, Any] | None = None,
        smart_code: str | None = None,
        entity_code: str | None = None,
        **values: Any,
    ) -> Entity:
        fields, rels = self.split_values(values)
        async with self._running("create"):
            return await self.orchestrator.create(
                self.entity_type,
                entity_name,
                smart_code=smart_code,
                dynamic_fields={**dict(dynamic_fields or {}), **fields},
                relationships={**dict(relationships or {}), **rels},
                entity_code=entity_code,
            )

    async def update(
        self,
        entity_id: str,
        entity_name: str | None = None,
        dynamic_patch: Mapping[str, Any] | None = None,
        relationships_patch: Mapping[str, Any] | None = None,
        status: str | None = None,
        **values: Any,
    ) -> Entity:
        fields, rels = self.split_values(values)
        async with self._running("update"):
            return await self.orchestrator.update(
                entity_id,
                entity_name=entity_name,
                dynamic_patch={**dict(dynamic_patch or {}), **fields},
                relationships_patch={**dict(relationships_patch or {}), **rels},
                status=status,
            )

    async def archive(self, entity_id: str) -> Entity:
        async with self._running("update"):
            return await self.orchestrator.archive(entity_id)

    async def restore(self, entity_id: str) -> Entity:
        async with self._running("update"):
            return await self.orchestrator.restore(entity_id)

    async def delete(
        self,
        entity_id: str,
        hard_delete: bool = False,
        cascade: bool = True,
        reason: str | None = None,
    ) -> DeleteOutcome:
        async with self._running("delete"):
            return await self.orchestrator.delete(entity_id, hard_delete=hard_delete, cascade=cascade, reason=reason)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "entities": self.entities,
            "is_loading": self.is_loading,
            "error": self.error,
            "create": self.create,
            "update": self.update,
            "archive": self.archive,
            "restore": self.restore,
            "delete": self.delete,
            "is_creating": self.is_creating,
            "is_updating": self.is_updating,
            "is_deleting": self.is_deleting,
        }
