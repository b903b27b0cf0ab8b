"""CRUD orchestration over the entity backend.

Every write goes through here: payloads are validated against the entity's
preset before the backend is called, the backend performs the atomic write,
and the confirmed result is merged into the cache by id.

Hard deletes that the backend refuses because the entity is still referenced
fall back to a tombstone (status ``deleted``) instead of failing.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Iterator, List, Mapping, Union

from hera.smart_code import build as build_smart_code
from hera.smart_code import validate as validate_smart_code

from entity_backend import CONFLICT, TRANSPORT, EntityBackend, build_query_filters, classify_backend_error, to_domain_error
from entity_cache import EntityCache
from entity_errors import (
    CompensationFailed,
    EntityAlreadyDeleted,
    EntityError,
    EntityNotFound,
    IllegalTransitionError,
    InvalidSmartCode,
    MissingRequiredField,
    TypeMismatch,
    UnexpectedDeleteError,
    UnknownRelationship,
    ValidationError,
)
from entity_model import STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_DELETED, Entity
from preset_registry import EntityPreset, PresetRegistry, apply_defaults, validate_required, validate_values
from relationship_model import patch as patch_relationship
from relationship_model import validate_relationships
from status_lifecycle import GENERIC_LIFECYCLE, UNKNOWN_STATE, WorkflowDefinition


logger = logging.getLogger("hera.orchestrator")

Issue = Dict[str, Any]


@dataclass(frozen=True)
class HardDeleted:
    entity_id: str
    success: ClassVar[bool] = True
    archived: ClassVar[bool] = False

    def to_dict(self) -> dict:
        return {"success": True, "archived": False, "message": None}


@dataclass(frozen=True)
class Archived:
    entity_id: str
    entity: Entity | None = None
    success: ClassVar[bool] = True
    archived: ClassVar[bool] = True

    def to_dict(self) -> dict:
        return {"success": True, "archived": True, "message": None}


@dataclass(frozen=True)
class ArchivedFallback:
    entity_id: str
    reason: str
    entity: Entity | None = None
    success: ClassVar[bool] = True
    archived: ClassVar[bool] = True

    @property
    def message(self) -> str:
        return self.reason

    def to_dict(self) -> dict:
        return {"success": True, "archived": True, "message": self.reason}


@dataclass(frozen=True)
class Failed:
    entity_id: str
    error: BaseException
    success: ClassVar[bool] = False
    archived: ClassVar[bool] = False

    def to_dict(self) -> dict:
        return {"success": False, "archived": False, "message": str(self.error)}


DeleteOutcome = Union[HardDeleted, Archived, ArchivedFallback, Failed]


def _validation_failure(issues: List[Issue]) -> ValidationError:
    codes = {issue["code"] for issue in issues}
    if codes == {"MISSING_REQUIRED_FIELD"}:
        return MissingRequiredField(issues)
    if codes == {"TYPE_MISMATCH"}:
        return TypeMismatch(issues)
    first = issues[0]
    return ValidationError(first["code"], first["message"], first.get("path"), first.get("detail"), issues=issues)


def _require_name(entity_name: Any) -> str:
    if not isinstance(entity_name, str) or not entity_name.strip():
        raise ValidationError("ENTITY_NAME_REQUIRED", "entity_name must be a non-empty string", "entity_name")
    return entity_name.strip()


class EntityOrchestrator:
    def __init__(self, backend: EntityBackend, registry: PresetRegistry, cache: EntityCache | None = None) -> None:
        self.backend = backend
        self.registry = registry
        self.cache = cache if cache is not None else EntityCache()
        self._in_flight = {"create": 0, "update": 0, "delete": 0}

    @property
    def is_creating(self) -> bool:
        return self._in_flight["create"] > 0

    @property
    def is_updating(self) -> bool:
        return self._in_flight["update"] > 0

    @property
    def is_deleting(self) -> bool:
        return self._in_flight["delete"] > 0

    @contextmanager
    def _tracking(self, kind: str) -> Iterator[None]:
        self._in_flight[kind] += 1
        try:
            yield
        finally:
            self._in_flight[kind] -= 1

    async def _call(self, operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except EntityError:
            raise
        except Exception as exc:
            kind = classify_backend_error(exc)
            if kind == TRANSPORT:
                logger.warning("backend_transport_error op=%s error=%s", operation, exc)
                raise
            logger.info("backend_rejected op=%s kind=%s error=%s", operation, kind, exc)
            raise to_domain_error(exc) from exc

    def _resolve_smart_code(self, preset: EntityPreset, smart_code: str | None) -> str:
        if smart_code is None:
            return preset.smart_code or str(build_smart_code(self.registry.industry, preset.entity_type, "ENT", preset.entity_type))
        result = validate_smart_code(smart_code)
        if not result["valid"]:
            raise InvalidSmartCode(smart_code, result["errors"])
        return smart_code

    def _relationship_codes(self, preset: EntityPreset, relationships: Mapping[str, Any]) -> Dict[str, str]:
        return {rel_type: preset.get_relationship(rel_type).smart_code for rel_type in relationships}

    def _field_payload(self, preset: EntityPreset, values: Mapping[str, Any]) -> Dict[str, dict]:
        payload = {}
        for name, value in values.items():
            definition = preset.get_field(name)
            payload[name] = {"value": value, "type": definition.type, "smart_code": definition.smart_code}
        return payload

    async def _load_live(self, entity_id: str) -> Entity:
        entity = await self._call("get", self.backend.entity_get(entity_id))
        if entity is None:
            raise EntityNotFound(entity_id)
        if entity.status == STATUS_DELETED:
            raise EntityAlreadyDeleted(entity_id)
        return entity

    async def get(self, entity_id: str) -> Entity:
        entity = await self._call("get", self.backend.entity_get(entity_id))
        if entity is None:
            self.cache.remove(entity_id)
            raise EntityNotFound(entity_id)
        self.cache.merge(entity)
        return entity

    async def create(
        self,
        entity_type: str,
        entity_name: str,
        smart_code: str | None = None,
        dynamic_fields: Mapping[str, Any] | None = None,
        relationships: Mapping[str, Any] | None = None,
        entity_code: str | None = None,
    ) -> Entity:
        preset = self.registry.resolve(entity_type)
        name = _require_name(entity_name)
        code = self._resolve_smart_code(preset, smart_code)
        raw = apply_defaults(preset, dynamic_fields)
        values, issues = validate_values(preset, raw)
        issues.extend(validate_required(preset, raw))
        if issues:
            raise _validation_failure(issues)
        workflow = preset.workflow
        if workflow is not None:
            state = values.setdefault(workflow.status_field, workflow.initial_state)
            if not workflow.is_known(state):
                raise IllegalTransitionError(None, state, UNKNOWN_STATE, f"Unknown {workflow.name} state {state!r}")
        rels = {rel_type: targets for rel_type, targets in validate_relationships(preset, relationships).items() if targets}

        with self._tracking("create"):
            entity = await self._call(
                "create",
                self.backend.entity_create(
                    preset.entity_type,
                    name,
                    code,
                    self._field_payload(preset, values),
                    rels,
                    entity_code=entity_code,
                    relationship_smart_codes=self._relationship_codes(preset, rels),
                ),
            )
        self.cache.merge(entity)
        logger.info("entity_created entity_id=%s entity_type=%s", entity.id, entity.entity_type)
        return entity

    async def update(
        self,
        entity_id: str,
        entity_name: str | None = None,
        dynamic_patch: Mapping[str, Any] | None = None,
        relationships_patch: Mapping[str, Any] | None = None,
        status: str | None = None,
    ) -> Entity:
        current = await self._load_live(entity_id)
        return await self._apply_update(current, entity_name, dynamic_patch, relationships_patch, status)

    async def _apply_update(
        self,
        current: Entity,
        entity_name: str | None = None,
        dynamic_patch: Mapping[str, Any] | None = None,
        relationships_patch: Mapping[str, Any] | None = None,
        status: str | None = None,
        check_workflow: bool = True,
    ) -> Entity:
        preset = self.registry.resolve(current.entity_type)
        # entity_name is always resent to narrow lost-update races
        patch: Dict[str, Any] = {"entity_name": _require_name(entity_name if entity_name is not None else current.entity_name)}

        if dynamic_patch:
            values, issues = validate_values(preset, dynamic_patch)
            merged = {**current.values(), **values}
            issues.extend(
                issue for issue in validate_required(preset, merged) if issue["detail"]["field"] in dynamic_patch
            )
            if issues:
                raise _validation_failure(issues)
            workflow = preset.workflow
            if check_workflow and workflow is not None and workflow.status_field in values:
                state = current.field_value(workflow.status_field, workflow.initial_state)
                if values[workflow.status_field] != state:
                    workflow.check_transition(state, values[workflow.status_field])
            patch["dynamic_fields"] = self._field_payload(preset, values)

        if relationships_patch:
            patch["relationships"] = validate_relationships(preset, relationships_patch)
            patch["relationship_smart_codes"] = self._relationship_codes(preset, patch["relationships"])

        if status is not None:
            GENERIC_LIFECYCLE.check_transition(current.status, status)
            patch["status"] = status

        with self._tracking("update"):
            entity = await self._call("update", self.backend.entity_update(current.id, patch))
        self.cache.merge(entity)
        logger.info("entity_updated entity_id=%s keys=%s", entity.id, sorted(patch))
        return entity

    async def set_relationship(self, entity_id: str, relationship_type: str, target_ids: Any) -> Entity:
        current = await self._load_live(entity_id)
        preset = self.registry.resolve(current.entity_type)
        edges = patch_relationship(current, relationship_type, target_ids, preset)
        targets = [rel.to_entity_id for rel in edges.get(relationship_type, [])]
        return await self._apply_update(current, relationships_patch={relationship_type: targets})

    async def archive(self, entity_id: str) -> Entity:
        current = await self._load_live(entity_id)
        if current.status == STATUS_ARCHIVED:
            self.cache.merge(current)
            return current
        return await self._apply_update(current, status=STATUS_ARCHIVED)

    async def restore(self, entity_id: str) -> Entity:
        current = await self._load_live(entity_id)
        if current.status == STATUS_ACTIVE:
            return current
        entity = await self._apply_update(current, status=STATUS_ACTIVE)
        # restored rows may belong to lists we never held; refetch on next read
        self.cache.invalidate(entity.entity_type)
        return entity

    async def delete(
        self,
        entity_id: str,
        hard_delete: bool = False,
        cascade: bool = True,
        reason: str | None = None,
    ) -> DeleteOutcome:
        outcome = await self.delete_outcome(entity_id, hard_delete=hard_delete, cascade=cascade, reason=reason)
        if isinstance(outcome, Failed):
            raise outcome.error
        return outcome

    async def delete_outcome(
        self,
        entity_id: str,
        hard_delete: bool = False,
        cascade: bool = True,
        reason: str | None = None,
    ) -> DeleteOutcome:
        with self._tracking("delete"):
            try:
                current = await self._load_live(entity_id)
                if not hard_delete:
                    entity = await self.archive(entity_id)
                    return Archived(entity_id, entity)
                return await self._hard_delete(current, cascade, reason)
            except Exception as exc:
                # delete() re-raises this unchanged
                return Failed(entity_id, exc)

    async def _hard_delete(self, current: Entity, cascade: bool, reason: str | None) -> DeleteOutcome:
        try:
            await self.backend.entity_delete(current.id, hard_delete=True, cascade=cascade, reason=reason)
        except Exception as exc:
            if classify_backend_error(exc) != CONFLICT:
                logger.error("entity_delete_failed entity_id=%s error=%s", current.id, exc)
                raise UnexpectedDeleteError(current.id, exc) from exc
            return await self._archive_instead(current, exc)
        self.cache.remove(current.id)
        logger.info("entity_hard_deleted entity_id=%s reason=%s", current.id, reason)
        return HardDeleted(current.id)

    async def _archive_instead(self, current: Entity, conflict: BaseException) -> ArchivedFallback:
        message = f"{current.entity_name} is referenced by other records and was archived instead"
        try:
            entity = await self.backend.entity_update(
                current.id,
                {"entity_name": current.entity_name, "status": STATUS_DELETED},
            )
        except Exception as exc:
            logger.error("entity_delete_compensation_failed entity_id=%s error=%s", current.id, exc)
            raise CompensationFailed(current.id, conflict, exc) from exc
        self.cache.merge(entity)
        logger.warning("entity_delete_fallback entity_id=%s conflict=%s", current.id, conflict)
        return ArchivedFallback(current.id, message, entity)

    async def query(
        self,
        entity_type: str,
        status: str | None = None,
        search: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
        filter_rel: Mapping[str, str] | None = None,
    ) -> List[Entity]:
        preset = self.registry.resolve(entity_type)
        filters = build_query_filters(status=status, search=search, limit=limit, offset=offset, filter_rel=filter_rel)
        for rel_type in filters.get("filter_rel", {}):
            if preset.get_relationship(rel_type) is None:
                raise UnknownRelationship(preset.entity_type, rel_type)
        entities = await self._call("query", self.backend.entity_query(preset.entity_type, filters))
        self.cache.store(preset.entity_type, filters, entities)
        return entities

    async def transition_workflow(self, entity_id: str, workflow: WorkflowDefinition, next_state: str) -> Entity:
        current = await self._load_live(entity_id)
        state = current.field_value(workflow.status_field, workflow.initial_state)
        workflow.check_transition(state, next_state)
        return await self._apply_update(current, dynamic_patch={workflow.status_field: next_state}, check_workflow=False)

    async def restore_workflow(self, entity_id: str, workflow: WorkflowDefinition, state: str) -> Entity:
        current = await self._load_live(entity_id)
        previous = current.field_value(workflow.status_field, workflow.initial_state)
        target = workflow.restore(previous, state)
        logger.info("workflow_restore entity_id=%s from=%s to=%s", entity_id, previous, target)
        return await self._apply_update(current, dynamic_patch={workflow.status_field: target}, check_workflow=False)
