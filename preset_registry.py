"""Entity presets: per-kind field, relationship and permission schema."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Tuple

from hera.field_types import FIELD_TYPES, FieldTypeMismatch, coerce
from hera.smart_code import validate as validate_smart_code

from entity_errors import (
    DuplicateFieldName,
    DuplicateFieldSmartCode,
    DuplicatePreset,
    DuplicateRelationshipType,
    PresetNotFound,
    SchemaError,
)
from status_lifecycle import WorkflowDefinition


Issue = Dict[str, Any]

CARDINALITIES = ("one", "many")
ACTIONS = ("create", "edit", "delete", "view")

_ENTITY_TYPE_RE = re.compile(r"[A-Z][A-Z0-9_]*")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass(frozen=True)
class DynamicFieldDefinition:
    name: str
    type: str
    smart_code: str
    required: bool = False
    default_value: Any = MISSING
    roles: Tuple[str, ...] | None = None
    label: str | None = None

    @property
    def has_default(self) -> bool:
        return self.default_value is not MISSING


@dataclass(frozen=True)
class RelationshipDefinition:
    type: str
    smart_code: str
    cardinality: str = "one"
    label: str | None = None


@dataclass(frozen=True)
class EntityPreset:
    entity_type: str
    fields: Tuple[DynamicFieldDefinition, ...] = ()
    relationships: Tuple[RelationshipDefinition, ...] = ()
    permissions: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    smart_code: str | None = None
    label: str | None = None
    workflow: WorkflowDefinition | None = None

    def get_field(self, name: str) -> DynamicFieldDefinition | None:
        for definition in self.fields:
            if definition.name == name:
                return definition
        return None

    def get_relationship(self, relationship_type: str) -> RelationshipDefinition | None:
        for definition in self.relationships:
            if definition.type == relationship_type:
                return definition
        return None

    @property
    def field_names(self) -> List[str]:
        return [definition.name for definition in self.fields]


def _check_smart_code(entity_type: str, smart_code: str, path: str) -> None:
    result = validate_smart_code(smart_code)
    if not result["valid"]:
        raise SchemaError(
            "INVALID_SMART_CODE",
            f"{entity_type} declares invalid smart code {smart_code!r}",
            path,
            {"errors": result["errors"]},
        )


def _check_preset(preset: EntityPreset) -> None:
    entity_type = preset.entity_type
    if not isinstance(entity_type, str) or not _ENTITY_TYPE_RE.fullmatch(entity_type):
        raise SchemaError("INVALID_ENTITY_TYPE", f"entity_type must be an uppercase token, got {entity_type!r}", "entity_type")
    if preset.smart_code is not None:
        _check_smart_code(entity_type, preset.smart_code, "smart_code")

    names: set[str] = set()
    codes: set[str] = set()
    for definition in preset.fields:
        path = f"fields.{definition.name}"
        if definition.name in names:
            raise DuplicateFieldName(entity_type, definition.name)
        if definition.smart_code in codes:
            raise DuplicateFieldSmartCode(entity_type, definition.smart_code)
        names.add(definition.name)
        codes.add(definition.smart_code)
        if definition.type not in FIELD_TYPES:
            raise SchemaError("UNKNOWN_FIELD_TYPE", f"Field {definition.name!r} has unknown type {definition.type!r}", path)
        _check_smart_code(entity_type, definition.smart_code, path)
        if definition.has_default:
            try:
                coerce(definition.type, definition.default_value, path)
            except FieldTypeMismatch as exc:
                raise SchemaError("INVALID_DEFAULT", f"Default for {definition.name!r}: {exc.message}", path) from exc

    rel_types: set[str] = set()
    for rel in preset.relationships:
        if rel.type in rel_types:
            raise DuplicateRelationshipType(entity_type, rel.type)
        rel_types.add(rel.type)
        if rel.cardinality not in CARDINALITIES:
            raise SchemaError(
                "INVALID_CARDINALITY",
                f"Relationship {rel.type} has cardinality {rel.cardinality!r}",
                f"relationships.{rel.type}",
            )
        _check_smart_code(entity_type, rel.smart_code, f"relationships.{rel.type}")

    workflow = preset.workflow
    if workflow is not None:
        status_field = preset.get_field(workflow.status_field)
        if status_field is None or status_field.type != "text":
            raise SchemaError(
                "WORKFLOW_FIELD_MISSING",
                f"{entity_type} workflow {workflow.name!r} needs text field {workflow.status_field!r}",
                "workflow",
            )
        if status_field.has_default and not workflow.is_known(status_field.default_value):
            raise SchemaError(
                "INVALID_DEFAULT",
                f"Default {status_field.default_value!r} is not a {workflow.name} state",
                f"fields.{status_field.name}",
            )

    for action in preset.permissions:
        if action not in ACTIONS:
            raise SchemaError("INVALID_PERMISSION", f"Unknown permission action {action!r}", f"permissions.{action}")


class PresetRegistry:
    """Immutable entity_type -> preset map, validated at construction."""

    def __init__(self, presets: Iterable[EntityPreset] = (), industry: str = "SALON") -> None:
        by_type: Dict[str, EntityPreset] = {}
        for preset in presets:
            _check_preset(preset)
            if preset.entity_type in by_type:
                raise DuplicatePreset(preset.entity_type)
            by_type[preset.entity_type] = preset
        self._presets = MappingProxyType(by_type)
        self.industry = industry

    def register(self, preset: EntityPreset) -> "PresetRegistry":
        return PresetRegistry([*self._presets.values(), preset], industry=self.industry)

    def resolve(self, entity_type: Any) -> EntityPreset:
        key = entity_type.strip().upper() if isinstance(entity_type, str) else None
        preset = self._presets.get(key) if key else None
        if preset is None:
            raise PresetNotFound(entity_type)
        return preset

    def entity_types(self) -> List[str]:
        return list(self._presets)

    def __contains__(self, entity_type: object) -> bool:
        return isinstance(entity_type, str) and entity_type.strip().upper() in self._presets

    def __iter__(self) -> Iterator[EntityPreset]:
        return iter(self._presets.values())

    def __len__(self) -> int:
        return len(self._presets)


def apply_defaults(preset: EntityPreset, partial: Mapping[str, Any] | None) -> Dict[str, Any]:
    values = dict(partial or {})
    for definition in preset.fields:
        # explicit None means "cleared" and is kept
        if definition.has_default and definition.name not in values:
            values[definition.name] = copy.deepcopy(definition.default_value)
    return values


def validate_required(preset: EntityPreset, values: Mapping[str, Any] | None) -> List[Issue]:
    values = values or {}
    errors: List[Issue] = []
    for definition in preset.fields:
        if definition.required and values.get(definition.name) is None:
            errors.append(
                _issue(
                    "MISSING_REQUIRED_FIELD",
                    f"{definition.name} is required",
                    f"dynamic_fields.{definition.name}",
                    {"field": definition.name},
                )
            )
    return errors


def validate_values(preset: EntityPreset, values: Mapping[str, Any] | None) -> tuple[Dict[str, Any], List[Issue]]:
    coerced: Dict[str, Any] = {}
    errors: List[Issue] = []
    for name, value in (values or {}).items():
        path = f"dynamic_fields.{name}"
        definition = preset.get_field(name)
        if definition is None:
            errors.append(_issue("UNKNOWN_FIELD", f"{preset.entity_type} has no dynamic field {name!r}", path, {"field": name}))
            continue
        try:
            coerced[name] = coerce(definition.type, value, path)
        except FieldTypeMismatch as exc:
            errors.append(_issue("TYPE_MISMATCH", exc.message, path, {"field": name, "expected": definition.type}))
    return coerced, errors


def permits(preset: EntityPreset, action: str, role: str | None) -> bool:
    if action not in ACTIONS:
        return False
    allowed = preset.permissions.get(action)
    if allowed is None:
        return True
    return role in allowed


def visible_fields(preset: EntityPreset, role: str | None) -> List[DynamicFieldDefinition]:
    return [d for d in preset.fields if d.roles is None or role in d.roles]
