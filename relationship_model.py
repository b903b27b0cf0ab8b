"""Cardinality-aware relationship edges with full-replacement patches."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from entity_errors import CardinalityViolation, UnknownRelationship, ValidationError
from entity_model import Entity, RelationshipInstance
from preset_registry import EntityPreset, RelationshipDefinition


def normalize_targets(definition: RelationshipDefinition, target_ids: Any) -> List[str]:
    """Return the de-duplicated target ids for one relationship type.

    A bare string is treated as a single target and ``None`` as no targets.
    More than one target on a ``one`` relationship is rejected.
    """
    if target_ids is None:
        return []
    if isinstance(target_ids, str):
        target_ids = [target_ids]
    if not isinstance(target_ids, (list, tuple)):
        raise ValidationError(
            "INVALID_TARGET_ID",
            f"{definition.type} targets must be a list of ids",
            f"relationships.{definition.type}",
        )
    targets: List[str] = []
    for idx, target in enumerate(target_ids):
        if not isinstance(target, str) or not target.strip():
            raise ValidationError(
                "INVALID_TARGET_ID",
                f"{definition.type} target must be a non-empty id",
                f"relationships.{definition.type}[{idx}]",
            )
        if target not in targets:
            targets.append(target)
    if definition.cardinality == "one" and len(targets) > 1:
        raise CardinalityViolation(definition.type, len(targets))
    return targets


def replace_edges(
    current: Iterable[RelationshipInstance],
    from_entity_id: str,
    relationship_type: str,
    target_ids: List[str],
    smart_code: str | None = None,
) -> List[RelationshipInstance]:
    existing = {rel.to_entity_id: rel for rel in current}
    edges = []
    for target in target_ids:
        kept = existing.get(target)
        if kept is not None:
            edges.append(kept)
        else:
            edges.append(RelationshipInstance(from_entity_id, relationship_type, target, smart_code))
    return edges


def patch(
    entity: Entity,
    relationship_type: str,
    target_ids: Any,
    preset: EntityPreset,
) -> Dict[str, List[RelationshipInstance]]:
    definition = preset.get_relationship(relationship_type)
    if definition is None:
        raise UnknownRelationship(preset.entity_type, relationship_type)
    targets = normalize_targets(definition, target_ids)
    updated = {rel_type: list(rels) for rel_type, rels in entity.relationships.items()}
    if targets:
        updated[relationship_type] = replace_edges(
            entity.relationships.get(relationship_type, []),
            entity.id,
            relationship_type,
            targets,
            definition.smart_code,
        )
    else:
        updated.pop(relationship_type, None)
    return updated


def validate_relationships(preset: EntityPreset, relationships: Mapping[str, Any] | None) -> Dict[str, List[str]]:
    normalized: Dict[str, List[str]] = {}
    for rel_type, target_ids in (relationships or {}).items():
        definition = preset.get_relationship(rel_type)
        if definition is None:
            raise UnknownRelationship(preset.entity_type, rel_type)
        normalized[rel_type] = normalize_targets(definition, target_ids)
    return normalized


def relationship_targets(entity: Entity, relationship_type: str) -> List[str]:
    return entity.targets(relationship_type)
