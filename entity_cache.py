"""Client-side read model reconciled from confirmed orchestrator results."""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, List, Tuple

from entity_model import STATUS_ACTIVE, Entity


logger = logging.getLogger("hera.cache")

ListKey = Tuple[str, str]


def cache_key(entity_type: str, filters: dict | None) -> ListKey:
    return (entity_type, json.dumps(filters or {}, sort_keys=True, default=str))


def _status_matches(filters: dict, entity: Entity) -> bool:
    status = filters.get("status")
    if status is None:
        return entity.status == STATUS_ACTIVE
    return entity.status == status


def _relationships_match(filters: dict, entity: Entity) -> bool:
    for rel_type, target in (filters.get("filter_rel") or {}).items():
        if target not in entity.targets(rel_type):
            return False
    return True


def _accepts_inserts(filters: dict, size: int) -> bool:
    # only lists whose membership we can decide locally take new entries
    if filters.get("search") or filters.get("offset"):
        return False
    limit = filters.get("limit")
    return limit is None or size < limit


class EntityCache:
    """Entity lists keyed by (entity_type, filters) plus an id index.

    Only ever mutated by backend-confirmed entities or explicit invalidation.
    """

    def __init__(self) -> None:
        self._entities: Dict[str, Entity] = {}
        self._lists: Dict[ListKey, List[str]] = {}
        self._filters: Dict[ListKey, dict] = {}

    def store(self, entity_type: str, filters: dict | None, entities: List[Entity]) -> ListKey:
        key = cache_key(entity_type, filters)
        for entity in entities:
            self._entities[entity.id] = copy.deepcopy(entity)
        self._lists[key] = [entity.id for entity in entities]
        self._filters[key] = copy.deepcopy(filters or {})
        return key

    def get_list(self, entity_type: str, filters: dict | None = None) -> List[Entity] | None:
        ids = self._lists.get(cache_key(entity_type, filters))
        if ids is None:
            return None
        return [copy.deepcopy(self._entities[i]) for i in ids if i in self._entities]

    def get(self, entity_id: str) -> Entity | None:
        entity = self._entities.get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    def merge(self, entity: Entity) -> None:
        self._entities[entity.id] = copy.deepcopy(entity)
        for key, ids in self._lists.items():
            if key[0] != entity.entity_type:
                continue
            filters = self._filters.get(key, {})
            belongs = _status_matches(filters, entity) and _relationships_match(filters, entity)
            if entity.id in ids:
                if not belongs:
                    ids.remove(entity.id)
                    logger.debug("cache_evict entity_id=%s list=%s", entity.id, key[1])
            elif belongs and _accepts_inserts(filters, len(ids)):
                ids.insert(0, entity.id)

    def remove(self, entity_id: str) -> None:
        self._entities.pop(entity_id, None)
        for ids in self._lists.values():
            if entity_id in ids:
                ids.remove(entity_id)

    def invalidate(self, entity_type: str | None = None) -> None:
        keys = [k for k in self._lists if entity_type is None or k[0] == entity_type]
        for key in keys:
            self._lists.pop(key, None)
            self._filters.pop(key, None)
        logger.debug("cache_invalidate entity_type=%s lists=%s", entity_type, len(keys))

    def has_list(self, entity_type: str, filters: dict | None = None) -> bool:
        return cache_key(entity_type, filters) in self._lists

    def __contains__(self, entity_id: Any) -> bool:
        return entity_id in self._entities
