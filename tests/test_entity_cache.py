import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from entity_cache import EntityCache, cache_key
from entity_model import Entity, RelationshipInstance


def _entity(entity_id, status="active", category=None, name=None):
    rels = {}
    if category:
        rels["HAS_CATEGORY"] = [RelationshipInstance(entity_id, "HAS_CATEGORY", category)]
    return Entity(
        id=entity_id,
        entity_type="PRODUCT",
        entity_name=name or entity_id,
        smart_code="HERA.SALON.PRODUCT.ENT.PRODUCT.V1",
        status=status,
        relationships=rels,
    )


class TestEntityCache(unittest.TestCase):
    def setUp(self) -> None:
        self.cache = EntityCache()

    def test_cache_key_ignores_filter_order(self) -> None:
        self.assertEqual(cache_key("PRODUCT", {"a": 1, "b": 2}), cache_key("PRODUCT", {"b": 2, "a": 1}))

    def test_store_and_read_are_copies(self) -> None:
        self.cache.store("PRODUCT", {}, [_entity("p1")])
        listed = self.cache.get_list("PRODUCT", {})
        listed[0].entity_name = "mutated"
        self.assertEqual(self.cache.get("p1").entity_name, "p1")
        self.assertIsNone(self.cache.get_list("PRODUCT", {"status": "archived"}))

    def test_merge_updates_in_place(self) -> None:
        self.cache.store("PRODUCT", {}, [_entity("p1"), _entity("p2")])
        self.cache.merge(_entity("p2", name="renamed"))
        self.assertEqual([e.entity_name for e in self.cache.get_list("PRODUCT", {})], ["p1", "renamed"])

    def test_merge_inserts_new_entity_at_front(self) -> None:
        self.cache.store("PRODUCT", {}, [_entity("p1")])
        self.cache.merge(_entity("p2"))
        self.assertEqual([e.id for e in self.cache.get_list("PRODUCT", {})], ["p2", "p1"])

    def test_merge_evicts_when_status_no_longer_matches(self) -> None:
        self.cache.store("PRODUCT", {}, [_entity("p1")])
        self.cache.store("PRODUCT", {"status": "archived"}, [])
        self.cache.merge(_entity("p1", status="archived"))
        self.assertEqual(self.cache.get_list("PRODUCT", {}), [])
        self.assertEqual([e.id for e in self.cache.get_list("PRODUCT", {"status": "archived"})], ["p1"])

    def test_default_list_hides_deleted(self) -> None:
        self.cache.store("PRODUCT", {}, [_entity("p1")])
        self.cache.merge(_entity("p1", status="deleted"))
        self.assertEqual(self.cache.get_list("PRODUCT", {}), [])
        self.assertIn("p1", self.cache)

    def test_relationship_filtered_lists(self) -> None:
        filters = {"filter_rel": {"HAS_CATEGORY": "c1"}}
        self.cache.store("PRODUCT", filters, [])
        self.cache.merge(_entity("p1", category="c2"))
        self.assertEqual(self.cache.get_list("PRODUCT", filters), [])
        self.cache.merge(_entity("p1", category="c1"))
        self.assertEqual([e.id for e in self.cache.get_list("PRODUCT", filters)], ["p1"])

    def test_search_and_full_pages_do_not_take_inserts(self) -> None:
        self.cache.store("PRODUCT", {"search": "sham"}, [])
        self.cache.store("PRODUCT", {"limit": 1}, [_entity("p1")])
        self.cache.merge(_entity("p2"))
        self.assertEqual(self.cache.get_list("PRODUCT", {"search": "sham"}), [])
        self.assertEqual([e.id for e in self.cache.get_list("PRODUCT", {"limit": 1})], ["p1"])

    def test_other_kinds_untouched(self) -> None:
        self.cache.store("SERVICE", {}, [])
        self.cache.merge(_entity("p1"))
        self.assertEqual(self.cache.get_list("SERVICE", {}), [])

    def test_remove_and_invalidate(self) -> None:
        self.cache.store("PRODUCT", {}, [_entity("p1"), _entity("p2")])
        self.cache.remove("p1")
        self.assertEqual([e.id for e in self.cache.get_list("PRODUCT", {})], ["p2"])
        self.cache.invalidate("PRODUCT")
        self.assertFalse(self.cache.has_list("PRODUCT", {}))
        self.assertIsNotNone(self.cache.get("p2"))


if __name__ == "__main__":
    unittest.main()
