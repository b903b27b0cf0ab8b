import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from entity_errors import CardinalityViolation, UnknownRelationship, ValidationError
from entity_model import Entity, RelationshipInstance
from entity_presets import default_registry
from relationship_model import normalize_targets, patch, relationship_targets, replace_edges, validate_relationships


def _product(relationships=None):
    return Entity(
        id="p1",
        entity_type="PRODUCT",
        entity_name="Shampoo",
        smart_code="HERA.SALON.PRODUCT.ENT.PRODUCT.V1",
        relationships=relationships or {},
    )


class TestNormalizeTargets(unittest.TestCase):
    def setUp(self) -> None:
        self.preset = default_registry().resolve("PRODUCT")
        self.one = self.preset.get_relationship("HAS_CATEGORY")
        self.many = self.preset.get_relationship("SUPPLIED_BY")

    def test_string_and_none(self) -> None:
        self.assertEqual(normalize_targets(self.one, "c1"), ["c1"])
        self.assertEqual(normalize_targets(self.one, None), [])

    def test_dedupes_preserving_order(self) -> None:
        self.assertEqual(normalize_targets(self.many, ["v2", "v1", "v2"]), ["v2", "v1"])

    def test_cardinality_one(self) -> None:
        with self.assertRaises(CardinalityViolation) as ctx:
            normalize_targets(self.one, ["c1", "c2"])
        self.assertEqual(ctx.exception.detail["count"], 2)
        self.assertEqual(normalize_targets(self.one, ["c1", "c1"]), ["c1"])

    def test_bad_targets(self) -> None:
        for bad in (["", "x"], [5], {"id": "x"}):
            with self.assertRaises(ValidationError) as ctx:
                normalize_targets(self.many, bad)
            self.assertEqual(ctx.exception.code, "INVALID_TARGET_ID")


class TestPatch(unittest.TestCase):
    def setUp(self) -> None:
        self.preset = default_registry().resolve("PRODUCT")

    def test_patch_replaces_targets_and_keeps_other_types(self) -> None:
        entity = _product(
            {
                "HAS_CATEGORY": [RelationshipInstance("p1", "HAS_CATEGORY", "c1")],
                "SUPPLIED_BY": [RelationshipInstance("p1", "SUPPLIED_BY", "v1")],
            }
        )
        updated = patch(entity, "HAS_CATEGORY", "c2", self.preset)
        self.assertEqual([r.to_entity_id for r in updated["HAS_CATEGORY"]], ["c2"])
        self.assertEqual([r.to_entity_id for r in updated["SUPPLIED_BY"]], ["v1"])
        self.assertEqual(relationship_targets(entity, "HAS_CATEGORY"), ["c1"])

    def test_patch_empty_clears_type(self) -> None:
        entity = _product({"HAS_CATEGORY": [RelationshipInstance("p1", "HAS_CATEGORY", "c1")]})
        self.assertNotIn("HAS_CATEGORY", patch(entity, "HAS_CATEGORY", [], self.preset))

    def test_patch_unknown_type(self) -> None:
        with self.assertRaises(UnknownRelationship):
            patch(_product(), "OWNS_SALON", ["x"], self.preset)

    def test_replace_edges_reuses_existing_instances(self) -> None:
        kept = RelationshipInstance("p1", "SUPPLIED_BY", "v1", "HERA.SALON.PRODUCT.REL.SUPPLIEDBY.V1")
        edges = replace_edges([kept], "p1", "SUPPLIED_BY", ["v1", "v3"], "HERA.SALON.PRODUCT.REL.SUPPLIEDBY.V1")
        self.assertIs(edges[0], kept)
        self.assertEqual(edges[1].to_entity_id, "v3")

    def test_validate_relationships(self) -> None:
        self.assertEqual(
            validate_relationships(self.preset, {"HAS_BRAND": "b1", "SUPPLIED_BY": ["v1", "v1"]}),
            {"HAS_BRAND": ["b1"], "SUPPLIED_BY": ["v1"]},
        )
        with self.assertRaises(UnknownRelationship):
            validate_relationships(self.preset, {"NOPE": []})


if __name__ == "__main__":
    unittest.main()
