import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from appointment_workflow import APPOINTMENT_WORKFLOW
from entity_errors import (
    DuplicateFieldName,
    DuplicateFieldSmartCode,
    DuplicatePreset,
    DuplicateRelationshipType,
    PresetNotFound,
    SchemaError,
)
from entity_presets import MANAGER, OWNER, RECEPTIONIST, STAFF, default_registry
from preset_registry import (
    DynamicFieldDefinition,
    EntityPreset,
    PresetRegistry,
    RelationshipDefinition,
    apply_defaults,
    permits,
    validate_required,
    validate_values,
    visible_fields,
)


def _field(name, field_type="text", **kwargs):
    return DynamicFieldDefinition(name=name, type=field_type, smart_code=f"HERA.TEST.WIDGET.DYN.{name.upper()}.V1", **kwargs)


class TestPresetRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = default_registry()

    def test_resolve_is_case_insensitive(self) -> None:
        self.assertIs(self.registry.resolve("product"), self.registry.resolve("PRODUCT"))
        self.assertIn("customer", self.registry)

    def test_resolve_unknown(self) -> None:
        with self.assertRaises(PresetNotFound) as ctx:
            self.registry.resolve("SPACESHIP")
        self.assertEqual(ctx.exception.code, "PRESET_NOT_FOUND")

    def test_default_registry_kinds(self) -> None:
        for kind in ("PRODUCT", "SERVICE", "CUSTOMER", "STAFF", "ROLE", "CATEGORY", "BRAND", "VENDOR", "BRANCH", "APPOINTMENT"):
            self.assertIn(kind, self.registry.entity_types())
        self.assertEqual(len(self.registry), 10)

    def test_industry_flows_into_smart_codes(self) -> None:
        spa = default_registry("spa")
        self.assertTrue(spa.resolve("PRODUCT").smart_code.startswith("HERA.SPA.PRODUCT.ENT."))
        self.assertEqual(
            self.registry.resolve("PRODUCT").get_field("price_market").smart_code,
            "HERA.SALON.PRODUCT.DYN.PRICEMARKET.V1",
        )

    def test_register_returns_new_registry(self) -> None:
        widget = EntityPreset(entity_type="WIDGET", fields=(_field("color"),))
        grown = self.registry.register(widget)
        self.assertIn("WIDGET", grown)
        self.assertNotIn("WIDGET", self.registry)
        with self.assertRaises(DuplicatePreset):
            grown.register(widget)

    def test_duplicate_field_name(self) -> None:
        with self.assertRaises(DuplicateFieldName):
            PresetRegistry([EntityPreset(entity_type="WIDGET", fields=(_field("color"), _field("color")))])

    def test_duplicate_field_smart_code(self) -> None:
        clash = DynamicFieldDefinition(name="colour", type="text", smart_code="HERA.TEST.WIDGET.DYN.COLOR.V1")
        with self.assertRaises(DuplicateFieldSmartCode):
            PresetRegistry([EntityPreset(entity_type="WIDGET", fields=(_field("color"), clash))])

    def test_duplicate_relationship(self) -> None:
        rel = RelationshipDefinition(type="HAS_PART", smart_code="HERA.TEST.WIDGET.REL.HASPART.V1")
        with self.assertRaises(DuplicateRelationshipType):
            PresetRegistry([EntityPreset(entity_type="WIDGET", relationships=(rel, rel))])

    def test_schema_checks(self) -> None:
        bad_presets = [
            EntityPreset(entity_type="widget"),
            EntityPreset(entity_type="WIDGET", fields=(_field("size", "money"),)),
            EntityPreset(entity_type="WIDGET", fields=(_field("size", "number", default_value="big"),)),
            EntityPreset(
                entity_type="WIDGET",
                relationships=(RelationshipDefinition(type="HAS_PART", smart_code="HERA.TEST.WIDGET.REL.HASPART.V1", cardinality="few"),),
            ),
            EntityPreset(entity_type="WIDGET", fields=(DynamicFieldDefinition(name="x", type="text", smart_code="bad"),)),
            EntityPreset(entity_type="WIDGET", permissions={"destroy": (OWNER,)}),
        ]
        expected = [
            "INVALID_ENTITY_TYPE",
            "UNKNOWN_FIELD_TYPE",
            "INVALID_DEFAULT",
            "INVALID_CARDINALITY",
            "INVALID_SMART_CODE",
            "INVALID_PERMISSION",
        ]
        for preset, code in zip(bad_presets, expected):
            with self.assertRaises(SchemaError, msg=code) as ctx:
                PresetRegistry([preset])
            self.assertEqual(ctx.exception.code, code)


class TestWorkflowBinding(unittest.TestCase):
    def test_appointment_preset_carries_its_workflow(self) -> None:
        self.assertIs(default_registry().resolve("APPOINTMENT").workflow, APPOINTMENT_WORKFLOW)
        self.assertIsNone(default_registry().resolve("PRODUCT").workflow)

    def test_workflow_needs_a_text_status_field(self) -> None:
        with self.assertRaises(SchemaError) as ctx:
            PresetRegistry([EntityPreset("WIDGET", fields=(_field("notes"),), workflow=APPOINTMENT_WORKFLOW)])
        self.assertEqual(ctx.exception.code, "WORKFLOW_FIELD_MISSING")

    def test_status_default_must_be_a_state(self) -> None:
        preset = EntityPreset(
            "WIDGET",
            fields=(
                DynamicFieldDefinition(
                    name="appointment_status",
                    type="text",
                    smart_code="HERA.TEST.WIDGET.DYN.STATUS.V1",
                    default_value="teleported",
                ),
            ),
            workflow=APPOINTMENT_WORKFLOW,
        )
        with self.assertRaises(SchemaError) as ctx:
            PresetRegistry([preset])
        self.assertEqual(ctx.exception.code, "INVALID_DEFAULT")


class TestPresetValues(unittest.TestCase):
    def setUp(self) -> None:
        self.product = default_registry().resolve("PRODUCT")

    def test_apply_defaults_only_fills_absent_keys(self) -> None:
        values = apply_defaults(self.product, {"stock_quantity": None, "price_market": 10})
        self.assertIsNone(values["stock_quantity"])
        self.assertEqual(values["reorder_level"], 10)
        self.assertEqual(values["price_market"], 10)

    def test_apply_defaults_copies_mutable_defaults(self) -> None:
        role = default_registry().resolve("ROLE")
        first = apply_defaults(role, {})
        first["permissions"].append("x")
        self.assertEqual(apply_defaults(role, {})["permissions"], [])

    def test_validate_required(self) -> None:
        issues = validate_required(self.product, {"price_market": 5, "price_cost": None})
        self.assertEqual([i["code"] for i in issues], ["MISSING_REQUIRED_FIELD"])
        self.assertEqual(issues[0]["path"], "dynamic_fields.price_cost")
        self.assertEqual(issues[0]["detail"], {"field": "price_cost"})

    def test_falsy_values_are_not_missing(self) -> None:
        preset = EntityPreset(
            "WIDGET",
            fields=(
                _field("count", "number", required=True),
                _field("enabled", "boolean", required=True),
                _field("label", required=True),
            ),
        )
        self.assertEqual(validate_required(preset, {"count": 0, "enabled": False, "label": ""}), [])

    def test_defaults_leave_only_required_fields_without_default(self) -> None:
        for preset in default_registry():
            expected = sorted(d.name for d in preset.fields if d.required and not d.has_default)
            issues = validate_required(preset, apply_defaults(preset, {}))
            self.assertEqual(sorted(i["detail"]["field"] for i in issues), expected, preset.entity_type)

    def test_validate_values(self) -> None:
        coerced, issues = validate_values(self.product, {"price_market": "12.5", "stock_quantity": "many", "colour": "red"})
        self.assertEqual(coerced, {"price_market": 12.5})
        self.assertEqual(sorted(i["code"] for i in issues), ["TYPE_MISMATCH", "UNKNOWN_FIELD"])
        mismatch = next(i for i in issues if i["code"] == "TYPE_MISMATCH")
        self.assertEqual(mismatch["detail"], {"field": "stock_quantity", "expected": "number"})


class TestPermissions(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = default_registry()

    def test_permits(self) -> None:
        product = self.registry.resolve("PRODUCT")
        self.assertTrue(permits(product, "create", MANAGER))
        self.assertFalse(permits(product, "create", STAFF))
        self.assertTrue(permits(product, "view", STAFF))
        self.assertFalse(permits(product, "explode", OWNER))

    def test_visible_fields_hides_role_restricted(self) -> None:
        product = self.registry.resolve("PRODUCT")
        names = [d.name for d in visible_fields(product, RECEPTIONIST)]
        self.assertNotIn("price_cost", names)
        self.assertIn("price_market", names)
        self.assertIn("price_cost", [d.name for d in visible_fields(product, OWNER)])


if __name__ == "__main__":
    unittest.main()
