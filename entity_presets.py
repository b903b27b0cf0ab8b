"""Salon entity presets and the default registry."""

from __future__ import annotations

from typing import Any, List, Tuple

from hera.smart_code import build

from appointment_workflow import APPOINTMENT_WORKFLOW
from preset_registry import (
    MISSING,
    DynamicFieldDefinition,
    EntityPreset,
    PresetRegistry,
    RelationshipDefinition,
)
from status_lifecycle import WorkflowDefinition


OWNER = "owner"
MANAGER = "manager"
RECEPTIONIST = "receptionist"
STAFF = "staff"
ROLES = (OWNER, MANAGER, RECEPTIONIST, STAFF)

_MANAGERS = (OWNER, MANAGER)
_FRONT_DESK = (OWNER, MANAGER, RECEPTIONIST)


def _field(
    industry: str,
    entity_type: str,
    name: str,
    field_type: str,
    *,
    required: bool = False,
    default: Any = MISSING,
    roles: Tuple[str, ...] | None = None,
    label: str | None = None,
) -> DynamicFieldDefinition:
    return DynamicFieldDefinition(
        name=name,
        type=field_type,
        smart_code=str(build(industry, entity_type, "DYN", name)),
        required=required,
        default_value=default,
        roles=roles,
        label=label,
    )


def _rel(industry: str, entity_type: str, rel_type: str, cardinality: str) -> RelationshipDefinition:
    return RelationshipDefinition(
        type=rel_type,
        smart_code=str(build(industry, entity_type, "REL", rel_type)),
        cardinality=cardinality,
    )


def _preset(
    industry: str,
    entity_type: str,
    fields: list,
    relationships: list,
    permissions: dict | None = None,
    label: str | None = None,
    workflow: WorkflowDefinition | None = None,
) -> EntityPreset:
    definitions = []
    for name, field_type, *options in fields:
        definitions.append(_field(industry, entity_type, name, field_type, **(options[0] if options else {})))
    return EntityPreset(
        entity_type=entity_type,
        fields=tuple(definitions),
        relationships=tuple(_rel(industry, entity_type, rel_type, cardinality) for rel_type, cardinality in relationships),
        permissions=permissions or {},
        smart_code=str(build(industry, entity_type, "ENT", entity_type)),
        label=label,
        workflow=workflow,
    )


def build_presets(industry: str = "SALON") -> List[EntityPreset]:
    return [
        _preset(
            industry,
            "PRODUCT",
            [
                ("price_market", "number", {"required": True, "label": "Price"}),
                ("price_cost", "number", {"required": True, "roles": _MANAGERS, "label": "Cost"}),
                ("sku", "text"),
                ("stock_quantity", "number", {"default": 0}),
                ("reorder_level", "number", {"default": 10}),
                ("size", "text"),
                ("barcode", "text"),
            ],
            [("HAS_CATEGORY", "one"), ("HAS_BRAND", "one"), ("SUPPLIED_BY", "many")],
            {"create": _MANAGERS, "edit": _FRONT_DESK, "delete": _MANAGERS},
            "Product",
        ),
        _preset(
            industry,
            "SERVICE",
            [
                ("price_market", "number", {"required": True, "label": "Price"}),
                ("duration_min", "number", {"required": True, "label": "Duration (minutes)"}),
                ("commission_rate", "number", {"default": 0.5}),
                ("description", "text"),
                ("active", "boolean", {"default": True}),
            ],
            [("HAS_CATEGORY", "one"), ("PERFORMED_BY_ROLE", "many"), ("REQUIRES_PRODUCT", "many")],
            {"create": _MANAGERS, "edit": _FRONT_DESK, "delete": _MANAGERS},
            "Service",
        ),
        _preset(
            industry,
            "CUSTOMER",
            [
                ("phone", "text", {"required": True}),
                ("email", "text"),
                ("vip", "boolean", {"default": False}),
                ("notes", "text"),
                ("birthday", "date"),
                ("loyalty_points", "number", {"default": 0}),
                ("lifetime_value", "number", {"default": 0, "roles": _MANAGERS}),
            ],
            [("REFERRED_BY", "one"), ("PREFERRED_STYLIST", "one")],
            {"edit": _FRONT_DESK, "delete": _MANAGERS},
            "Customer",
        ),
        _preset(
            industry,
            "STAFF",
            [
                ("phone", "text", {"required": True}),
                ("email", "text", {"required": True}),
                ("hour_rate", "number", {"default": 0, "roles": _MANAGERS}),
                ("commission_rate", "number", {"default": 0.5, "roles": _MANAGERS}),
                ("active", "boolean", {"default": True}),
                ("hire_date", "date"),
            ],
            [("HAS_ROLE", "many"), ("REPORTS_TO", "one"), ("CAN_PERFORM", "many"), ("MEMBER_OF", "many")],
            {"create": _MANAGERS, "edit": _MANAGERS, "delete": (OWNER,), "view": _FRONT_DESK},
            "Staff",
        ),
        _preset(
            industry,
            "ROLE",
            [
                ("description", "text"),
                ("permissions", "json", {"default": []}),
                ("active", "boolean", {"default": True}),
            ],
            [],
            {"create": (OWNER,), "edit": (OWNER,), "delete": (OWNER,)},
            "Role",
        ),
        _preset(
            industry,
            "CATEGORY",
            [
                ("display_order", "number", {"default": 0}),
                ("icon", "text"),
                ("color", "text"),
                ("active", "boolean", {"default": True}),
            ],
            [("PARENT_CATEGORY", "one")],
            {"create": _MANAGERS, "edit": _MANAGERS, "delete": _MANAGERS},
            "Category",
        ),
        _preset(
            industry,
            "BRAND",
            [
                ("website", "text"),
                ("logo_url", "text"),
                ("active", "boolean", {"default": True}),
            ],
            [("OWNED_BY_VENDOR", "one")],
            {"create": _MANAGERS, "edit": _MANAGERS, "delete": _MANAGERS},
            "Brand",
        ),
        _preset(
            industry,
            "VENDOR",
            [
                ("phone", "text", {"required": True}),
                ("email", "text"),
                ("website", "text"),
                ("payment_terms", "text", {"default": "NET30"}),
                ("credit_limit", "number", {"default": 0}),
                ("active", "boolean", {"default": True}),
            ],
            [("SUPPLIES_CATEGORY", "many")],
            {"create": _MANAGERS, "edit": _MANAGERS, "delete": _MANAGERS},
            "Vendor",
        ),
        _preset(
            industry,
            "BRANCH",
            [
                ("address", "text", {"required": True}),
                ("phone", "text"),
                ("timezone", "text", {"default": "UTC"}),
                ("opening_hours", "json"),
                ("active", "boolean", {"default": True}),
            ],
            [],
            {"create": (OWNER,), "edit": _MANAGERS, "delete": (OWNER,)},
            "Branch",
        ),
        _preset(
            industry,
            "APPOINTMENT",
            [
                ("start_time", "date", {"required": True}),
                ("end_time", "date", {"required": True}),
                ("notes", "text"),
                ("appointment_status", "text", {"default": "draft"}),
                ("price", "number"),
                ("reminder_sent", "boolean", {"default": False}),
            ],
            [("FOR_CUSTOMER", "one"), ("WITH_STAFF", "one"), ("INCLUDES_SERVICE", "many"), ("AT_BRANCH", "one")],
            {"delete": _MANAGERS},
            "Appointment",
            APPOINTMENT_WORKFLOW,
        ),
    ]


def default_registry(industry: str = "SALON") -> PresetRegistry:
    return PresetRegistry(build_presets(industry), industry=industry)
