"""Salon domain accessors: presets plus name mapping, nothing else."""

from __future__ import annotations

from typing import Any

from appointment_workflow import APPOINTMENT_WORKFLOW
from entity_accessor import EntityAccessor
from entity_model import Entity
from entity_orchestrator import EntityOrchestrator


class ProductAccessor(EntityAccessor):
    field_aliases = {"price": "price_market", "cost": "price_cost", "stock": "stock_quantity"}
    relationship_aliases = {"category_id": "HAS_CATEGORY", "brand_id": "HAS_BRAND", "vendor_ids": "SUPPLIED_BY"}


class ServiceAccessor(EntityAccessor):
    field_aliases = {"price": "price_market", "duration": "duration_min"}
    relationship_aliases = {"category_id": "HAS_CATEGORY", "role_ids": "PERFORMED_BY_ROLE", "product_ids": "REQUIRES_PRODUCT"}


class StaffAccessor(EntityAccessor):
    field_aliases = {"rate": "hour_rate", "commission": "commission_rate"}
    relationship_aliases = {"role_ids": "HAS_ROLE", "manager_id": "REPORTS_TO", "service_ids": "CAN_PERFORM", "branch_ids": "MEMBER_OF"}


class CustomerAccessor(EntityAccessor):
    field_aliases = {"points": "loyalty_points"}
    relationship_aliases = {"referred_by": "REFERRED_BY", "stylist_id": "PREFERRED_STYLIST"}


class BranchAccessor(EntityAccessor):
    field_aliases = {"hours": "opening_hours"}


class AppointmentAccessor(EntityAccessor):
    field_aliases = {"start": "start_time", "end": "end_time"}
    relationship_aliases = {
        "customer_id": "FOR_CUSTOMER",
        "staff_id": "WITH_STAFF",
        "service_ids": "INCLUDES_SERVICE",
        "branch_id": "AT_BRANCH",
    }
    workflow = APPOINTMENT_WORKFLOW

    async def transition(self, entity_id: str, next_state: str) -> Entity:
        async with self._running("update"):
            return await self.orchestrator.transition_workflow(entity_id, self.workflow, next_state)

    async def restore_status(self, entity_id: str, state: str) -> Entity:
        async with self._running("update"):
            return await self.orchestrator.restore_workflow(entity_id, self.workflow, state)


def products(orchestrator: EntityOrchestrator, **filters: Any) -> ProductAccessor:
    return ProductAccessor(orchestrator, "PRODUCT", **filters)


def services(orchestrator: EntityOrchestrator, **filters: Any) -> ServiceAccessor:
    return ServiceAccessor(orchestrator, "SERVICE", **filters)


def staff(orchestrator: EntityOrchestrator, **filters: Any) -> StaffAccessor:
    return StaffAccessor(orchestrator, "STAFF", **filters)


def customers(orchestrator: EntityOrchestrator, **filters: Any) -> CustomerAccessor:
    return CustomerAccessor(orchestrator, "CUSTOMER", **filters)


def branches(orchestrator: EntityOrchestrator, **filters: Any) -> BranchAccessor:
    return BranchAccessor(orchestrator, "BRANCH", **filters)


def appointments(orchestrator: EntityOrchestrator, **filters: Any) -> AppointmentAccessor:
    return AppointmentAccessor(orchestrator, "APPOINTMENT", **filters)
