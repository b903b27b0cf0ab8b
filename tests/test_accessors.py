import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from app.stores import MemoryEntityBackend
from domain_accessors import appointments, branches, customers, products, services, staff
from entity_errors import IllegalTransitionError, MissingRequiredField, UnknownField
from entity_orchestrator import Archived, EntityOrchestrator
from entity_presets import default_registry


class TestEntityAccessor(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.orch = EntityOrchestrator(MemoryEntityBackend(), default_registry())
        self.category = await self.orch.create("CATEGORY", "Hair")

    async def test_aliases_map_to_fields_and_relationships(self) -> None:
        accessor = products(self.orch)
        product = await accessor.create("Shampoo", price=12, cost=4, stock=20, category_id=self.category.id, sku="SH-1")
        self.assertEqual(product.field_value("price_market"), 12)
        self.assertEqual(product.field_value("price_cost"), 4)
        self.assertEqual(product.field_value("stock_quantity"), 20)
        self.assertEqual(product.field_value("sku"), "SH-1")
        self.assertEqual(product.targets("HAS_CATEGORY"), [self.category.id])

    async def test_unknown_keyword_is_rejected(self) -> None:
        with self.assertRaises(UnknownField):
            await products(self.orch).create("Shampoo", price=1, cost=1, colour="red")

    async def test_entities_follow_cache(self) -> None:
        accessor = products(self.orch)
        self.assertEqual(accessor.entities, [])
        await accessor.load()
        product = await accessor.create("Shampoo", price=12, cost=4)
        self.assertEqual([e.id for e in accessor.entities], [product.id])
        await accessor.update(product.id, price=14)
        self.assertEqual(accessor.entities[0].field_value("price_market"), 14)
        outcome = await accessor.delete(product.id)
        self.assertIsInstance(outcome, Archived)
        self.assertEqual(accessor.entities, [])

    async def test_filtered_accessor(self) -> None:
        await products(self.orch).create("Shampoo", price=12, cost=4, category_id=self.category.id)
        await products(self.orch).create("Clipper", price=40, cost=20)
        in_category = products(self.orch, filter_rel={"HAS_CATEGORY": self.category.id})
        loaded = await in_category.load()
        self.assertEqual([e.entity_name for e in loaded], ["Shampoo"])
        self.assertEqual([e.entity_name for e in in_category.entities], ["Shampoo"])

    async def test_errors_are_recorded_and_raised(self) -> None:
        accessor = customers(self.orch)
        with self.assertRaises(MissingRequiredField):
            await accessor.create("Ada")
        self.assertIsInstance(accessor.error, MissingRequiredField)
        self.assertFalse(accessor.is_creating)

    async def test_archive_restore(self) -> None:
        accessor = services(self.orch)
        service = await accessor.create("Haircut", price=30, duration=45)
        self.assertEqual(service.field_value("duration_min"), 45)
        self.assertEqual((await accessor.archive(service.id)).status, "archived")
        self.assertEqual((await accessor.restore(service.id)).status, "active")

    async def test_as_dict_shape(self) -> None:
        state = branches(self.orch).as_dict()
        for key in ("entities", "is_loading", "error", "create", "update", "archive", "restore", "delete", "is_creating", "is_updating", "is_deleting"):
            self.assertIn(key, state)

    async def test_staff_relationships(self) -> None:
        manager = await staff(self.orch).create("Morgan", phone="1", email="m@example.com")
        member = await staff(self.orch).create("Sam", phone="2", email="s@example.com", manager_id=manager.id, rate=25)
        self.assertEqual(member.targets("REPORTS_TO"), [manager.id])
        self.assertEqual(member.field_value("hour_rate"), 25)


class TestAppointmentAccessor(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.orch = EntityOrchestrator(MemoryEntityBackend(), default_registry())
        self.customer = await customers(self.orch).create("Ada", phone="555-0100")
        self.accessor = appointments(self.orch)

    async def test_booking_flow(self) -> None:
        appt = await self.accessor.create(
            "Ada - colour",
            start="2024-05-01T10:00:00Z",
            end="2024-05-01T11:00:00Z",
            customer_id=self.customer.id,
        )
        self.assertEqual(appt.targets("FOR_CUSTOMER"), [self.customer.id])
        checked_in = await self.accessor.transition(appt.id, "checked_in")
        self.assertEqual(checked_in.field_value("appointment_status"), "checked_in")
        with self.assertRaises(IllegalTransitionError):
            await self.accessor.transition(appt.id, "booked")
        self.assertIsInstance(self.accessor.error, IllegalTransitionError)
        restored = await self.accessor.restore_status(appt.id, "booked")
        self.assertEqual(restored.field_value("appointment_status"), "booked")

    async def test_plain_update_cannot_skip_the_workflow(self) -> None:
        appt = await self.accessor.create("Ada - trim", start="2024-05-02T10:00:00Z", end="2024-05-02T10:30:00Z")
        await self.accessor.transition(appt.id, "completed")
        with self.assertRaises(IllegalTransitionError):
            await self.accessor.update(appt.id, appointment_status="draft")
        with self.assertRaises(IllegalTransitionError):
            await self.accessor.update(appt.id, appointment_status="teleported")
        self.assertIsInstance(self.accessor.error, IllegalTransitionError)
        current = await self.orch.get(appt.id)
        self.assertEqual(current.field_value("appointment_status"), "completed")


if __name__ == "__main__":
    unittest.main()
