import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from app.stores import MemoryEntityBackend
from entity_backend import BackendError
from entity_errors import CompensationFailed, IllegalTransitionError, InvalidSmartCode, TransactionNotFound, ValidationError
from entity_orchestrator import ArchivedFallback, EntityOrchestrator
from entity_presets import default_registry
from transaction_orchestrator import TransactionOrchestrator, build_lines


class _LockedLedgerBackend(MemoryEntityBackend):
    """Refuses to mark transactions reversed; optionally refuses voids too."""

    def __init__(self, refuse_void: bool = False) -> None:
        super().__init__()
        self.refused = {"reversed", "voided"} if refuse_void else {"reversed"}

    async def transaction_update(self, transaction_id, patch):
        if patch.get("status") in self.refused:
            raise BackendError("ledger locked", status=500)
        return await super().transaction_update(transaction_id, patch)


class TestBuildLines(unittest.TestCase):
    def test_defaults(self) -> None:
        lines = build_lines([{"unit_amount": "12.5"}, {"quantity": 3, "unit_amount": 2, "line_type": "service"}])
        self.assertEqual([line.line_number for line in lines], [1, 2])
        self.assertEqual(lines[0].quantity, 1)
        self.assertEqual(lines[0].line_amount, 12.5)
        self.assertEqual(lines[1].line_amount, 6)
        self.assertEqual(lines[1].line_type, "service")

    def test_explicit_line_amount_wins(self) -> None:
        self.assertEqual(build_lines([{"quantity": 2, "unit_amount": 10, "line_amount": 15}])[0].line_amount, 15)

    def test_bad_lines(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            build_lines([{"quantity": "two"}])
        self.assertEqual(ctx.exception.path, "lines[0].quantity")
        with self.assertRaises(ValidationError):
            build_lines(["not a line"])


class TestTransactionOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = MemoryEntityBackend()
        self.entities = EntityOrchestrator(self.backend, default_registry())
        self.txns = TransactionOrchestrator(self.backend, "SALON")
        self.customer = await self.entities.create("CUSTOMER", "Ada", dynamic_fields={"phone": "555-0100"})

    async def _sale(self, **kwargs):
        return await self.txns.create(
            "sale",
            lines=[{"quantity": 2, "unit_amount": 15}, {"unit_amount": 5}],
            transaction_date="2024-06-01",
            source_entity_id=self.customer.id,
            **kwargs,
        )

    async def test_create_totals_and_smart_code(self) -> None:
        txn = await self._sale()
        self.assertEqual(txn.transaction_type, "SALE")
        self.assertEqual(txn.status, "draft")
        self.assertEqual(txn.total_amount, 35)
        self.assertEqual(txn.transaction_date, "2024-06-01T00:00:00Z")
        self.assertEqual(txn.smart_code, "HERA.SALON.SALE.TXN.SALE.V1")
        self.assertEqual(len(txn.lines), 2)

    async def test_create_validation(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            await self.txns.create("")
        self.assertEqual(ctx.exception.code, "INVALID_TRANSACTION_TYPE")
        with self.assertRaises(InvalidSmartCode):
            await self.txns.create("SALE", smart_code="HERA.SALE")
        with self.assertRaises(ValidationError) as ctx:
            await self.txns.create("SALE", source_entity_id="missing")
        self.assertEqual(ctx.exception.code, "REFERENCE_NOT_FOUND")

    async def test_draft_lines_are_editable(self) -> None:
        txn = await self._sale()
        updated = await self.txns.update(txn.id, lines=[{"quantity": 1, "unit_amount": 50}])
        self.assertEqual(updated.total_amount, 50)
        self.assertEqual(len(updated.lines), 1)

    async def test_finalized_lines_are_immutable(self) -> None:
        txn = await self._sale(finalize=True)
        self.assertEqual(txn.status, "finalized")
        with self.assertRaises(ValidationError) as ctx:
            await self.txns.update(txn.id, lines=[])
        self.assertEqual(ctx.exception.code, "TRANSACTION_LINES_IMMUTABLE")
        with self.assertRaises(ValidationError) as ctx:
            await self.txns.update(txn.id, header_patch={"total_amount": 1})
        self.assertEqual(ctx.exception.code, "TRANSACTION_IMMUTABLE")
        noted = await self.txns.update(txn.id, header_patch={"metadata": {"note": "paid cash"}})
        self.assertEqual(noted.metadata["note"], "paid cash")

    async def test_unknown_header_field(self) -> None:
        txn = await self._sale()
        with self.assertRaises(ValidationError) as ctx:
            await self.txns.update(txn.id, header_patch={"status": "finalized"})
        self.assertEqual(ctx.exception.code, "UNKNOWN_TRANSACTION_FIELD")

    async def test_finalize_then_void(self) -> None:
        txn = await self._sale()
        finalized = await self.txns.finalize(txn.id)
        self.assertEqual(finalized.status, "finalized")
        with self.assertRaises(ValidationError):
            await self.txns.void(txn.id, " ")
        voided = await self.txns.void(txn.id, "wrong customer")
        self.assertEqual(voided.status, "voided")
        self.assertEqual(voided.metadata["void_reason"], "wrong customer")
        self.assertIn("voided_at", voided.metadata)
        with self.assertRaises(IllegalTransitionError):
            await self.txns.finalize(txn.id)

    async def test_reverse_posts_negated_transaction(self) -> None:
        txn = await self._sale(finalize=True)
        reversal = await self.txns.reverse(txn.id, "refund")
        self.assertEqual(reversal.status, "finalized")
        self.assertEqual(reversal.total_amount, -35)
        self.assertEqual([line.line_amount for line in reversal.lines], [-30, -5])
        self.assertEqual(reversal.metadata["reversal_of"], txn.id)
        original = await self.txns.get(txn.id)
        self.assertEqual(original.status, "reversed")
        self.assertEqual(original.metadata["reversed_by"], reversal.id)

    async def test_reverse_requires_finalized(self) -> None:
        txn = await self._sale()
        with self.assertRaises(IllegalTransitionError):
            await self.txns.reverse(txn.id)
        self.assertEqual(len(await self.txns.query()), 1)

    async def test_delete_drafts_only(self) -> None:
        draft = await self._sale()
        await self.txns.delete(draft.id)
        with self.assertRaises(TransactionNotFound):
            await self.txns.get(draft.id)
        final = await self._sale(finalize=True)
        with self.assertRaises(IllegalTransitionError) as ctx:
            await self.txns.delete(final.id)
        self.assertEqual(ctx.exception.reason, "not_allowed")

    async def test_query(self) -> None:
        await self._sale()
        await self._sale(finalize=True)
        await self.txns.create("REFUND")
        self.assertEqual(len(await self.txns.query(transaction_type="sale")), 2)
        self.assertEqual(len(await self.txns.query(status="finalized")), 1)
        self.assertEqual(len(await self.txns.query(source_entity_id=self.customer.id)), 2)
        self.assertEqual(len(await self.txns.query(limit=1)), 1)
        with self.assertRaises(ValidationError):
            await self.txns.query(offset=-1)

    async def test_referenced_customer_is_tombstoned_on_hard_delete(self) -> None:
        await self._sale()
        outcome = await self.entities.delete(self.customer.id, hard_delete=True)
        self.assertIsInstance(outcome, ArchivedFallback)
        self.assertEqual(outcome.entity.status, "deleted")


class TestReverseCompensation(unittest.IsolatedAsyncioTestCase):
    async def _finalized_sale(self, backend):
        self.txns = TransactionOrchestrator(backend, "SALON")
        return await self.txns.create("sale", lines=[{"quantity": 1, "unit_amount": 20}], finalize=True)

    async def test_unrecorded_reversal_is_voided(self) -> None:
        txn = await self._finalized_sale(_LockedLedgerBackend())
        with self.assertRaises(BackendError):
            await self.txns.reverse(txn.id, "refund")
        self.assertEqual((await self.txns.get(txn.id)).status, "finalized")
        voided = await self.txns.query(status="voided")
        self.assertEqual(len(voided), 1)
        self.assertEqual(voided[0].metadata["reversal_of"], txn.id)
        self.assertEqual(voided[0].metadata["void_reason"], f"reversal of {txn.id} was not recorded")
        self.assertEqual([t.id for t in await self.txns.query(status="finalized")], [txn.id])

    async def test_failed_void_surfaces_both_errors(self) -> None:
        txn = await self._finalized_sale(_LockedLedgerBackend(refuse_void=True))
        with self.assertRaises(CompensationFailed) as ctx:
            await self.txns.reverse(txn.id)
        self.assertEqual(ctx.exception.conflict.message, "ledger locked")
        self.assertEqual(ctx.exception.error.message, "ledger locked")
        self.assertIn("could not be voided", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
