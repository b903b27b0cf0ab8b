"""Transaction lifecycle: draft, finalize, void, reverse."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping

from hera.field_types import FieldTypeMismatch, coerce
from hera.smart_code import build as build_smart_code
from hera.smart_code import validate as validate_smart_code

from entity_backend import TRANSPORT, EntityBackend, classify_backend_error, to_domain_error
from entity_errors import CompensationFailed, EntityError, IllegalTransitionError, InvalidSmartCode, TransactionNotFound, ValidationError
from entity_model import TXN_DRAFT, TXN_FINALIZED, TXN_REVERSED, TXN_VOIDED, Transaction, TransactionLine
from status_lifecycle import NOT_ALLOWED, WorkflowDefinition


logger = logging.getLogger("hera.transactions")

TRANSACTION_WORKFLOW = WorkflowDefinition(
    name="transaction",
    states=(TXN_DRAFT, TXN_FINALIZED, TXN_VOIDED, TXN_REVERSED),
    transitions={
        TXN_DRAFT: frozenset({TXN_FINALIZED, TXN_VOIDED}),
        TXN_FINALIZED: frozenset({TXN_VOIDED, TXN_REVERSED}),
        TXN_VOIDED: frozenset(),
        TXN_REVERSED: frozenset(),
    },
    status_field="status",
    initial_state=TXN_DRAFT,
)

_TYPE_RE = re.compile(r"[A-Z][A-Z0-9_]*")
_HEADER_KEYS = ("transaction_date", "source_entity_id", "target_entity_id", "total_amount", "metadata")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _number(value: Any, path: str) -> int | float:
    try:
        number = coerce("number", value, path)
    except FieldTypeMismatch as exc:
        raise ValidationError("TYPE_MISMATCH", exc.message, path) from exc
    if number is None:
        raise ValidationError("TYPE_MISMATCH", "Expected number, got None", path)
    return number


def build_lines(lines: List[Mapping[str, Any]] | None) -> List[TransactionLine]:
    """Normalize raw line dicts; ``line_amount`` defaults to quantity * unit_amount."""
    result = []
    for idx, raw in enumerate(lines or []):
        path = f"lines[{idx}]"
        if not isinstance(raw, Mapping):
            raise ValidationError("INVALID_LINE", "line must be an object", path)
        quantity = _number(raw.get("quantity", 1), f"{path}.quantity")
        unit_amount = _number(raw.get("unit_amount", 0), f"{path}.unit_amount")
        if raw.get("line_amount") is None:
            line_amount = quantity * unit_amount
        else:
            line_amount = _number(raw.get("line_amount"), f"{path}.line_amount")
        result.append(
            TransactionLine(
                line_number=idx + 1,
                line_type=str(raw.get("line_type") or "item"),
                entity_id=raw.get("entity_id"),
                quantity=quantity,
                unit_amount=unit_amount,
                line_amount=line_amount,
                smart_code=raw.get("smart_code"),
            )
        )
    return result


def _line_input(line: TransactionLine) -> dict:
    data = line.to_dict()
    data.pop("line_number", None)
    return data


class TransactionOrchestrator:
    def __init__(self, backend: EntityBackend, industry: str = "SALON") -> None:
        self.backend = backend
        self.industry = industry

    async def _call(self, operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except EntityError:
            raise
        except Exception as exc:
            if classify_backend_error(exc) == TRANSPORT:
                logger.warning("backend_transport_error op=%s error=%s", operation, exc)
                raise
            raise to_domain_error(exc) from exc

    async def get(self, transaction_id: str) -> Transaction:
        txn = await self._call("transaction_get", self.backend.transaction_get(transaction_id))
        if txn is None:
            raise TransactionNotFound(transaction_id)
        return txn

    async def create(
        self,
        transaction_type: str,
        lines: List[Mapping[str, Any]] | None = None,
        transaction_date: Any = None,
        source_entity_id: str | None = None,
        target_entity_id: str | None = None,
        total_amount: Any = None,
        smart_code: str | None = None,
        metadata: dict | None = None,
        finalize: bool = False,
    ) -> Transaction:
        if not isinstance(transaction_type, str) or not _TYPE_RE.fullmatch(transaction_type.strip().upper()):
            raise ValidationError("INVALID_TRANSACTION_TYPE", "transaction_type must be an uppercase token", "transaction_type")
        transaction_type = transaction_type.strip().upper()
        if smart_code is None:
            smart_code = str(build_smart_code(self.industry, transaction_type, "TXN", transaction_type))
        else:
            result = validate_smart_code(smart_code)
            if not result["valid"]:
                raise InvalidSmartCode(smart_code, result["errors"])
        try:
            txn_date = coerce("date", transaction_date, "transaction_date") if transaction_date is not None else _now()
        except FieldTypeMismatch as exc:
            raise ValidationError("TYPE_MISMATCH", exc.message, "transaction_date") from exc
        built = build_lines(lines)
        total = sum(line.line_amount for line in built) if total_amount is None else _number(total_amount, "total_amount")
        payload = {
            "transaction_type": transaction_type,
            "transaction_date": txn_date,
            "total_amount": total,
            "smart_code": smart_code,
            "status": TXN_FINALIZED if finalize else TXN_DRAFT,
            "source_entity_id": source_entity_id,
            "target_entity_id": target_entity_id,
            "metadata": dict(metadata or {}),
            "lines": [_line_input(line) for line in built],
        }
        txn = await self._call("transaction_create", self.backend.transaction_create(payload))
        logger.info("transaction_created transaction_id=%s type=%s status=%s", txn.id, txn.transaction_type, txn.status)
        return txn

    async def update(
        self,
        transaction_id: str,
        header_patch: Mapping[str, Any] | None = None,
        lines: List[Mapping[str, Any]] | None = None,
    ) -> Transaction:
        current = await self.get(transaction_id)
        header_patch = dict(header_patch or {})
        unknown = [key for key in header_patch if key not in _HEADER_KEYS]
        if unknown:
            raise ValidationError("UNKNOWN_TRANSACTION_FIELD", f"Cannot patch {', '.join(sorted(unknown))}", unknown[0])
        if current.status != TXN_DRAFT:
            if lines is not None:
                raise ValidationError(
                    "TRANSACTION_LINES_IMMUTABLE",
                    f"Lines of a {current.status} transaction cannot be edited; void or reverse it instead",
                    "lines",
                )
            if any(key != "metadata" for key in header_patch):
                raise ValidationError(
                    "TRANSACTION_IMMUTABLE",
                    f"Only metadata can change on a {current.status} transaction",
                    "header_patch",
                )

        patch: Dict[str, Any] = {}
        if "transaction_date" in header_patch:
            try:
                patch["transaction_date"] = coerce("date", header_patch["transaction_date"], "transaction_date")
            except FieldTypeMismatch as exc:
                raise ValidationError("TYPE_MISMATCH", exc.message, "transaction_date") from exc
        for key in ("source_entity_id", "target_entity_id"):
            if key in header_patch:
                patch[key] = header_patch[key]
        if "metadata" in header_patch:
            patch["metadata"] = {**current.metadata, **dict(header_patch["metadata"] or {})}
        if lines is not None:
            built = build_lines(lines)
            patch["lines"] = [_line_input(line) for line in built]
            patch["total_amount"] = sum(line.line_amount for line in built)
        if header_patch.get("total_amount") is not None:
            patch["total_amount"] = _number(header_patch["total_amount"], "total_amount")
        if not patch:
            return current
        txn = await self._call("transaction_update", self.backend.transaction_update(transaction_id, patch))
        logger.info("transaction_updated transaction_id=%s keys=%s", transaction_id, sorted(patch))
        return txn

    async def _set_status(self, current: Transaction, status: str, metadata: dict | None = None) -> Transaction:
        TRANSACTION_WORKFLOW.check_transition(current.status, status)
        patch: Dict[str, Any] = {"status": status}
        if metadata:
            patch["metadata"] = {**current.metadata, **metadata}
        return await self._call("transaction_update", self.backend.transaction_update(current.id, patch))

    async def finalize(self, transaction_id: str) -> Transaction:
        current = await self.get(transaction_id)
        return await self._set_status(current, TXN_FINALIZED)

    async def void(self, transaction_id: str, reason: str) -> Transaction:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("VOID_REASON_REQUIRED", "A reason is required to void a transaction", "reason")
        current = await self.get(transaction_id)
        txn = await self._set_status(current, TXN_VOIDED, {"void_reason": reason.strip(), "voided_at": _now()})
        logger.info("transaction_voided transaction_id=%s", transaction_id)
        return txn

    async def reverse(self, transaction_id: str, reason: str | None = None) -> Transaction:
        """Post a correcting transaction that negates ``transaction_id``.

        Returns the correcting transaction; the original is marked reversed.
        """
        current = await self.get(transaction_id)
        TRANSACTION_WORKFLOW.check_transition(current.status, TXN_REVERSED)
        reversal = await self.create(
            current.transaction_type,
            lines=[
                {
                    "line_type": line.line_type,
                    "entity_id": line.entity_id,
                    "quantity": -line.quantity,
                    "unit_amount": line.unit_amount,
                    "line_amount": -line.line_amount,
                    "smart_code": line.smart_code,
                }
                for line in current.lines
            ],
            source_entity_id=current.source_entity_id,
            target_entity_id=current.target_entity_id,
            total_amount=-current.total_amount,
            smart_code=current.smart_code,
            metadata={"reversal_of": current.id, "reason": reason},
            finalize=True,
        )
        try:
            await self._set_status(current, TXN_REVERSED, {"reversed_by": reversal.id, "reversal_reason": reason})
        except Exception as exc:
            logger.error("transaction_reverse_mark_failed transaction_id=%s reversal_id=%s", current.id, reversal.id)
            await self._void_orphan_reversal(current, reversal, exc)
            raise
        logger.info("transaction_reversed transaction_id=%s reversal_id=%s", current.id, reversal.id)
        return reversal

    async def _void_orphan_reversal(self, current: Transaction, reversal: Transaction, error: BaseException) -> None:
        try:
            await self._set_status(
                reversal,
                TXN_VOIDED,
                {"void_reason": f"reversal of {current.id} was not recorded", "voided_at": _now()},
            )
        except Exception as exc:
            logger.error("transaction_reverse_compensation_failed reversal_id=%s error=%s", reversal.id, exc)
            raise CompensationFailed(
                reversal.id,
                error,
                exc,
                f"Reversal {reversal.id} was not recorded on {current.id} and could not be voided: {exc}",
            ) from exc
        logger.warning("transaction_reversal_voided transaction_id=%s reversal_id=%s", current.id, reversal.id)

    async def delete(self, transaction_id: str) -> dict:
        current = await self.get(transaction_id)
        if current.status != TXN_DRAFT:
            raise IllegalTransitionError(
                current.status,
                "deleted",
                NOT_ALLOWED,
                f"Only draft transactions can be deleted; {current.status} ones must be voided or reversed",
            )
        result = await self._call("transaction_delete", self.backend.transaction_delete(transaction_id))
        logger.info("transaction_deleted transaction_id=%s", transaction_id)
        return result

    async def query(
        self,
        transaction_type: str | None = None,
        status: str | None = None,
        source_entity_id: str | None = None,
        target_entity_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> List[Transaction]:
        filters: Dict[str, Any] = {}
        if transaction_type:
            filters["transaction_type"] = transaction_type.strip().upper()
        for key, value in (("status", status), ("source_entity_id", source_entity_id), ("target_entity_id", target_entity_id)):
            if value is not None:
                filters[key] = value
        for key, value in (("limit", limit), ("offset", offset)):
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError("INVALID_FILTER", f"{key} must be a non-negative integer", f"filters.{key}")
            filters[key] = value
        return await self._call("transaction_query", self.backend.transaction_query(filters))
