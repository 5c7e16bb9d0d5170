"""
Payment mutations against the school API: open a ledger entry for an unbilled child,
or append a payment to an existing entry.

Every check runs against freshly fetched feeds before anything is written, so a
rejected request leaves the ledger untouched. The service keeps no view of its own;
callers reconcile again after a successful mutation.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from fastapi import status

from app.clients.school_api import SchoolApiClient
from app.core.config import settings
from app.core.enums import PaymentMode
from app.core.exceptions import (
    AlreadyBilledError,
    InvalidAmountError,
    NotFoundError,
    ServiceError,
)

from .idempotency import APPEND_PAYMENT, CREATE_LEDGER, IdempotencyStore, request_fingerprint
from .loader import parse_records
from .reconciliation import ZERO, sanitize_amount
from .schemas import ChildRecord, PaymentLedgerEntry, TariffEntry
from .tariffs import TariffResolver

logger = logging.getLogger(__name__)

# Field of the append-payment body that carries the payment reference, per mode.
REFERENCE_FIELDS = {
    PaymentMode.CHEQUE: "numeroCheque",
    PaymentMode.TRANSFER: "referenceVirement",
    PaymentMode.CARD: "numeroTransaction",
}


def _wire_amount(amount: Decimal) -> Union[int, float]:
    return int(amount) if amount == amount.to_integral_value() else float(amount)


def _find_by_ledger_id(ledger: List[PaymentLedgerEntry], ledger_id: int) -> Optional[PaymentLedgerEntry]:
    found = None
    for entry in ledger:
        if entry.ledger_id == ledger_id:
            found = entry
    return found


def _find_by_child_id(ledger: List[PaymentLedgerEntry], child_id: int) -> Optional[PaymentLedgerEntry]:
    # Last observed wins, same rule as reconciliation.
    found = None
    for entry in ledger:
        if entry.child_id == child_id:
            found = entry
    return found


def remaining_balance(entry: PaymentLedgerEntry) -> Decimal:
    total_due, _ = sanitize_amount(entry.total_due)
    total_paid, _ = sanitize_amount(entry.total_paid)
    return max(ZERO, total_due - total_paid)


class PaymentMutationService:
    def __init__(
        self,
        client: SchoolApiClient,
        idempotency: Optional[IdempotencyStore] = None,
        default_tuition_amount: Decimal = settings.default_tuition_amount,
    ) -> None:
        self.client = client
        self.idempotency = idempotency
        self.default_tuition_amount = default_tuition_amount

    async def _load_ledger(self, school_year: Optional[str] = None) -> List[PaymentLedgerEntry]:
        ledger, _ = parse_records(await self.client.fetch_ledger(school_year=school_year), PaymentLedgerEntry)
        return ledger

    async def _claim(self, key: Optional[str], operation: str, fingerprint: str) -> Optional[PaymentLedgerEntry]:
        """Stored entry to replay, or None once the key is reserved for this request."""
        if not key or self.idempotency is None:
            return None
        stored = await self.idempotency.lookup(key, operation, fingerprint)
        if stored is None:
            stored = await self.idempotency.reserve(key, operation, fingerprint)
        return PaymentLedgerEntry.model_validate(stored) if stored is not None else None

    async def _remember(self, key: Optional[str], entry: PaymentLedgerEntry) -> None:
        if key and self.idempotency is not None:
            await self.idempotency.complete(key, entry.model_dump(mode="json", by_alias=True))

    async def _release(self, key: Optional[str]) -> None:
        if key and self.idempotency is not None:
            await self.idempotency.release(key)

    async def _entry_from_response(
        self,
        body: Optional[Dict[str, Any]],
        ledger_id: Optional[int] = None,
        child_id: Optional[int] = None,
        school_year: Optional[str] = None,
    ) -> PaymentLedgerEntry:
        if body is not None:
            parsed, _ = parse_records([body], PaymentLedgerEntry)
            if parsed:
                return parsed[0]
        # Response carried no dossier; read it back from the ledger feed.
        ledger = await self._load_ledger(school_year=school_year)
        entry = _find_by_ledger_id(ledger, ledger_id) if ledger_id is not None else _find_by_child_id(ledger, child_id)
        if entry is None:
            raise ServiceError("School API accepted the payment but the ledger entry could not be read back", status.HTTP_502_BAD_GATEWAY)
        return entry

    async def create_ledger_entry(
        self,
        child_id: int,
        amount: Decimal,
        school_year: str,
        payment_mode: PaymentMode = PaymentMode.CASH,
        comment: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentLedgerEntry:
        """Open the tuition dossier of an unbilled child with a first payment."""
        if amount <= 0:
            raise InvalidAmountError("Payment amount must be greater than zero")

        fingerprint = request_fingerprint(
            CREATE_LEDGER,
            {"child_id": child_id, "amount": str(amount), "school_year": school_year, "payment_mode": payment_mode.value},
        )
        replayed = await self._claim(idempotency_key, CREATE_LEDGER, fingerprint)
        if replayed is not None:
            return replayed

        try:
            entry = await self._open_entry(child_id, amount, school_year, payment_mode, comment, idempotency_key)
        except Exception:
            await self._release(idempotency_key)
            raise
        await self._remember(idempotency_key, entry)
        return entry

    async def _open_entry(
        self,
        child_id: int,
        amount: Decimal,
        school_year: str,
        payment_mode: PaymentMode,
        comment: Optional[str],
        idempotency_key: Optional[str],
    ) -> PaymentLedgerEntry:
        # Billed means billed for this school year, the same ledger the view reconciles.
        raw_children, raw_ledger, raw_tariffs = await asyncio.gather(
            self.client.fetch_children(),
            self.client.fetch_ledger(school_year=school_year),
            self.client.fetch_tariffs(),
        )
        ledger, _ = parse_records(raw_ledger, PaymentLedgerEntry)
        existing = _find_by_child_id(ledger, child_id)
        if existing is not None:
            raise AlreadyBilledError(child_id, existing.ledger_id)

        children, _ = parse_records(raw_children, ChildRecord)
        child = next((c for c in children if c.child_id == child_id), None)
        if child is None:
            raise NotFoundError(f"Child {child_id} not found in roster")

        tariff_rows, _ = parse_records(raw_tariffs, TariffEntry)
        tariffs = TariffResolver(tariff_rows, self.default_tuition_amount)
        total_due = child.tariff_hint if child.tariff_hint is not None else tariffs.resolve_amount(child.class_id, child.class_name)
        if amount > total_due:
            raise InvalidAmountError(f"Payment amount {amount} exceeds tuition due {total_due}")
        tariff_id = tariffs.resolve_tariff_id(child.class_id, child.class_name)
        if tariff_id is None:
            raise NotFoundError(f"No tariff configured for class {child.class_name or child.class_id}")

        body = {
            "enfantId": child_id,
            "tarifId": tariff_id,
            "anneeScolaire": school_year,
            "montantPaiement": _wire_amount(amount),
            "modePaiement": payment_mode.value,
            "commentaire": comment or f"Tuition payment opened for {child.full_name or f'child {child_id}'}",
        }
        response = await self.client.create_ledger_entry(body, idempotency_key=idempotency_key)
        entry = await self._entry_from_response(response, child_id=child_id, school_year=school_year)
        logger.info(
            "Opened ledger entry %s for child %s with %s (%s)",
            entry.ledger_id, child_id, amount, payment_mode.value,
        )
        return entry

    async def append_payment(
        self,
        ledger_id: int,
        amount: Decimal,
        payment_mode: PaymentMode = PaymentMode.CASH,
        reference: Optional[str] = None,
        comment: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentLedgerEntry:
        """Record a payment on an existing dossier; 0 < amount <= remaining balance."""
        if amount <= 0:
            raise InvalidAmountError("Payment amount must be greater than zero")

        fingerprint = request_fingerprint(
            APPEND_PAYMENT,
            {"ledger_id": ledger_id, "amount": str(amount), "payment_mode": payment_mode.value, "reference": reference},
        )
        replayed = await self._claim(idempotency_key, APPEND_PAYMENT, fingerprint)
        if replayed is not None:
            return replayed

        try:
            updated = await self._record_payment(ledger_id, amount, payment_mode, reference, comment, idempotency_key)
        except Exception:
            await self._release(idempotency_key)
            raise
        await self._remember(idempotency_key, updated)
        return updated

    async def _record_payment(
        self,
        ledger_id: int,
        amount: Decimal,
        payment_mode: PaymentMode,
        reference: Optional[str],
        comment: Optional[str],
        idempotency_key: Optional[str],
    ) -> PaymentLedgerEntry:
        entry = _find_by_ledger_id(await self._load_ledger(), ledger_id)
        if entry is None:
            raise NotFoundError(f"Ledger entry {ledger_id} not found")
        remaining = remaining_balance(entry)
        if amount > remaining:
            raise InvalidAmountError(f"Payment amount {amount} exceeds remaining balance {remaining}")

        body: Dict[str, Any] = {
            "montant": _wire_amount(amount),
            "modePaiement": payment_mode.value,
            "numeroCheque": None,
            "referenceVirement": None,
            "numeroTransaction": None,
            "commentaire": comment or "Tuition payment",
        }
        reference_field = REFERENCE_FIELDS.get(payment_mode)
        if reference_field:
            body[reference_field] = reference

        response = await self.client.append_payment(ledger_id, body, idempotency_key=idempotency_key)
        updated = await self._entry_from_response(response, ledger_id=ledger_id)
        logger.info("Appended %s (%s) to ledger entry %s", amount, payment_mode.value, ledger_id)
        return updated
