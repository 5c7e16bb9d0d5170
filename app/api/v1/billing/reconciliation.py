"""
Merge the child roster and the payment ledger into one EnrollmentAccount per child.

The two feeds are independent: a child may have no ledger entry yet (child_only),
a ledger entry may reference a child missing from the roster (ledger_only).
Pure function of its inputs; malformed amounts are clamped to 0 and counted,
never raised.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from app.core.enums import AccountOrigin, EnrollmentStatus, PaymentStatus

from .schemas import ChildRecord, EnrollmentAccount, PaymentLedgerEntry, ReconciliationResult

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
DEFAULT_ELIGIBILITY_THRESHOLD = Decimal("33.33")
UNASSIGNED_CLASS_NAME = "Unassigned"
GUARDIAN_NOT_PROVIDED = "Guardian not provided"

TariffLookup = Callable[[Optional[int], Optional[str]], Decimal]


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def sanitize_amount(value: Optional[Decimal]) -> Tuple[Decimal, bool]:
    """Return (usable amount, anomalous)."""
    if value is None or not value.is_finite() or value < 0:
        return ZERO, True
    return value, False


def payment_status(total_due: Decimal, total_paid: Decimal) -> PaymentStatus:
    # Checked first so a fully paid (or zero-due) dossier is never reported as pending.
    if total_paid >= total_due:
        return PaymentStatus.complete
    if total_paid > 0:
        return PaymentStatus.partial
    return PaymentStatus.pending


def percentage_paid(total_due: Decimal, total_paid: Decimal) -> Decimal:
    if total_due <= 0:
        return round2(ZERO)
    return round2(min(total_paid / total_due * HUNDRED, HUNDRED))


def _build_account(
    *,
    child_id: int,
    full_name: str,
    class_id: Optional[int],
    class_name: Optional[str],
    guardian_name: Optional[str],
    enrollment_status: Optional[EnrollmentStatus],
    total_due: Decimal,
    total_paid: Decimal,
    ledger_id: Optional[int],
    school_year: Optional[str],
    origin: AccountOrigin,
    threshold: Decimal,
) -> EnrollmentAccount:
    pct = percentage_paid(total_due, total_paid)
    eligible = pct >= threshold
    if enrollment_status is None:
        enrollment_status = EnrollmentStatus.enrolled if eligible else EnrollmentStatus.pre_enrolled
    return EnrollmentAccount(
        child_id=child_id,
        full_name=full_name,
        class_id=class_id,
        class_name=class_name,
        guardian_name=guardian_name,
        enrollment_status=enrollment_status,
        total_due=total_due,
        total_paid=total_paid,
        remaining=max(ZERO, total_due - total_paid),
        percentage_paid=pct,
        status=payment_status(total_due, total_paid),
        eligible_for_validation=eligible,
        ledger_id=ledger_id,
        school_year=school_year,
        origin=origin,
    )


def reconcile(
    children: Sequence[ChildRecord],
    ledger: Sequence[PaymentLedgerEntry],
    resolve_tariff: TariffLookup,
    eligibility_threshold: Decimal = DEFAULT_ELIGIBILITY_THRESHOLD,
    guardian_names: Optional[Mapping[int, str]] = None,
) -> ReconciliationResult:
    anomalies = 0
    duplicate_child_ids: List[int] = []
    guardians = guardian_names or {}

    # 1. Index ledger by child; the last entry observed for a child wins.
    ledger_by_child: Dict[int, PaymentLedgerEntry] = {}
    for entry in ledger:
        if entry.child_id in ledger_by_child:
            anomalies += 1
            if entry.child_id not in duplicate_child_ids:
                duplicate_child_ids.append(entry.child_id)
            logger.warning(
                "Duplicate ledger entries for child %s: %s supersedes %s",
                entry.child_id, entry.ledger_id, ledger_by_child[entry.child_id].ledger_id,
            )
        ledger_by_child[entry.child_id] = entry

    accounts: List[EnrollmentAccount] = []
    seen_children: Set[int] = set()

    # 2. Roster side.
    for child in children:
        if child.child_id in seen_children:
            anomalies += 1
            logger.warning("Child %s listed twice in roster, keeping first record", child.child_id)
            continue
        seen_children.add(child.child_id)

        entry = ledger_by_child.get(child.child_id)
        if entry is not None:
            total_due, bad_due = sanitize_amount(entry.total_due)
            total_paid, bad_paid = sanitize_amount(entry.total_paid)
            anomalies += int(bad_due or bad_paid)
            accounts.append(
                _build_account(
                    child_id=child.child_id,
                    full_name=child.full_name or entry.child_full_name or f"Child {child.child_id}",
                    class_id=child.class_id,
                    class_name=child.class_name or entry.class_name,
                    guardian_name=guardians.get(child.child_id, child.guardian_name),
                    enrollment_status=child.enrollment_status,
                    total_due=total_due,
                    total_paid=total_paid,
                    ledger_id=entry.ledger_id,
                    school_year=entry.school_year,
                    origin=AccountOrigin.matched,
                    threshold=eligibility_threshold,
                )
            )
            continue

        due = child.tariff_hint if child.tariff_hint is not None else resolve_tariff(child.class_id, child.class_name)
        total_due, bad_due = sanitize_amount(due)
        anomalies += int(bad_due)
        accounts.append(
            _build_account(
                child_id=child.child_id,
                full_name=child.full_name or f"Child {child.child_id}",
                class_id=child.class_id,
                class_name=child.class_name,
                guardian_name=guardians.get(child.child_id, child.guardian_name),
                enrollment_status=child.enrollment_status,
                total_due=total_due,
                total_paid=ZERO,
                ledger_id=None,
                school_year=None,
                origin=AccountOrigin.child_only,
                threshold=eligibility_threshold,
            )
        )

    # 3. Ledger entries whose child is not on the roster.
    orphan_ledger_ids: List[int] = []
    for child_id, entry in ledger_by_child.items():
        if child_id in seen_children:
            continue
        total_due, bad_due = sanitize_amount(entry.total_due)
        total_paid, bad_paid = sanitize_amount(entry.total_paid)
        anomalies += int(bad_due or bad_paid)
        orphan_ledger_ids.append(entry.ledger_id)
        accounts.append(
            _build_account(
                child_id=child_id,
                full_name=entry.child_full_name or f"Child {child_id}",
                class_id=None,
                class_name=entry.class_name or UNASSIGNED_CLASS_NAME,
                guardian_name=guardians.get(child_id),
                enrollment_status=None,
                total_due=total_due,
                total_paid=total_paid,
                ledger_id=entry.ledger_id,
                school_year=entry.school_year,
                origin=AccountOrigin.ledger_only,
                threshold=eligibility_threshold,
            )
        )

    if anomalies:
        logger.warning("Reconciliation clamped or skipped %d anomalous record(s)", anomalies)

    return ReconciliationResult(
        accounts=accounts,
        anomalous_records=anomalies,
        duplicate_ledger_child_ids=duplicate_child_ids,
        orphan_ledger_ids=orphan_ledger_ids,
    )
