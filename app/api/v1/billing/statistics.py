"""Dashboard statistics and filters over reconciled enrollment accounts."""

from typing import Iterable, List, Optional

from app.core.enums import EnrollmentStatus, PaymentStatus

from .reconciliation import HUNDRED, ZERO, round2
from .schemas import BillingStatistics, EnrollmentAccount


def compute_statistics(accounts: Iterable[EnrollmentAccount]) -> BillingStatistics:
    """
    Reduce accounts into summary counts and sums.
    recovery_rate is computed from the summed amounts, not averaged per account.
    """
    stats = BillingStatistics()
    total_due = ZERO
    total_paid = ZERO
    total_remaining = ZERO
    for account in accounts:
        stats.total_accounts += 1
        if account.status == PaymentStatus.pending:
            stats.pending_count += 1
        elif account.status == PaymentStatus.partial:
            stats.partial_count += 1
        else:
            stats.complete_count += 1
        if account.enrollment_status == EnrollmentStatus.enrolled:
            stats.enrolled_count += 1
        else:
            stats.pre_enrolled_count += 1
        if account.eligible_for_validation:
            stats.eligible_count += 1
        total_due += account.total_due
        total_paid += account.total_paid
        total_remaining += account.remaining

    stats.total_due = total_due
    stats.total_paid = total_paid
    stats.total_remaining = total_remaining
    stats.recovery_rate = round2(total_paid / total_due * HUNDRED) if total_due > 0 else round2(ZERO)
    return stats


def filter_accounts(
    accounts: Iterable[EnrollmentAccount],
    class_id: Optional[int] = None,
    class_name: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
) -> List[EnrollmentAccount]:
    needle = (search or "").strip().lower()
    wanted_class = (class_name or "").strip().lower()
    result = []
    for account in accounts:
        if class_id is not None and account.class_id != class_id:
            continue
        if wanted_class and (account.class_name or "").strip().lower() != wanted_class:
            continue
        if status is not None and account.status != status:
            continue
        if needle and needle not in account.full_name.lower():
            continue
        result.append(account)
    return result
