"""Spreadsheet export of reconciled accounts."""

import io
from typing import Iterable

from openpyxl import Workbook

from .schemas import BillingStatistics, EnrollmentAccount

ACCOUNTS_SHEET_NAME = "Accounts"
SUMMARY_SHEET_NAME = "Summary"

ACCOUNT_HEADERS = (
    "child_id",
    "full_name",
    "class_name",
    "guardian_name",
    "enrollment_status",
    "total_due",
    "total_paid",
    "remaining",
    "percentage_paid",
    "status",
    "eligible_for_validation",
    "ledger_id",
    "school_year",
    "origin",
)


def build_accounts_workbook(accounts: Iterable[EnrollmentAccount], statistics: BillingStatistics) -> bytes:
    wb = Workbook()

    ws_accounts = wb.active
    ws_accounts.title = ACCOUNTS_SHEET_NAME
    ws_accounts.append(list(ACCOUNT_HEADERS))
    for a in accounts:
        ws_accounts.append([
            a.child_id,
            a.full_name,
            a.class_name,
            a.guardian_name,
            a.enrollment_status.value,
            float(a.total_due),
            float(a.total_paid),
            float(a.remaining),
            float(a.percentage_paid),
            a.status.value,
            "yes" if a.eligible_for_validation else "no",
            a.ledger_id,
            a.school_year,
            a.origin.value,
        ])
    ws_accounts.freeze_panes = "A2"

    ws_summary = wb.create_sheet(SUMMARY_SHEET_NAME)
    ws_summary.append(["metric", "value"])
    for name, value in statistics.model_dump().items():
        ws_summary.append([name, float(value) if not isinstance(value, int) else value])

    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()
