from enum import Enum


class PaymentStatus(str, Enum):
    pending = "pending"
    partial = "partial"
    complete = "complete"


class AccountOrigin(str, Enum):
    """Which feed(s) an enrollment account was built from."""

    matched = "matched"
    child_only = "child_only"
    ledger_only = "ledger_only"


class EnrollmentStatus(str, Enum):
    pre_enrolled = "pre_enrolled"
    enrolled = "enrolled"


class PaymentMode(str, Enum):
    CASH = "especes"
    CHEQUE = "cheque"
    TRANSFER = "virement"
    CARD = "carte_bancaire"


class DataSource(str, Enum):
    LIVE = "live"
    DEMO = "demo"
