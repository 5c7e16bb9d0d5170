"""Billing schemas: school API wire records, reconciled accounts, statistics, requests."""

from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.enums import AccountOrigin, DataSource, EnrollmentStatus, PaymentMode, PaymentStatus


def coerce_amount(value: Any) -> Optional[Decimal]:
    """Parse a wire amount; anything unparsable, NaN or infinite becomes None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    if not amount.is_finite():
        return None
    return amount


_ENROLLMENT_STATUS_ALIASES = {
    "inscrit": EnrollmentStatus.enrolled,
    "enrolled": EnrollmentStatus.enrolled,
    "pre_inscrit": EnrollmentStatus.pre_enrolled,
    "pre_enrolled": EnrollmentStatus.pre_enrolled,
}


# --- School API wire records ---
class ChildRecord(BaseModel):
    """Roster feed row."""

    child_id: int = Field(..., alias="id")
    first_name: Optional[str] = Field(None, alias="prenom")
    last_name: Optional[str] = Field(None, alias="nom")
    class_id: Optional[int] = Field(None, alias="classeId")
    class_name: Optional[str] = Field(None, alias="classeNom")
    enrollment_status: EnrollmentStatus = Field(EnrollmentStatus.pre_enrolled, alias="statut")
    tariff_hint: Optional[Decimal] = Field(None, alias="tarifScolarite")
    guardian_name: Optional[str] = None

    class Config:
        populate_by_name = True

    @field_validator("enrollment_status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> EnrollmentStatus:
        if isinstance(value, EnrollmentStatus):
            return value
        key = str(value or "").strip().lower().replace("-", "_")
        return _ENROLLMENT_STATUS_ALIASES.get(key, EnrollmentStatus.pre_enrolled)

    @field_validator("tariff_hint", mode="before")
    @classmethod
    def _coerce_tariff(cls, value: Any) -> Optional[Decimal]:
        amount = coerce_amount(value)
        # 0 means "no tariff set" on the roster, same as missing
        if amount is None or amount <= 0:
            return None
        return amount

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class PaymentLedgerEntry(BaseModel):
    """Ledger feed row: one tuition-payment dossier for a child."""

    ledger_id: int = Field(..., alias="id")
    child_id: int = Field(..., alias="enfantId")
    total_due: Optional[Decimal] = Field(None, alias="montantTotal")
    total_paid: Optional[Decimal] = Field(None, alias="montantPaye")
    school_year: Optional[str] = Field(None, alias="anneeScolaire")
    child_last_name: Optional[str] = Field(None, alias="enfantNom")
    child_first_name: Optional[str] = Field(None, alias="enfantPrenom")
    class_name: Optional[str] = Field(None, alias="classeNom")

    class Config:
        populate_by_name = True

    @field_validator("total_due", "total_paid", mode="before")
    @classmethod
    def _coerce_amounts(cls, value: Any) -> Optional[Decimal]:
        return coerce_amount(value)

    @property
    def child_full_name(self) -> str:
        return f"{self.child_first_name or ''} {self.child_last_name or ''}".strip()


class GuardianRecord(BaseModel):
    """Guardian linked to a child, from the parent-child links feed."""

    first_name: Optional[str] = Field(None, alias="prenom")
    last_name: Optional[str] = Field(None, alias="nom")

    class Config:
        populate_by_name = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class TariffEntry(BaseModel):
    tariff_id: Optional[int] = Field(None, alias="id")
    class_id: Optional[int] = Field(None, alias="classeId")
    class_name: Optional[str] = Field(None, alias="classeNom")
    amount: Optional[Decimal] = Field(None, alias="tarif")

    class Config:
        populate_by_name = True

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_tariff(cls, value: Any) -> Optional[Decimal]:
        return coerce_amount(value)


# --- Reconciled view ---
class EnrollmentAccount(BaseModel):
    child_id: int
    full_name: str
    class_id: Optional[int] = None
    class_name: Optional[str] = None
    guardian_name: Optional[str] = None
    enrollment_status: EnrollmentStatus
    total_due: Decimal
    total_paid: Decimal
    remaining: Decimal
    percentage_paid: Decimal
    status: PaymentStatus
    eligible_for_validation: bool
    ledger_id: Optional[int] = None
    school_year: Optional[str] = None
    origin: AccountOrigin


class ReconciliationResult(BaseModel):
    accounts: List[EnrollmentAccount]
    anomalous_records: int = 0
    duplicate_ledger_child_ids: List[int] = Field(default_factory=list)
    orphan_ledger_ids: List[int] = Field(default_factory=list)


class BillingStatistics(BaseModel):
    total_accounts: int = 0
    pending_count: int = 0
    partial_count: int = 0
    complete_count: int = 0
    pre_enrolled_count: int = 0
    enrolled_count: int = 0
    eligible_count: int = 0
    total_due: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    total_remaining: Decimal = Decimal("0")
    recovery_rate: Decimal = Decimal("0")


class BillingOverview(BaseModel):
    data_source: DataSource
    warning: Optional[str] = None
    anomalous_records: int = 0
    duplicate_ledger_child_ids: List[int] = Field(default_factory=list)
    statistics: BillingStatistics
    accounts: List[EnrollmentAccount]


class StatisticsResponse(BillingStatistics):
    data_source: DataSource
    warning: Optional[str] = None


# --- Mutations ---
class LedgerEntryCreate(BaseModel):
    child_id: int
    amount: Decimal = Field(..., gt=0)
    school_year: str = Field(..., min_length=4, max_length=20, description="e.g. 2024-2025")
    payment_mode: PaymentMode = PaymentMode.CASH
    comment: Optional[str] = Field(None, max_length=500)


class PaymentAppend(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_mode: PaymentMode = PaymentMode.CASH
    reference: Optional[str] = Field(None, max_length=100, description="Cheque number, transfer or card transaction reference")
    comment: Optional[str] = Field(None, max_length=500)


class MutationResponse(BaseModel):
    ledger_entry: PaymentLedgerEntry
    overview: BillingOverview
