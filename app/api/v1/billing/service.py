"""Billing service: load and reconcile feeds, build overviews, run payment mutations."""

from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.school_api import SchoolApiClient
from app.core.enums import PaymentMode, PaymentStatus

from .export import build_accounts_workbook
from .idempotency import IdempotencyStore
from .loader import BillingLoader, BillingSnapshot, BillingView
from .mutations import PaymentMutationService
from .schemas import BillingOverview, MutationResponse, StatisticsResponse
from .statistics import compute_statistics, filter_accounts


def build_overview(
    snapshot: BillingSnapshot,
    class_id: Optional[int] = None,
    class_name: Optional[str] = None,
    payment_status: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
) -> BillingOverview:
    """Statistics cover every account; filters only narrow the returned list."""
    result = snapshot.result
    return BillingOverview(
        data_source=snapshot.data_source,
        warning=snapshot.warning,
        anomalous_records=result.anomalous_records,
        duplicate_ledger_child_ids=result.duplicate_ledger_child_ids,
        statistics=compute_statistics(result.accounts),
        accounts=filter_accounts(
            result.accounts,
            class_id=class_id,
            class_name=class_name,
            status=payment_status,
            search=search,
        ),
    )


async def _load(client: SchoolApiClient, school_year: Optional[str]) -> BillingSnapshot:
    # One view per request: no snapshot outlives the request that fetched it.
    view = BillingView(BillingLoader())
    return await view.refresh(client, school_year=school_year)


async def get_overview(
    client: SchoolApiClient,
    school_year: Optional[str] = None,
    class_id: Optional[int] = None,
    class_name: Optional[str] = None,
    payment_status: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
) -> BillingOverview:
    snapshot = await _load(client, school_year)
    return build_overview(
        snapshot,
        class_id=class_id,
        class_name=class_name,
        payment_status=payment_status,
        search=search,
    )


async def get_statistics(client: SchoolApiClient, school_year: Optional[str] = None) -> StatisticsResponse:
    snapshot = await _load(client, school_year)
    stats = compute_statistics(snapshot.result.accounts)
    return StatisticsResponse(
        **stats.model_dump(),
        data_source=snapshot.data_source,
        warning=snapshot.warning,
    )


async def export_accounts(client: SchoolApiClient, school_year: Optional[str] = None) -> bytes:
    snapshot = await _load(client, school_year)
    accounts = snapshot.result.accounts
    return build_accounts_workbook(accounts, compute_statistics(accounts))


def _mutation_service(db: AsyncSession, client: SchoolApiClient) -> PaymentMutationService:
    return PaymentMutationService(client, idempotency=IdempotencyStore(db, client.session.school_id))


async def create_ledger_entry(
    db: AsyncSession,
    client: SchoolApiClient,
    child_id: int,
    amount: Decimal,
    school_year: str,
    payment_mode: PaymentMode,
    comment: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> MutationResponse:
    entry = await _mutation_service(db, client).create_ledger_entry(
        child_id,
        amount,
        school_year,
        payment_mode=payment_mode,
        comment=comment,
        idempotency_key=idempotency_key,
    )
    # Never patch the previous view: reconcile again from the refreshed ledger.
    overview = await get_overview(client, school_year=school_year)
    return MutationResponse(ledger_entry=entry, overview=overview)


async def append_payment(
    db: AsyncSession,
    client: SchoolApiClient,
    ledger_id: int,
    amount: Decimal,
    payment_mode: PaymentMode,
    reference: Optional[str] = None,
    comment: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> MutationResponse:
    entry = await _mutation_service(db, client).append_payment(
        ledger_id,
        amount,
        payment_mode=payment_mode,
        reference=reference,
        comment=comment,
        idempotency_key=idempotency_key,
    )
    overview = await get_overview(client, school_year=entry.school_year)
    return MutationResponse(ledger_entry=entry, overview=overview)
