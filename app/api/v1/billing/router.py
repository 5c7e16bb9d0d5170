"""Billing router: reconciled accounts, statistics, export, payment mutations."""

import logging
from typing import NoReturn, Optional

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.school_api import IDEMPOTENCY_HEADER, SchoolApiClient, get_school_api_client
from app.core.enums import PaymentStatus
from app.core.exceptions import ServiceError, SessionExpiredError
from app.db.session import get_db

from .schemas import (
    BillingOverview,
    LedgerEntryCreate,
    MutationResponse,
    PaymentAppend,
    StatisticsResponse,
)
from . import service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _raise_http(e: Exception) -> NoReturn:
    if isinstance(e, SessionExpiredError):
        raise HTTPException(
            status_code=e.status_code,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(e, ServiceError):
        raise HTTPException(status_code=e.status_code, detail=e.message)
    logger.error("School API call failed: %r", e)
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="School API request failed")


# --- Reconciled view ---
@router.get("/accounts", response_model=BillingOverview)
async def list_accounts(
    school_year: Optional[str] = Query(None, description="e.g. 2024-2025"),
    class_id: Optional[int] = Query(None),
    class_name: Optional[str] = Query(None),
    payment_status: Optional[PaymentStatus] = Query(None, description="pending, partial, complete"),
    search: Optional[str] = Query(None, description="Case-insensitive match on the child's name"),
    client: SchoolApiClient = Depends(get_school_api_client),
) -> BillingOverview:
    try:
        return await service.get_overview(
            client,
            school_year=school_year,
            class_id=class_id,
            class_name=class_name,
            payment_status=payment_status,
            search=search,
        )
    except (ServiceError, httpx.HTTPError) as e:
        _raise_http(e)


@router.get("/statistics", response_model=StatisticsResponse)
async def read_statistics(
    school_year: Optional[str] = Query(None),
    client: SchoolApiClient = Depends(get_school_api_client),
) -> StatisticsResponse:
    try:
        return await service.get_statistics(client, school_year=school_year)
    except (ServiceError, httpx.HTTPError) as e:
        _raise_http(e)


@router.get("/accounts/export")
async def export_accounts(
    school_year: Optional[str] = Query(None),
    client: SchoolApiClient = Depends(get_school_api_client),
) -> Response:
    """Download reconciled accounts and the summary as an Excel workbook."""
    try:
        content = await service.export_accounts(client, school_year=school_year)
    except (ServiceError, httpx.HTTPError) as e:
        _raise_http(e)
    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": "attachment; filename=tuition_accounts.xlsx"},
    )


# --- Payment mutations ---
@router.post(
    "/ledger",
    response_model=MutationResponse,
    response_model_by_alias=False,
    status_code=status.HTTP_201_CREATED,
)
async def create_ledger_entry(
    payload: LedgerEntryCreate,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER, max_length=128),
    db: AsyncSession = Depends(get_db),
    client: SchoolApiClient = Depends(get_school_api_client),
) -> MutationResponse:
    try:
        return await service.create_ledger_entry(
            db,
            client,
            payload.child_id,
            payload.amount,
            payload.school_year,
            payment_mode=payload.payment_mode,
            comment=payload.comment,
            idempotency_key=idempotency_key,
        )
    except (ServiceError, httpx.HTTPError) as e:
        _raise_http(e)


@router.put(
    "/ledger/{ledger_id}/payments",
    response_model=MutationResponse,
    response_model_by_alias=False,
)
async def append_payment(
    ledger_id: int,
    payload: PaymentAppend,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER, max_length=128),
    db: AsyncSession = Depends(get_db),
    client: SchoolApiClient = Depends(get_school_api_client),
) -> MutationResponse:
    try:
        return await service.append_payment(
            db,
            client,
            ledger_id,
            payload.amount,
            payment_mode=payload.payment_mode,
            reference=payload.reference,
            comment=payload.comment,
            idempotency_key=idempotency_key,
        )
    except (ServiceError, httpx.HTTPError) as e:
        _raise_http(e)
