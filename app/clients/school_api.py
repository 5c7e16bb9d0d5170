"""HTTP client for the school REST API (roster, ledger, tariffs, payment mutations)."""

import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
from fastapi import Depends, status

from app.auth.dependencies import get_api_session
from app.auth.schemas import ApiSession
from app.core.config import settings
from app.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
    SessionExpiredError,
    UpstreamRejectedError,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
LIST_ENVELOPE_KEYS = ("items", "data", "$values")
TOTAL_ENVELOPE_KEYS = ("total", "totalCount", "count")
MAX_LEDGER_PAGES = 500


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("title") or body.get("detail") or response.reason_phrase)
    return response.reason_phrase


def check_response(response: httpx.Response, what: str) -> None:
    """
    Map upstream client errors onto the service error taxonomy.
    5xx responses raise httpx.HTTPStatusError and are left for the caller.
    """
    code = response.status_code
    if code < 400:
        return
    if code == status.HTTP_401_UNAUTHORIZED:
        raise SessionExpiredError()
    if code == status.HTTP_403_FORBIDDEN:
        raise PermissionDeniedError(f"Access denied: {what}")
    if code == status.HTTP_404_NOT_FOUND:
        raise NotFoundError(f"{what} not found")
    if code < 500:
        raise UpstreamRejectedError(f"{what}: {_error_message(response)}", upstream_status=code)
    response.raise_for_status()


def unwrap_list(payload: Any, what: str) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in LIST_ENVELOPE_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
    raise ServiceError(f"Unexpected {what} payload from school API", status.HTTP_502_BAD_GATEWAY)


def _envelope_total(payload: Any) -> Optional[int]:
    if not isinstance(payload, dict):
        return None
    for key in TOTAL_ENVELOPE_KEYS:
        value = payload.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


class SchoolApiClient:
    """Thin async wrapper; every call is scoped to the caller's school and token."""

    def __init__(self, http: httpx.AsyncClient, session: ApiSession, ledger_page_size: int = 100) -> None:
        self.http = http
        self.session = session
        self.ledger_page_size = ledger_page_size

    @property
    def school_path(self) -> str:
        return f"/api/ecoles/{self.session.school_id}"

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.session.token}",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        return headers

    async def _get_json(self, path: str, what: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.http.get(f"{self.school_path}{path}", params=params, headers=self._headers())
        check_response(response, what)
        try:
            return response.json()
        except ValueError:
            raise ServiceError(f"Unexpected {what} payload from school API", status.HTTP_502_BAD_GATEWAY)

    async def _get_list(self, path: str, what: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return unwrap_list(await self._get_json(path, what, params=params), what)

    async def fetch_children(self) -> List[Dict[str, Any]]:
        return await self._get_list("/enfants", "Child roster")

    async def fetch_ledger(self, school_year: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read every page of the ledger; stops at the envelope total or on a short page."""
        params: Dict[str, Any] = {"pageSize": self.ledger_page_size}
        if school_year:
            params["anneeScolaire"] = school_year
        rows: List[Dict[str, Any]] = []
        for page in range(1, MAX_LEDGER_PAGES + 1):
            params["page"] = page
            payload = await self._get_json("/paiements-scolarite/tous", "Payment ledger", params=params)
            batch = unwrap_list(payload, "Payment ledger")
            rows.extend(batch)
            total = _envelope_total(payload)
            if len(batch) < self.ledger_page_size or (total is not None and len(rows) >= total):
                return rows
        raise ServiceError(
            f"Payment ledger exceeds {MAX_LEDGER_PAGES} pages of {self.ledger_page_size}",
            status.HTTP_502_BAD_GATEWAY,
        )

    async def fetch_tariffs(self) -> List[Dict[str, Any]]:
        return await self._get_list("/tarifs", "Tariffs")

    async def fetch_guardians(self, child_id: int) -> List[Dict[str, Any]]:
        payload = await self._get_json(f"/parent-enfants/enfants/{child_id}/parents", f"Guardians of child {child_id}")
        # Some deployments answer with a single guardian object instead of a list.
        if isinstance(payload, dict) and not any(key in payload for key in LIST_ENVELOPE_KEYS):
            return [payload]
        return unwrap_list(payload, "Guardians")

    async def create_ledger_entry(self, body: Dict[str, Any], idempotency_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        response = await self.http.post(
            f"{self.school_path}/paiements-scolarite",
            json=body,
            headers=self._headers(idempotency_key),
        )
        check_response(response, "Ledger entry creation")
        return _json_object_or_none(response)

    async def append_payment(
        self, ledger_id: int, body: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        response = await self.http.put(
            f"{self.school_path}/paiements-scolarite/{ledger_id}/paiement",
            json=body,
            headers=self._headers(idempotency_key),
        )
        check_response(response, f"Ledger entry {ledger_id}")
        return _json_object_or_none(response)


def _json_object_or_none(response: httpx.Response) -> Optional[Dict[str, Any]]:
    # Some mutation endpoints answer 204 or a non-JSON body on success.
    if not response.content or "application/json" not in response.headers.get("content-type", ""):
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def get_school_api_client(
    session: ApiSession = Depends(get_api_session),
) -> AsyncGenerator[SchoolApiClient, None]:
    async with httpx.AsyncClient(
        base_url=settings.school_api_base_url,
        timeout=settings.school_api_timeout_seconds,
    ) as http:
        yield SchoolApiClient(http, session, ledger_page_size=settings.ledger_page_size)
