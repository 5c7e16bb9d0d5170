"""Fetch roster, ledger and tariffs concurrently and reconcile them into a snapshot."""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from app.clients.school_api import SchoolApiClient
from app.core.config import settings
from app.core.enums import DataSource
from app.core.exceptions import FeedUnavailableError, ServiceError, SessionExpiredError

from . import demo
from .reconciliation import GUARDIAN_NOT_PROVIDED, reconcile
from .schemas import ChildRecord, GuardianRecord, PaymentLedgerEntry, ReconciliationResult, TariffEntry
from .tariffs import TariffResolver

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


def parse_records(rows: Iterable[Dict[str, Any]], model: Type[RecordT]) -> Tuple[List[RecordT], int]:
    """Validate raw feed rows; rows that cannot be identified are skipped and counted."""
    records: List[RecordT] = []
    skipped = 0
    for row in rows:
        try:
            records.append(model.model_validate(row))
        except ValidationError as e:
            skipped += 1
            logger.warning("Skipping malformed %s row: %s", model.__name__, e.errors()[0].get("msg"))
    return records, skipped


def is_client_error(outcome: Any) -> bool:
    """Upstream answered but refused (401, 403, 404, other 4xx); the feed itself is reachable."""
    return isinstance(outcome, ServiceError) and outcome.status_code < 500


class BillingSnapshot:
    """One reconciliation run: accounts plus where the data came from."""

    def __init__(
        self,
        data_source: DataSource,
        result: ReconciliationResult,
        tariffs: TariffResolver,
        children: List[ChildRecord],
        ledger: List[PaymentLedgerEntry],
        warning: Optional[str] = None,
    ) -> None:
        self.data_source = data_source
        self.result = result
        self.tariffs = tariffs
        self.children = children
        self.ledger = ledger
        self.warning = warning


class BillingLoader:
    def __init__(
        self,
        default_tuition_amount: Decimal = settings.default_tuition_amount,
        eligibility_threshold: Decimal = settings.eligibility_threshold,
        demo_fallback_enabled: bool = settings.demo_fallback_enabled,
        guardian_lookup_concurrency: int = settings.guardian_lookup_concurrency,
    ) -> None:
        self.default_tuition_amount = default_tuition_amount
        self.eligibility_threshold = eligibility_threshold
        self.demo_fallback_enabled = demo_fallback_enabled
        self.guardian_lookup_concurrency = guardian_lookup_concurrency

    def _snapshot(
        self,
        data_source: DataSource,
        children: List[ChildRecord],
        ledger: List[PaymentLedgerEntry],
        raw_tariffs: Iterable[Dict[str, Any]],
        skipped: int,
        warning: Optional[str] = None,
        guardian_names: Optional[Mapping[int, str]] = None,
    ) -> BillingSnapshot:
        tariff_rows, _ = parse_records(raw_tariffs, TariffEntry)
        tariffs = TariffResolver(tariff_rows, self.default_tuition_amount)

        result = reconcile(
            children, ledger, tariffs.resolve_amount, self.eligibility_threshold, guardian_names=guardian_names
        )
        result.anomalous_records += skipped
        return BillingSnapshot(data_source, result, tariffs, children, ledger, warning=warning)

    def build_snapshot(
        self,
        data_source: DataSource,
        raw_children: Iterable[Dict[str, Any]],
        raw_ledger: Iterable[Dict[str, Any]],
        raw_tariffs: Iterable[Dict[str, Any]],
        warning: Optional[str] = None,
        guardian_names: Optional[Mapping[int, str]] = None,
    ) -> BillingSnapshot:
        children, skipped_children = parse_records(raw_children, ChildRecord)
        ledger, skipped_ledger = parse_records(raw_ledger, PaymentLedgerEntry)
        return self._snapshot(
            data_source, children, ledger, raw_tariffs, skipped_children + skipped_ledger,
            warning=warning, guardian_names=guardian_names,
        )

    def demo_snapshot(self) -> BillingSnapshot:
        return self.build_snapshot(
            DataSource.DEMO,
            demo.DEMO_CHILDREN,
            demo.DEMO_LEDGER,
            demo.DEMO_TARIFFS,
            warning=demo.DEMO_WARNING,
            guardian_names=demo.DEMO_GUARDIANS,
        )

    async def load_guardians(self, client: SchoolApiClient, child_ids: Sequence[int]) -> Dict[int, str]:
        """
        First linked guardian per child. A failed or empty lookup leaves the
        placeholder name; only an expired session is raised.
        """
        semaphore = asyncio.Semaphore(max(1, self.guardian_lookup_concurrency))

        async def lookup(child_id: int) -> List[GuardianRecord]:
            async with semaphore:
                rows = await client.fetch_guardians(child_id)
            guardians, _ = parse_records(rows, GuardianRecord)
            return guardians

        outcomes = await asyncio.gather(*(lookup(child_id) for child_id in child_ids), return_exceptions=True)
        names: Dict[int, str] = {}
        for child_id, outcome in zip(child_ids, outcomes):
            if isinstance(outcome, SessionExpiredError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.debug("Guardian lookup failed for child %s: %r", child_id, outcome)
                outcome = []
            found = next((g.full_name for g in outcome if g.full_name), None)
            names[child_id] = found or GUARDIAN_NOT_PROVIDED
        return names

    async def load(
        self,
        client: SchoolApiClient,
        school_year: Optional[str] = None,
    ) -> BillingSnapshot:
        """
        Reconcile only once both roster and ledger resolved. An unreachable feed
        (transport error, 5xx, unreadable payload) switches the whole snapshot to
        the demonstration dataset, or raises FeedUnavailableError when the fallback
        is disabled; live and demo rows are never mixed. Client errors such as an
        expired session or denied access are re-raised as they are.
        """
        children, ledger, tariffs = await asyncio.gather(
            client.fetch_children(),
            client.fetch_ledger(school_year=school_year),
            client.fetch_tariffs(),
            return_exceptions=True,
        )

        for outcome in (children, ledger, tariffs):
            if isinstance(outcome, SessionExpiredError):
                raise outcome
        for outcome in (children, ledger):
            if is_client_error(outcome):
                raise outcome

        failures = [(name, outcome) for name, outcome in (("roster", children), ("ledger", ledger)) if isinstance(outcome, BaseException)]
        if failures:
            for name, error in failures:
                logger.warning("School API %s feed failed: %r", name, error)
            if not self.demo_fallback_enabled:
                names = ", ".join(name for name, _ in failures)
                raise FeedUnavailableError(f"School API unavailable ({names} feed)")
            logger.warning("Serving demonstration dataset for school %s", client.session.school_id)
            return self.demo_snapshot()

        if isinstance(tariffs, BaseException):
            logger.warning("Tariff feed failed, unbilled children use the default tuition: %r", tariffs)
            tariffs = []

        child_records, skipped_children = parse_records(children, ChildRecord)
        ledger_entries, skipped_ledger = parse_records(ledger, PaymentLedgerEntry)
        child_ids = list(dict.fromkeys([c.child_id for c in child_records] + [e.child_id for e in ledger_entries]))
        guardian_names = await self.load_guardians(client, child_ids)

        return self._snapshot(
            DataSource.LIVE, child_records, ledger_entries, tariffs, skipped_children + skipped_ledger,
            guardian_names=guardian_names,
        )


class LatestRequestGate:
    """Hands out increasing tickets; only the latest ticket may publish a result."""

    def __init__(self) -> None:
        self._latest = 0

    def begin(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, ticket: int) -> bool:
        return ticket == self._latest


class BillingView:
    """Holds the last published snapshot for one consumer; stale refreshes are discarded."""

    def __init__(self, loader: BillingLoader) -> None:
        self.loader = loader
        self.gate = LatestRequestGate()
        self.snapshot: Optional[BillingSnapshot] = None

    async def refresh(
        self,
        client: SchoolApiClient,
        school_year: Optional[str] = None,
    ) -> Optional[BillingSnapshot]:
        """Return the published snapshot, or None when a newer refresh superseded this one."""
        ticket = self.gate.begin()
        try:
            snapshot = await self.loader.load(client, school_year=school_year)
        except Exception:
            if not self.gate.is_current(ticket):
                logger.info("Dropping error from superseded refresh %d", ticket)
                return None
            raise
        if not self.gate.is_current(ticket):
            logger.debug("Discarding stale snapshot from refresh %d", ticket)
            return None
        self.snapshot = snapshot
        return snapshot
