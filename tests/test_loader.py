"""Concurrent feed loading, degraded mode and last-request-wins refreshes."""

import asyncio

import httpx
import pytest

from app.api.v1.billing.demo import DEMO_WARNING
from app.api.v1.billing.loader import BillingLoader, BillingView, LatestRequestGate
from app.api.v1.billing.reconciliation import GUARDIAN_NOT_PROVIDED
from app.clients.school_api import SchoolApiClient
from app.core.enums import AccountOrigin, DataSource
from app.core.exceptions import (
    FeedUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    SessionExpiredError,
    UpstreamRejectedError,
)


@pytest.mark.asyncio
async def test_live_load_reconciles_both_feeds(school_client, school_api) -> None:
    snapshot = await BillingLoader().load(school_client, school_year="2024-2025")

    assert snapshot.data_source == DataSource.LIVE
    assert snapshot.warning is None
    origins = {a.child_id: a.origin for a in snapshot.result.accounts}
    assert origins == {1: AccountOrigin.child_only, 2: AccountOrigin.matched, 3: AccountOrigin.ledger_only}

    ledger_request = next(r for r in school_api.requests if r.url.path.endswith("/tous"))
    assert ledger_request.url.params["anneeScolaire"] == "2024-2025"
    assert ledger_request.url.params["pageSize"] == "100"
    assert all(r.headers["Authorization"].startswith("Bearer ") for r in school_api.requests)


@pytest.mark.asyncio
@pytest.mark.parametrize("failing_feed", ["/enfants", "/paiements-scolarite/tous"])
async def test_either_feed_failing_switches_whole_view_to_demo(school_client, school_api, failing_feed) -> None:
    school_api.fail(failing_feed, 500)
    snapshot = await BillingLoader().load(school_client)

    assert snapshot.data_source == DataSource.DEMO
    assert snapshot.warning == DEMO_WARNING
    # no live row leaks into the demo snapshot
    names = {a.full_name for a in snapshot.result.accounts}
    assert names == {"Aya Kouassi", "Koffi Kouassi", "Jean Kouame", "Marie Traore"}


@pytest.mark.asyncio
async def test_fallback_disabled_raises(school_client, school_api) -> None:
    school_api.fail("/enfants", 502)
    with pytest.raises(FeedUnavailableError):
        await BillingLoader(demo_fallback_enabled=False).load(school_client)


@pytest.mark.asyncio
async def test_expired_session_is_not_masked_by_demo(school_client, school_api) -> None:
    school_api.fail("/paiements-scolarite/tous", 401)
    with pytest.raises(SessionExpiredError):
        await BillingLoader().load(school_client)


@pytest.mark.asyncio
async def test_tariff_feed_failure_uses_default_tuition(school_client, school_api) -> None:
    school_api.fail("/tarifs", 500)
    loader = BillingLoader()
    snapshot = await loader.load(school_client)
    assert snapshot.data_source == DataSource.LIVE
    unbilled = next(a for a in snapshot.result.accounts if a.child_id == 1)
    assert unbilled.total_due == loader.default_tuition_amount


@pytest.mark.asyncio
async def test_unidentifiable_rows_are_skipped_and_counted(school_client, school_api) -> None:
    school_api.children.append({"prenom": "No", "nom": "Id"})
    school_api.ledger.append({"id": 50, "montantTotal": 1000})
    snapshot = await BillingLoader().load(school_client)
    assert snapshot.result.anomalous_records == 2
    assert len(snapshot.result.accounts) == 3


def test_latest_request_gate() -> None:
    gate = LatestRequestGate()
    first = gate.begin()
    second = gate.begin()
    assert not gate.is_current(first)
    assert gate.is_current(second)


class GatedLoader(BillingLoader):
    """Loader whose loads finish only when the test releases them."""

    def __init__(self) -> None:
        super().__init__()
        self.releases = {}

    async def load(self, client, school_year=None):
        release = asyncio.Event()
        self.releases[school_year] = release
        await release.wait()
        if school_year == "broken":
            raise RuntimeError("feed exploded")
        child = {"id": 1, "prenom": "Aya", "nom": school_year, "classeId": 1}
        return self.build_snapshot(DataSource.LIVE, [child], [], [])


@pytest.mark.asyncio
async def test_stale_refresh_is_discarded() -> None:
    view = BillingView(GatedLoader())
    older = asyncio.create_task(view.refresh(None, school_year="older"))
    await asyncio.sleep(0)
    newer = asyncio.create_task(view.refresh(None, school_year="newer"))
    await asyncio.sleep(0)

    view.loader.releases["newer"].set()
    published = await newer
    view.loader.releases["older"].set()
    stale = await older

    assert stale is None
    assert published is view.snapshot
    assert view.snapshot.result.accounts[0].full_name == "Aya newer"


@pytest.mark.asyncio
async def test_error_from_superseded_refresh_is_dropped() -> None:
    view = BillingView(GatedLoader())
    older = asyncio.create_task(view.refresh(None, school_year="broken"))
    await asyncio.sleep(0)
    newer = asyncio.create_task(view.refresh(None, school_year="fine"))
    await asyncio.sleep(0)

    view.loader.releases["broken"].set()
    assert await older is None
    view.loader.releases["fine"].set()
    assert (await newer).result.accounts[0].full_name == "Aya fine"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failing_feed, code, error",
    [
        ("/enfants", 403, PermissionDeniedError),
        ("/paiements-scolarite/tous", 403, PermissionDeniedError),
        ("/paiements-scolarite/tous", 404, NotFoundError),
        ("/enfants", 422, UpstreamRejectedError),
    ],
)
async def test_client_errors_are_not_masked_by_demo(school_client, school_api, failing_feed, code, error) -> None:
    school_api.fail(failing_feed, code)
    with pytest.raises(error):
        await BillingLoader().load(school_client)


@pytest.mark.asyncio
async def test_unreachable_feed_switches_to_demo(school_client) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://school.test") as http:
        snapshot = await BillingLoader().load(SchoolApiClient(http, school_client.session))
    assert snapshot.data_source == DataSource.DEMO
    guardians = {a.child_id: a.guardian_name for a in snapshot.result.accounts}
    assert guardians[4] == "Ibrahim Traore"


@pytest.mark.asyncio
async def test_ledger_is_read_past_the_first_page(school_client, school_api) -> None:
    filler = [
        {"id": 1000 + i, "enfantId": 500 + i, "montantTotal": 200000, "montantPaye": 0, "anneeScolaire": "2024-2025"}
        for i in range(100)
    ]
    school_api.ledger = filler + school_api.ledger

    snapshot = await BillingLoader().load(school_client)
    account = next(a for a in snapshot.result.accounts if a.child_id == 2)
    assert account.origin == AccountOrigin.matched
    assert account.ledger_id == 7
    assert len(snapshot.ledger) == 102
    pages = [r.url.params["page"] for r in school_api.requests if r.url.path.endswith("/tous")]
    assert pages == ["1", "2"]


@pytest.mark.asyncio
async def test_guardians_are_looked_up_per_child(school_client, school_api) -> None:
    school_api.fail("/parent-enfants/enfants/2/", 500)
    snapshot = await BillingLoader().load(school_client)

    guardians = {a.child_id: a.guardian_name for a in snapshot.result.accounts}
    # first linked guardian wins; a single object is accepted too
    assert guardians[1] == "Adjoua Kouassi"
    assert guardians[3] == "Ibrahim Traore"
    # a failed lookup keeps the view live with a placeholder
    assert guardians[2] == GUARDIAN_NOT_PROVIDED
    assert snapshot.data_source == DataSource.LIVE


@pytest.mark.asyncio
async def test_expired_session_during_guardian_lookup(school_client, school_api) -> None:
    school_api.fail("/parent-enfants/", 401)
    with pytest.raises(SessionExpiredError):
        await BillingLoader().load(school_client)
