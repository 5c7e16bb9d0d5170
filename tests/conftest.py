import copy
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.main import app
from app.auth.dependencies import get_api_session
from app.auth.schemas import ApiSession
from app.clients.school_api import SchoolApiClient, get_school_api_client
from app.core.models import IdempotencyRecord  # noqa: F401  registers the table
from app.db.session import Base, get_db


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
SCHOOL_ID = 2
SCHOOL_API_BASE_URL = "http://school.test"


def make_token(school_id: Optional[int] = SCHOOL_ID, expires_in: timedelta = timedelta(hours=1), **claims: Any) -> str:
    payload: Dict[str, Any] = {"sub": "7", "exp": int((datetime.now(timezone.utc) + expires_in).timestamp())}
    if school_id is not None:
        payload["ecoleId"] = school_id
    payload.update(claims)
    return jwt.encode(payload, "upstream-secret", algorithm="HS256")


class FakeSchoolApi:
    """In-memory stand-in for the school REST API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.children: List[Dict[str, Any]] = [
            {"id": 1, "prenom": "Aya", "nom": "Kouassi", "classeId": 1, "classeNom": "6ème", "statut": "pre_inscrit"},
            {"id": 2, "prenom": "Koffi", "nom": "Kouame", "classeId": 1, "classeNom": "6ème", "statut": "pre_inscrit"},
        ]
        self.ledger: List[Dict[str, Any]] = [
            {"id": 7, "enfantId": 2, "montantTotal": 200000, "montantPaye": 75000, "anneeScolaire": "2024-2025"},
            {"id": 9, "enfantId": 3, "montantTotal": 200000, "montantPaye": 200000, "anneeScolaire": "2024-2025",
             "enfantPrenom": "Marie", "enfantNom": "Traore", "classeNom": "5ème"},
        ]
        self.tariffs: List[Dict[str, Any]] = [
            {"id": 11, "classeId": 1, "classeNom": "6ème", "tarif": 200000},
            {"id": 12, "classeId": 2, "classeNom": "5ème", "tarif": 250000},
        ]
        # child id -> guardians; a bare object mimics deployments that return a single guardian
        self.guardians: Dict[int, Any] = {
            1: [{"prenom": "Adjoua", "nom": "Kouassi"}, {"prenom": "Yao", "nom": "Kouassi"}],
            3: {"prenom": "Ibrahim", "nom": "Traore"},
        }
        # (method, path fragment) -> status code to answer with instead of the normal response
        self.failures: Dict[Tuple[str, str], int] = {}
        self.requests: List[httpx.Request] = []
        self.next_ledger_id = 100
        self.put_returns_body = False

    @property
    def writes(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method in ("POST", "PUT")]

    def _failure_for(self, request: httpx.Request) -> Optional[int]:
        for (method, fragment), code in self.failures.items():
            if request.method == method and fragment in request.url.path:
                return code
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        code = self._failure_for(request)
        if code is not None:
            return httpx.Response(code, json={"message": f"upstream error {code}"})

        path = request.url.path
        prefix = f"/api/ecoles/{SCHOOL_ID}"
        if not path.startswith(prefix):
            return httpx.Response(404, json={"message": "unknown school"})
        path = path[len(prefix):]

        if request.method == "GET" and path == "/enfants":
            return httpx.Response(200, json=copy.deepcopy(self.children))
        if request.method == "GET" and path == "/paiements-scolarite/tous":
            rows = self.ledger
            school_year = request.url.params.get("anneeScolaire")
            if school_year:
                rows = [r for r in rows if r.get("anneeScolaire") == school_year]
            page = int(request.url.params.get("page", 1))
            page_size = int(request.url.params.get("pageSize", 100))
            chunk = rows[(page - 1) * page_size:page * page_size]
            return httpx.Response(200, json={"items": copy.deepcopy(chunk), "total": len(rows)})
        guardians_match = re.fullmatch(r"/parent-enfants/enfants/(\d+)/parents", path)
        if request.method == "GET" and guardians_match:
            guardians = self.guardians.get(int(guardians_match.group(1)))
            if guardians is None:
                return httpx.Response(404, json={"message": "no guardian linked"})
            return httpx.Response(200, json=copy.deepcopy(guardians))
        if request.method == "GET" and path == "/tarifs":
            return httpx.Response(200, json=copy.deepcopy(self.tariffs))
        if request.method == "POST" and path == "/paiements-scolarite":
            body = json.loads(request.content)
            tariff = next(t for t in self.tariffs if t["id"] == body["tarifId"])
            entry = {
                "id": self.next_ledger_id,
                "enfantId": body["enfantId"],
                "montantTotal": tariff["tarif"],
                "montantPaye": body["montantPaiement"],
                "anneeScolaire": body["anneeScolaire"],
            }
            self.next_ledger_id += 1
            self.ledger.append(entry)
            return httpx.Response(201, json=entry)
        match = re.fullmatch(r"/paiements-scolarite/(\d+)/paiement", path)
        if request.method == "PUT" and match:
            ledger_id = int(match.group(1))
            entry = next((e for e in self.ledger if e["id"] == ledger_id), None)
            if entry is None:
                return httpx.Response(404, json={"message": "not found"})
            body = json.loads(request.content)
            entry["montantPaye"] += body["montant"]
            if self.put_returns_body:
                return httpx.Response(200, json=copy.deepcopy(entry))
            return httpx.Response(204)
        return httpx.Response(404, json={"message": "no route"})

    def fail(self, fragment: str, status_code: int, method: str = "GET") -> None:
        self.failures[(method, fragment)] = status_code

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture()
def school_api() -> FakeSchoolApi:
    return FakeSchoolApi()


@pytest.fixture()
def api_session() -> ApiSession:
    return ApiSession(token=make_token(), school_id=SCHOOL_ID)


@pytest.fixture()
async def school_client(school_api: FakeSchoolApi, api_session: ApiSession) -> AsyncGenerator[SchoolApiClient, None]:
    async with httpx.AsyncClient(transport=school_api.transport(), base_url=SCHOOL_API_BASE_URL) as http:
        yield SchoolApiClient(http, api_session)


@pytest.fixture()
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """In-memory idempotency store; overrides the FastAPI dependency."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, future=True, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async_session = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            yield session

        app.dependency_overrides[get_db] = override_get_db
        yield session

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.fixture()
async def client(db_session: AsyncSession, school_api: FakeSchoolApi) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, with the school API faked."""

    async def override_school_client(
        session: ApiSession = Depends(get_api_session),
    ) -> AsyncGenerator[SchoolApiClient, None]:
        async with httpx.AsyncClient(transport=school_api.transport(), base_url=SCHOOL_API_BASE_URL) as http:
            yield SchoolApiClient(http, session)

    app.dependency_overrides[get_school_api_client] = override_school_client
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_school_api_client, None)


@pytest.fixture()
def auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture()
def token_factory() -> Callable[..., str]:
    return make_token
