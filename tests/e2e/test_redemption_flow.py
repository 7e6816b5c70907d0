"""
End-to-End Redemption Tests

Drives the running API and seeds offers, quota and counters straight into
its database. Skipped when either is unreachable.

Run with:
    E2E_BASE_URL=http://localhost:8000 \
    E2E_DATABASE_URL=postgresql+asyncpg://... \
    pytest tests/e2e -v -m e2e
"""

import os
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy import Engine, create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import settings
from app.db.migration_runner import sync_database_url
from app.db.models import Offer, OfferDailyCounter, QuotaRecord, RedemptionToken
from app.services.offer_cap import local_day

BASE_URL = os.environ.get("E2E_BASE_URL", "http://localhost:8000")
DATABASE_URL = os.environ.get("E2E_DATABASE_URL", settings.database_url)

pytestmark = pytest.mark.e2e


def _jwt(jwt_factory, sub: str, merchant_id: UUID | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {jwt_factory(sub=sub, merchant_id=merchant_id)}"}


@pytest.fixture(scope="module")
def api() -> Iterator[httpx.Client]:
    """HTTP client for the running API."""
    client = httpx.Client(base_url=BASE_URL, timeout=10.0)
    try:
        client.get("/health").raise_for_status()
    except httpx.HTTPError:
        client.close()
        pytest.skip(f"API not reachable at {BASE_URL}")
    yield client
    client.close()


@pytest.fixture(scope="module")
def engine() -> Iterator[Engine]:
    """Synchronous engine on the API's database for seeding state."""
    db_engine = create_engine(sync_database_url(DATABASE_URL))
    try:
        with db_engine.connect():
            pass
    except OperationalError:
        db_engine.dispose()
        pytest.skip("E2E database not reachable")
    yield db_engine
    db_engine.dispose()


class Seeder:
    """Writes the merchant-directory state the API only reads."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def offer(self, cap: int | None, used_today: int = 0, active: bool = True) -> Offer:
        merchant_id = uuid4()
        offer = Offer(
            id=uuid4(), merchant_id=merchant_id, title="e2e", active=active, per_day_cap=cap
        )
        with Session(self.engine) as session:
            session.add(offer)
            if used_today:
                session.add(
                    OfferDailyCounter(
                        offer_id=offer.id,
                        day=local_day(datetime.now(UTC)),
                        used_count=used_today,
                        cap=cap,
                    )
                )
            session.commit()
            session.refresh(offer)
            session.expunge(offer)
        return offer

    def quota(self, user_id: str, remaining: int) -> None:
        with Session(self.engine) as session:
            session.add(QuotaRecord(user_id=user_id, remaining=remaining, granted_total=remaining))
            session.commit()

    def used_today(self, offer_id: UUID) -> int:
        with Session(self.engine) as session:
            counter = session.get(OfferDailyCounter, (offer_id, local_day(datetime.now(UTC))))
            return counter.used_count if counter else 0

    def token_status(self, token_id: str) -> str | None:
        with Session(self.engine) as session:
            return session.scalar(
                select(RedemptionToken.status).where(RedemptionToken.id == token_id)
            )


@pytest.fixture
def seed(engine: Engine) -> Seeder:
    return Seeder(engine)


def issue(api: httpx.Client, headers: dict[str, str], offer: Offer, **extra) -> httpx.Response:
    body = {"offer_id": str(offer.id), "merchant_id": str(offer.merchant_id), **extra}
    return api.post("/v1/redemptions/tokens", json=body, headers=headers)


def scan(api: httpx.Client, headers: dict[str, str], token: str) -> dict:
    response = api.post("/v1/redemptions/scans", json={"token": token}, headers=headers)
    assert response.status_code == 200
    return response.json()


class TestScenarios:
    """Issue and scan flows against the live stack."""

    def test_issue_then_scan_consumes_once(self, api, seed, jwt_factory):
        """Last free redemption issued, scanned once, then refused."""
        offer = seed.offer(cap=5, used_today=3)
        user = f"e2e-{uuid4()}"
        seed.quota(user, remaining=1)
        consumer = _jwt(jwt_factory, user)
        scanner = _jwt(jwt_factory, "scanner", merchant_id=offer.merchant_id)

        issued = issue(api, consumer, offer)
        assert issued.status_code == 201
        assert issued.json()["free_remaining"] == 0

        first = scan(api, scanner, issued.json()["token"])
        assert first == {
            "outcome": "accepted",
            "reason": None,
            "offer_id": str(offer.id),
            "used_today": 4,
        }
        assert seed.used_today(offer.id) == 4

        second = scan(api, scanner, issued.json()["token"])
        assert second["reason"] == "already_used"

    def test_exhausted_quota_leaves_previous_token_usable(self, api, seed, jwt_factory):
        offer = seed.offer(cap=5)
        user = f"e2e-{uuid4()}"
        seed.quota(user, remaining=1)
        consumer = _jwt(jwt_factory, user)

        first = issue(api, consumer, offer)
        assert first.status_code == 201

        second = issue(api, consumer, offer)
        assert second.status_code == 402
        assert second.json()["detail"] == "quota_exhausted"
        assert seed.token_status(first.json()["token_id"]) == "active"

        scanner = _jwt(jwt_factory, "scanner", merchant_id=offer.merchant_id)
        assert scan(api, scanner, first.json()["token"])["outcome"] == "accepted"

    def test_cap_reached_leaves_token_active(self, api, seed, jwt_factory):
        offer = seed.offer(cap=1, used_today=1)
        consumer = _jwt(jwt_factory, f"e2e-{uuid4()}")
        scanner = _jwt(jwt_factory, "scanner", merchant_id=offer.merchant_id)

        issued = issue(api, consumer, offer)
        assert issued.status_code == 201

        result = scan(api, scanner, issued.json()["token"])
        assert result["reason"] == "cap_reached"
        assert seed.token_status(issued.json()["token_id"]) == "active"

    def test_expired_token_rejected(self, api, seed, jwt_factory):
        """Two second token scanned after three seconds."""
        offer = seed.offer(cap=None)
        consumer = _jwt(jwt_factory, f"e2e-{uuid4()}")
        scanner = _jwt(jwt_factory, "scanner", merchant_id=offer.merchant_id)

        issued = issue(api, consumer, offer, ttl_seconds=2)
        assert issued.status_code == 201
        assert issued.json()["ttl_seconds"] == 2
        time.sleep(3)

        assert scan(api, scanner, issued.json()["token"])["reason"] == "expired"

    def test_reissue_supersedes(self, api, seed, jwt_factory):
        offer = seed.offer(cap=None)
        consumer = _jwt(jwt_factory, f"e2e-{uuid4()}")
        scanner = _jwt(jwt_factory, "scanner", merchant_id=offer.merchant_id)

        first = issue(api, consumer, offer).json()
        second = issue(api, consumer, offer).json()
        assert second["superseded_token_id"] == first["token_id"]

        assert scan(api, scanner, first["token"])["reason"] == "superseded"
        assert scan(api, scanner, second["token"])["outcome"] == "accepted"

    def test_wrong_merchant(self, api, seed, jwt_factory):
        offer = seed.offer(cap=None)
        consumer = _jwt(jwt_factory, f"e2e-{uuid4()}")
        other_scanner = _jwt(jwt_factory, "scanner", merchant_id=uuid4())

        issued = issue(api, consumer, offer).json()

        assert scan(api, other_scanner, issued["token"])["reason"] == "merchant_mismatch"


class TestConcurrency:
    """Invariants under parallel callers."""

    WORKERS = 16

    def test_concurrent_scans_accept_exactly_once(self, api, seed, jwt_factory):
        offer = seed.offer(cap=None)
        consumer = _jwt(jwt_factory, f"e2e-{uuid4()}")
        scanner = _jwt(jwt_factory, "scanner", merchant_id=offer.merchant_id)
        token = issue(api, consumer, offer).json()["token"]

        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            results = list(pool.map(lambda _: scan(api, scanner, token), range(self.WORKERS)))

        outcomes = [result["outcome"] for result in results]
        assert outcomes.count("accepted") == 1
        assert {r["reason"] for r in results if r["outcome"] == "rejected"} == {"already_used"}

    def test_concurrent_increments_never_exceed_cap(self, api, seed, jwt_factory):
        cap = 3
        offer = seed.offer(cap=cap)
        scanner = _jwt(jwt_factory, "scanner", merchant_id=offer.merchant_id)
        tokens = [
            issue(api, _jwt(jwt_factory, f"e2e-{uuid4()}"), offer).json()["token"]
            for _ in range(self.WORKERS)
        ]

        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            results = list(pool.map(lambda token: scan(api, scanner, token), tokens))

        assert [r["outcome"] for r in results].count("accepted") == cap
        assert seed.used_today(offer.id) == cap

    def test_concurrent_issuance_never_overspends_quota(self, api, seed, jwt_factory):
        user = f"e2e-{uuid4()}"
        seed.quota(user, remaining=2)
        consumer = _jwt(jwt_factory, user)
        offers = [seed.offer(cap=None) for _ in range(self.WORKERS)]

        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            statuses = list(pool.map(lambda o: issue(api, consumer, o).status_code, offers))

        assert statuses.count(201) == 2
        assert set(statuses) <= {201, 402}
        remaining = api.get("/v1/redemptions/quota", headers=consumer).json()["remaining"]
        assert remaining == 0
