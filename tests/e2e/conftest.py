"""
E2E test fixtures for the BidFlow API.

Provides:
- An in-process FastAPI app built by ``create_app`` over a file-backed
  SQLite ledger and the in-memory payment gateway
- httpx AsyncClient wired via ASGI transport (no network needed)
- Bearer headers minted with the same secret the app verifies
- Helpers that drive a job through the HTTP workflow

The full route -> engine -> DB flow is exercised; only the payment
processor is replaced.
"""

from __future__ import annotations

import uuid
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bidflow.core.config import Settings
from bidflow.core.database import LedgerStore
from bidflow.main import create_app
from bidflow.models import Base
from bidflow.services.auth_service import Role, create_access_token
from tests.conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    OTHER_CUSTOMER_ID,
    PROVIDER_A_ID,
    PROVIDER_B_ID,
    FakeGateway,
    build_test_engine,
)

API = "/api/v1"

TEST_SETTINGS = Settings(
    jwt_secret="e2e-test-secret",
    database_url="sqlite+aiosqlite://",
    debug=False,
)


def auth_headers(user_id: uuid.UUID, role: Role) -> dict[str, str]:
    token = create_access_token(TEST_SETTINGS, user_id, role)
    return {"Authorization": f"Bearer {token}"}


CUSTOMER_HEADERS = auth_headers(CUSTOMER_ID, Role.CUSTOMER)
OTHER_CUSTOMER_HEADERS = auth_headers(OTHER_CUSTOMER_ID, Role.CUSTOMER)
PROVIDER_A_HEADERS = auth_headers(PROVIDER_A_ID, Role.PROVIDER)
PROVIDER_B_HEADERS = auth_headers(PROVIDER_B_ID, Role.PROVIDER)
ADMIN_HEADERS = auth_headers(ADMIN_ID, Role.ADMIN)


# ---------------------------------------------------------------------------
# App & client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def e2e_store(tmp_path) -> AsyncGenerator[LedgerStore, None]:
    engine = build_test_engine(tmp_path / "e2e.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    ledger_store = LedgerStore(engine)
    yield ledger_store
    await ledger_store.dispose()


@pytest.fixture
def e2e_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def client(e2e_store, e2e_gateway) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(TEST_SETTINGS, store=e2e_store, gateway=e2e_gateway)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------------

async def post_job(client: AsyncClient, **overrides: Any) -> dict:
    body = {
        "title": "Repaint living room",
        "description": "Two coats, walls only, about 40 square metres.",
        "category": "painting",
        "starting_bid_cents": 50000,
    }
    body.update(overrides)
    resp = await client.post(f"{API}/jobs", json=body, headers=CUSTOMER_HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def post_bid(client: AsyncClient, job_id: str, headers: dict, amount_cents: int, **overrides: Any) -> dict:
    body = {"amount_cents": amount_cents, "proposal": "Insured painter, five years of interior work."}
    body.update(overrides)
    resp = await client.post(f"{API}/jobs/{job_id}/bids", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def accept(client: AsyncClient, bid_id: str) -> dict:
    resp = await client.post(f"{API}/bids/{bid_id}/accept", headers=CUSTOMER_HEADERS)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


async def project_with_bids(client: AsyncClient) -> dict:
    """Job with bids of 48000 (A) and 51000 (B), A accepted. Returns the acceptance."""
    job = await post_job(client)
    bid_a = await post_bid(client, job["id"], PROVIDER_A_HEADERS, 48000)
    await post_bid(client, job["id"], PROVIDER_B_HEADERS, 51000)
    return await accept(client, bid_a["id"])


async def fund(client: AsyncClient, project_id: str) -> dict:
    resp = await client.post(
        f"{API}/payments/escrow",
        json={"project_id": project_id, "payment_method_id": "pm_card_visa"},
        headers=CUSTOMER_HEADERS,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def approved_milestone(client: AsyncClient, project_id: str, amount_cents: int = 20000) -> dict:
    resp = await client.post(
        f"{API}/projects/{project_id}/milestones",
        json={"title": "Prep and prime", "amount_cents": amount_cents},
        headers=CUSTOMER_HEADERS,
    )
    assert resp.status_code == 201, resp.text
    milestone_id = resp.json()["data"]["id"]

    resp = await client.post(
        f"{API}/projects/milestones/{milestone_id}/complete",
        json={"notes": "Walls primed"},
        headers=PROVIDER_A_HEADERS,
    )
    assert resp.status_code == 200, resp.text
    resp = await client.post(f"{API}/projects/milestones/{milestone_id}/approve", headers=CUSTOMER_HEADERS)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]
