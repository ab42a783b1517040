"""
Shared pytest fixtures for BidFlow tests.

Provides a real ``LedgerStore`` over a file-backed SQLite database (one per
test), an in-memory payment gateway, the workflow engines wired together
the way ``bidflow.main.create_app`` wires them, and helpers that drive a
job through the workflow up to a given point.

Every transaction on the test database starts with ``BEGIN IMMEDIATE`` so
concurrent writers serialize exactly like row-locked writers on PostgreSQL.
"""

from __future__ import annotations

import itertools
import uuid
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from bidflow.core.database import LedgerStore
from bidflow.integrations.gateway import (
    EscrowHold,
    FundsRelease,
    GatewayError,
    PaymentSetup,
    RefundReceipt,
)
from bidflow.models import Base
from bidflow.services.auth_service import Identity, Role
from bidflow.services.bidEngine import BidDraft, BidEngine, JobDraft
from bidflow.services.escrowLedger import EscrowLedger
from bidflow.services.notificationService import NotificationService
from bidflow.services.projectEngine import MilestoneDraft, ProjectEngine
from bidflow.services.workflowOrchestrator import WorkflowOrchestrator


# ---------------------------------------------------------------------------
# Test identities (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

CUSTOMER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
PROVIDER_A_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
PROVIDER_B_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
ADMIN_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")
OTHER_CUSTOMER_ID = uuid.UUID("eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee")

CUSTOMER = Identity(CUSTOMER_ID, Role.CUSTOMER)
PROVIDER_A = Identity(PROVIDER_A_ID, Role.PROVIDER)
PROVIDER_B = Identity(PROVIDER_B_ID, Role.PROVIDER)
ADMIN = Identity(ADMIN_ID, Role.ADMIN)
OTHER_CUSTOMER = Identity(OTHER_CUSTOMER_ID, Role.CUSTOMER)


# ---------------------------------------------------------------------------
# In-memory payment gateway
# ---------------------------------------------------------------------------

class FakeGateway:
    """``PaymentGateway`` double that records every call.

    Set ``fail_on["<method>"] = GatewayError(...)`` to make the next calls
    to that method fail.
    """

    def __init__(self) -> None:
        self._seq = itertools.count(1)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_on: dict[str, GatewayError] = {}
        self.voided: list[str] = []

    def _record(self, method: str, **kwargs: Any) -> None:
        self.calls.append((method, kwargs))
        if method in self.fail_on:
            raise self.fail_on[method]

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def create_customer(self, user_id: uuid.UUID) -> str:
        self._record("create_customer", user_id=user_id)
        return f"cus_test_{user_id.hex[:8]}"

    async def create_setup_intent(self, customer_reference: str) -> PaymentSetup:
        self._record("create_setup_intent", customer_reference=customer_reference)
        seq = next(self._seq)
        return PaymentSetup(reference=f"seti_test_{seq}", client_secret=f"seti_test_{seq}_secret")

    async def create_payout_account(self, user_id: uuid.UUID, *, country: str) -> str:
        self._record("create_payout_account", user_id=user_id, country=country)
        return f"acct_test_{user_id.hex[:8]}"

    async def create_onboarding_link(self, account_reference: str, **kwargs: Any) -> str:
        self._record("create_onboarding_link", account_reference=account_reference, **kwargs)
        return f"https://connect.example.test/setup/{account_reference}/{next(self._seq)}"

    async def authorize_hold(self, **kwargs: Any) -> EscrowHold:
        self._record("authorize_hold", **kwargs)
        return EscrowHold(
            reference=f"pi_test_{next(self._seq)}",
            status="requires_capture",
            amount_cents=kwargs["amount_cents"],
            currency=kwargs["currency"],
        )

    async def void_hold(self, reference: str) -> None:
        self._record("void_hold", reference=reference)
        self.voided.append(reference)

    async def release_funds(self, **kwargs: Any) -> FundsRelease:
        self._record("release_funds", **kwargs)
        return FundsRelease(
            reference=f"tr_test_{next(self._seq)}",
            amount_cents=kwargs["amount_cents"],
            currency=kwargs["currency"],
        )

    async def refund(self, **kwargs: Any) -> RefundReceipt:
        self._record("refund", **kwargs)
        return RefundReceipt(
            reference=f"re_test_{next(self._seq)}",
            status="succeeded",
            amount_cents=kwargs["amount_cents"],
        )


# ---------------------------------------------------------------------------
# Store & engines
# ---------------------------------------------------------------------------

def build_test_engine(path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, _):
        # Let SQLAlchemy, not the driver, decide where transactions begin
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = build_test_engine(tmp_path / "ledger.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    ledger_store = LedgerStore(engine)
    yield ledger_store
    await ledger_store.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifications(store) -> NotificationService:
    return NotificationService(store)


@pytest.fixture
def bid_engine(store, notifications) -> BidEngine:
    return BidEngine(store, notifications, default_currency="usd", max_page_size=50)


@pytest.fixture
def project_engine(store, notifications) -> ProjectEngine:
    return ProjectEngine(store, notifications, max_page_size=50)


@pytest.fixture
def escrow(store, gateway, notifications) -> EscrowLedger:
    return EscrowLedger(
        store,
        gateway,
        notifications,
        max_page_size=50,
        payout_refresh_url="https://app.test/payouts/refresh",
        payout_return_url="https://app.test/payouts/done",
    )


@pytest.fixture
def orchestrator(store, bid_engine, project_engine, notifications) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(store, bid_engine, project_engine, notifications)


# ---------------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------------

async def open_job(bid_engine: BidEngine, starting_bid_cents: int = 50000, **overrides: Any):
    draft = JobDraft(
        title=overrides.pop("title", "Replace kitchen faucet"),
        description=overrides.pop("description", "Old faucet leaks; new one already purchased."),
        category=overrides.pop("category", "plumbing"),
        starting_bid_cents=starting_bid_cents,
        **overrides,
    )
    return (await bid_engine.create_job(CUSTOMER, draft)).unwrap()


async def place_bid(bid_engine: BidEngine, provider: Identity, job_id: uuid.UUID, amount_cents: int, **overrides: Any):
    draft = BidDraft(
        amount_cents=amount_cents,
        proposal=overrides.pop("proposal", "Licensed plumber, can start this week."),
        **overrides,
    )
    return (await bid_engine.submit_bid(provider, job_id, draft)).unwrap()


async def accepted_project(bid_engine: BidEngine, orchestrator: WorkflowOrchestrator, amount_cents: int = 48000):
    """Job with bids of A=amount and B=51000, A accepted. Returns the ``Acceptance``."""
    job = await open_job(bid_engine)
    bid_a = await place_bid(bid_engine, PROVIDER_A, job.id, amount_cents)
    await place_bid(bid_engine, PROVIDER_B, job.id, 51000)
    return (await orchestrator.accept_bid(CUSTOMER, bid_a.id)).unwrap()


async def funded_project(bid_engine, orchestrator, escrow, amount_cents: int = 48000):
    acceptance = await accepted_project(bid_engine, orchestrator, amount_cents)
    deposit = (await escrow.fund_escrow(CUSTOMER, acceptance.project.id, "pm_card_visa")).unwrap()
    return acceptance.project, deposit


async def approved_milestone(project_engine: ProjectEngine, project_id: uuid.UUID, amount_cents: int = 20000):
    milestone = (await project_engine.create_milestone(
        CUSTOMER,
        project_id,
        MilestoneDraft(title="Rough-in plumbing", amount_cents=amount_cents),
    )).unwrap()
    (await project_engine.complete_milestone(PROVIDER_A, milestone.id)).unwrap()
    return (await project_engine.approve_milestone(CUSTOMER, milestone.id)).unwrap()


async def reload(store: LedgerStore, model, row_id: uuid.UUID):
    """Fresh copy of a row as committed."""
    async with store.session() as session:
        return await session.get(model, row_id)


async def fetch_all(store: LedgerStore, stmt) -> list:
    async with store.session() as session:
        return list((await session.execute(stmt)).scalars().all())
