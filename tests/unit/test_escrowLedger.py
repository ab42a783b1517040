"""
Unit tests for the Escrow Ledger.

Tests escrow funding, milestone and final releases, refunds, the ledger
aggregation, and that a failed gateway call leaves no ledger rows behind.
"""

import asyncio
import uuid

import pytest
from sqlalchemy import select

from bidflow.core.result import ErrorKind
from bidflow.integrations.gateway import GatewayError
from bidflow.models.job import Job, JobStatus
from bidflow.models.notification import Notification, NotificationType
from bidflow.models.payment import Payment, PaymentStatus, PaymentType
from bidflow.models.profile import CustomerProfile, ProviderProfile
from bidflow.models.project import Milestone, MilestoneStatus, Project, ProjectStatus
from bidflow.services.projectEngine import MilestoneDraft
from tests.conftest import (
    ADMIN,
    CUSTOMER,
    CUSTOMER_ID,
    OTHER_CUSTOMER,
    PROVIDER_A,
    PROVIDER_A_ID,
    PROVIDER_B,
    accepted_project,
    approved_milestone,
    fetch_all,
    funded_project,
    reload,
)


pytestmark = pytest.mark.asyncio


async def _payments(store, project_id):
    return await fetch_all(
        store,
        select(Payment).where(Payment.project_id == project_id).order_by(Payment.created_at),
    )


async def _submit_for_approval(project_engine, project_id):
    (await project_engine.update_project_status(
        PROVIDER_A, project_id, ProjectStatus.PENDING_APPROVAL
    )).unwrap()


def _charged(gateway) -> int:
    return sum(call["amount_cents"] for call in gateway.calls_to("authorize_hold"))


def _transferred(gateway) -> int:
    return sum(call["amount_cents"] for call in gateway.calls_to("release_funds"))


def _returned(gateway) -> int:
    return sum(call["amount_cents"] for call in gateway.calls_to("refund"))


# ---------------------------------------------------------------------------
# Processor accounts
# ---------------------------------------------------------------------------


class TestSetupIntent:

    async def test_creates_and_stores_customer(self, escrow, gateway, store):
        setup = (await escrow.create_setup_intent(CUSTOMER)).unwrap()

        assert setup.client_secret.endswith("_secret")
        assert setup.customer_reference == gateway.calls_to("create_setup_intent")[0]["customer_reference"]
        profile = (await fetch_all(
            store, select(CustomerProfile).where(CustomerProfile.user_id == CUSTOMER_ID)
        ))[0]
        assert profile.stripe_customer_id == setup.customer_reference

    async def test_reuses_customer_for_setup_and_funding(self, bid_engine, orchestrator, escrow, gateway):
        first = (await escrow.create_setup_intent(CUSTOMER)).unwrap()
        second = (await escrow.create_setup_intent(CUSTOMER)).unwrap()
        await funded_project(bid_engine, orchestrator, escrow)

        assert first.customer_reference == second.customer_reference
        assert first.setup_reference != second.setup_reference
        assert len(gateway.calls_to("create_customer")) == 1
        assert gateway.calls_to("authorize_hold")[0]["customer_reference"] == first.customer_reference

    @pytest.mark.parametrize("identity", [PROVIDER_A, ADMIN])
    async def test_only_customers(self, escrow, gateway, identity):
        result = await escrow.create_setup_intent(identity)
        assert result.error.kind == ErrorKind.FORBIDDEN
        assert gateway.calls == []

    async def test_gateway_failure_stores_nothing(self, escrow, gateway, store):
        gateway.fail_on["create_setup_intent"] = GatewayError("API temporarily unavailable", code="api_error")

        result = await escrow.create_setup_intent(CUSTOMER)
        assert result.error.kind == ErrorKind.GATEWAY
        assert await fetch_all(store, select(CustomerProfile)) == []


class TestPayoutAccount:

    async def test_opens_account_and_links(self, escrow, gateway, store):
        onboarding = (await escrow.setup_payout_account(PROVIDER_A, country="ca")).unwrap()

        assert onboarding.created is True
        assert gateway.calls_to("create_payout_account")[0]["country"] == "CA"
        link = gateway.calls_to("create_onboarding_link")[0]
        assert link["account_reference"] == onboarding.account_reference
        assert link["return_url"] == "https://app.test/payouts/done"

        profile = (await fetch_all(
            store, select(ProviderProfile).where(ProviderProfile.user_id == PROVIDER_A_ID)
        ))[0]
        assert profile.stripe_account_id == onboarding.account_reference

    async def test_second_call_only_refreshes_link(self, escrow, gateway):
        first = (await escrow.setup_payout_account(PROVIDER_A)).unwrap()
        second = (await escrow.setup_payout_account(PROVIDER_A)).unwrap()

        assert second.created is False
        assert second.account_reference == first.account_reference
        assert second.onboarding_url != first.onboarding_url
        assert len(gateway.calls_to("create_payout_account")) == 1
        assert gateway.calls_to("create_payout_account")[0]["country"] == "US"

    async def test_releases_go_to_payout_account(
        self, bid_engine, orchestrator, escrow, project_engine, gateway
    ):
        onboarding = (await escrow.setup_payout_account(PROVIDER_A)).unwrap()
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        assert gateway.calls_to("release_funds")[0]["destination_account"] == onboarding.account_reference

    @pytest.mark.parametrize("identity", [CUSTOMER, ADMIN])
    async def test_only_providers(self, escrow, gateway, identity):
        result = await escrow.setup_payout_account(identity)
        assert result.error.kind == ErrorKind.FORBIDDEN
        assert gateway.calls == []

    async def test_bad_country(self, escrow, gateway):
        result = await escrow.setup_payout_account(PROVIDER_A, country="Canada")
        assert result.error.kind == ErrorKind.VALIDATION
        assert gateway.calls == []

    async def test_link_failure_keeps_no_account(self, escrow, gateway, store):
        gateway.fail_on["create_onboarding_link"] = GatewayError("Account link expired", code="api_error")

        result = await escrow.setup_payout_account(PROVIDER_A)
        assert result.error.kind == ErrorKind.GATEWAY
        assert await fetch_all(store, select(ProviderProfile)) == []


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------


class TestFundEscrow:

    async def test_fund_holds_agreed_amount(self, bid_engine, orchestrator, escrow, gateway, store):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)

        assert deposit.type == PaymentType.DEPOSIT
        assert deposit.status == PaymentStatus.HELD_IN_ESCROW
        assert deposit.amount_cents == 48000
        assert deposit.user_id == CUSTOMER_ID
        assert deposit.external_reference.startswith("pi_test_")

        hold = gateway.calls_to("authorize_hold")[0]
        assert hold["amount_cents"] == 48000
        assert hold["payment_method_reference"] == "pm_card_visa"
        assert hold["transfer_group"] == f"project_{project.id}"
        assert hold["customer_reference"].startswith("cus_test_")

    async def test_fund_starts_project_and_job(self, bid_engine, orchestrator, escrow, store):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        stored = await reload(store, Project, project.id)
        assert stored.status == ProjectStatus.IN_PROGRESS
        assert stored.start_date is not None
        assert (await reload(store, Job, project.job_id)).status == JobStatus.IN_PROGRESS

    async def test_second_fund_conflicts(self, bid_engine, orchestrator, escrow, gateway, store):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        result = await escrow.fund_escrow(CUSTOMER, project.id, "pm_card_visa")

        assert result.error.kind == ErrorKind.CONFLICT
        assert len(await _payments(store, project.id)) == 1
        assert len(gateway.calls_to("authorize_hold")) == 1

    async def test_concurrent_funding_holds_once(self, bid_engine, orchestrator, escrow, gateway, store):
        project = (await accepted_project(bid_engine, orchestrator)).project
        results = await asyncio.gather(
            escrow.fund_escrow(CUSTOMER, project.id, "pm_card_visa"),
            escrow.fund_escrow(CUSTOMER, project.id, "pm_card_visa"),
        )
        assert sorted(r.ok for r in results) == [False, True]
        assert len(gateway.calls_to("authorize_hold")) == 1
        assert len(await _payments(store, project.id)) == 1

    async def test_customer_profile_reused(self, bid_engine, orchestrator, escrow, gateway, store):
        await funded_project(bid_engine, orchestrator, escrow)
        await funded_project(bid_engine, orchestrator, escrow)

        assert len(gateway.calls_to("create_customer")) == 1
        profiles = await fetch_all(
            store, select(CustomerProfile).where(CustomerProfile.user_id == CUSTOMER_ID)
        )
        assert profiles[0].stripe_customer_id == f"cus_test_{CUSTOMER_ID.hex[:8]}"

    async def test_only_customer_funds(self, bid_engine, orchestrator, escrow):
        project = (await accepted_project(bid_engine, orchestrator)).project
        for identity in (PROVIDER_A, OTHER_CUSTOMER, ADMIN):
            result = await escrow.fund_escrow(identity, project.id, "pm_card_visa")
            assert result.error.kind == ErrorKind.FORBIDDEN

    async def test_payment_method_required(self, escrow):
        result = await escrow.fund_escrow(CUSTOMER, uuid.uuid4(), "  ")
        assert result.error.kind == ErrorKind.VALIDATION

    async def test_missing_project(self, escrow):
        result = await escrow.fund_escrow(CUSTOMER, uuid.uuid4(), "pm_card_visa")
        assert result.error.kind == ErrorKind.NOT_FOUND

    async def test_cancelled_project_cannot_be_funded(self, bid_engine, orchestrator, escrow, project_engine):
        project = (await accepted_project(bid_engine, orchestrator)).project
        (await project_engine.cancel_project(CUSTOMER, project.id)).unwrap()
        result = await escrow.fund_escrow(CUSTOMER, project.id, "pm_card_visa")
        assert result.error.kind == ErrorKind.CONFLICT

    async def test_decline_writes_nothing(self, bid_engine, orchestrator, escrow, gateway, store):
        project = (await accepted_project(bid_engine, orchestrator)).project
        gateway.fail_on["authorize_hold"] = GatewayError(
            "Your card was declined.", code="card_declined", decline_code="insufficient_funds"
        )

        result = await escrow.fund_escrow(CUSTOMER, project.id, "pm_card_chargeDeclined")
        assert result.error.kind == ErrorKind.GATEWAY
        assert result.error.message == "Your card was declined."
        assert result.error.details["decline_code"] == "insufficient_funds"

        assert await _payments(store, project.id) == []
        assert (await reload(store, Project, project.id)).status == ProjectStatus.PENDING_START

    async def test_refunded_escrow_can_be_funded_again(self, bid_engine, orchestrator, escrow, store):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()

        again = (await escrow.fund_escrow(CUSTOMER, project.id, "pm_card_visa")).unwrap()
        assert again.status == PaymentStatus.HELD_IN_ESCROW

    async def test_no_refunding_after_release(self, bid_engine, orchestrator, escrow, project_engine):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()
        (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()

        result = await escrow.fund_escrow(CUSTOMER, project.id, "pm_card_visa")
        assert result.error.kind == ErrorKind.CONFLICT
        assert "re-funded" in result.error.message

    async def test_failed_write_voids_hold(self, escrow, gateway):
        await escrow._void_after_failure("pi_test_99")
        assert gateway.voided == ["pi_test_99"]

    async def test_void_failure_is_logged_not_raised(self, escrow, gateway, caplog):
        gateway.fail_on["void_hold"] = GatewayError("No such payment_intent")
        await escrow._void_after_failure("pi_test_99")
        assert "reconcile manually" in caplog.text


# ---------------------------------------------------------------------------
# Milestone releases
# ---------------------------------------------------------------------------


class TestReleaseMilestone:

    async def test_release_links_payment(self, bid_engine, orchestrator, escrow, project_engine, gateway, store):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)

        payment = (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()
        assert payment.type == PaymentType.MILESTONE
        assert payment.status == PaymentStatus.RELEASED
        assert payment.amount_cents == 20000
        assert payment.released_at is not None
        assert (await reload(store, Milestone, milestone.id)).payment_id == payment.id

        transfer = gateway.calls_to("release_funds")[0]
        assert transfer["escrow_reference"] == deposit.external_reference
        assert transfer["amount_cents"] == 20000

    async def test_second_release_conflicts(self, bid_engine, orchestrator, escrow, project_engine, gateway, store):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        first = (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        result = await escrow.release_milestone_payment(CUSTOMER, milestone.id)
        assert result.error.kind == ErrorKind.CONFLICT
        assert len(gateway.calls_to("release_funds")) == 1
        assert (await reload(store, Milestone, milestone.id)).payment_id == first.id

    async def test_concurrent_release_pays_once(self, bid_engine, orchestrator, escrow, project_engine, gateway):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        results = await asyncio.gather(
            escrow.release_milestone_payment(CUSTOMER, milestone.id),
            escrow.release_milestone_payment(CUSTOMER, milestone.id),
        )
        assert sorted(r.ok for r in results) == [False, True]
        assert len(gateway.calls_to("release_funds")) == 1

    async def test_unapproved_milestone(self, bid_engine, orchestrator, escrow, project_engine):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = (await project_engine.create_milestone(
            CUSTOMER, project.id, MilestoneDraft(title="Tiles", amount_cents=10000)
        )).unwrap()
        result = await escrow.release_milestone_payment(CUSTOMER, milestone.id)
        assert result.error.kind == ErrorKind.CONFLICT
        assert "approved" in result.error.message

    async def test_requires_held_escrow(self, bid_engine, orchestrator, escrow, project_engine):
        project = (await accepted_project(bid_engine, orchestrator)).project
        milestone = await approved_milestone(project_engine, project.id, 20000)
        result = await escrow.release_milestone_payment(CUSTOMER, milestone.id)
        assert result.error.kind == ErrorKind.CONFLICT
        assert "No funds" in result.error.message

    async def test_provider_cannot_release(self, bid_engine, orchestrator, escrow, project_engine):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        result = await escrow.release_milestone_payment(PROVIDER_A, milestone.id)
        assert result.error.kind == ErrorKind.FORBIDDEN

    async def test_gateway_failure_leaves_milestone_unpaid(
        self, bid_engine, orchestrator, escrow, project_engine, gateway, store
    ):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        gateway.fail_on["release_funds"] = GatewayError("Insufficient platform balance", code="balance_insufficient")

        result = await escrow.release_milestone_payment(CUSTOMER, milestone.id)
        assert result.error.kind == ErrorKind.GATEWAY
        assert (await reload(store, Milestone, milestone.id)).payment_id is None
        assert len(await _payments(store, project.id)) == 1

        del gateway.fail_on["release_funds"]
        assert (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).ok

    async def test_provider_is_notified(self, bid_engine, orchestrator, escrow, project_engine, store):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        received = await fetch_all(
            store,
            select(Notification).where(
                Notification.user_id == PROVIDER_A_ID,
                Notification.notification_type == NotificationType.PAYMENT_RECEIVED,
            ),
        )
        assert len(received) == 1
        assert "$200.00" in received[0].body

    async def test_milestone_release_leaves_stats(self, bid_engine, orchestrator, escrow, project_engine, store):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        provider = (await fetch_all(
            store, select(ProviderProfile).where(ProviderProfile.user_id == PROVIDER_A_ID)
        ))[0]
        assert provider.total_earned_cents == 0


# ---------------------------------------------------------------------------
# Final release
# ---------------------------------------------------------------------------


class TestReleaseFinal:

    async def test_final_releases_remaining_and_completes(
        self, bid_engine, orchestrator, escrow, project_engine, gateway, store
    ):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()
        await _submit_for_approval(project_engine, project.id)

        final = (await escrow.release_final_payment(CUSTOMER, project.id)).unwrap()
        assert final.type == PaymentType.FINAL
        assert final.amount_cents == 28000
        assert gateway.calls_to("release_funds")[-1]["amount_cents"] == 28000

        stored = await reload(store, Project, project.id)
        assert stored.status == ProjectStatus.COMPLETED
        assert stored.completed_at is not None
        assert stored.actual_end_date is not None
        assert (await reload(store, Job, project.job_id)).status == JobStatus.COMPLETED

    async def test_final_updates_party_stats(self, bid_engine, orchestrator, escrow, project_engine, store):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()
        await _submit_for_approval(project_engine, project.id)
        (await escrow.release_final_payment(CUSTOMER, project.id)).unwrap()

        provider = (await fetch_all(
            store, select(ProviderProfile).where(ProviderProfile.user_id == PROVIDER_A_ID)
        ))[0]
        assert provider.total_projects_completed == 1
        assert provider.total_earned_cents == 48000
        assert provider.total_bids_won == 1

        customer = (await fetch_all(
            store, select(CustomerProfile).where(CustomerProfile.user_id == CUSTOMER_ID)
        ))[0]
        assert customer.total_projects_completed == 1
        assert customer.total_spent_cents == 48000

    async def test_final_without_milestones(self, bid_engine, orchestrator, escrow, project_engine):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        await _submit_for_approval(project_engine, project.id)
        final = (await escrow.release_final_payment(CUSTOMER, project.id)).unwrap()
        assert final.amount_cents == 48000

    async def test_requires_pending_approval(self, bid_engine, orchestrator, escrow):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        result = await escrow.release_final_payment(CUSTOMER, project.id)
        assert result.error.kind == ErrorKind.CONFLICT

    async def test_second_final_conflicts(self, bid_engine, orchestrator, escrow, project_engine, gateway):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        await _submit_for_approval(project_engine, project.id)
        (await escrow.release_final_payment(CUSTOMER, project.id)).unwrap()

        result = await escrow.release_final_payment(CUSTOMER, project.id)
        assert result.error.kind == ErrorKind.CONFLICT
        assert len(gateway.calls_to("release_funds")) == 1

    async def test_gateway_failure_keeps_project_open(
        self, bid_engine, orchestrator, escrow, project_engine, gateway, store
    ):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        await _submit_for_approval(project_engine, project.id)
        gateway.fail_on["release_funds"] = GatewayError("Account restricted", code="account_invalid")

        result = await escrow.release_final_payment(CUSTOMER, project.id)
        assert result.error.kind == ErrorKind.GATEWAY
        assert (await reload(store, Project, project.id)).status == ProjectStatus.PENDING_APPROVAL
        provider = await fetch_all(
            store, select(ProviderProfile).where(ProviderProfile.user_id == PROVIDER_A_ID)
        )
        assert provider[0].total_projects_completed == 0

    async def test_customer_told_project_completed(self, bid_engine, orchestrator, escrow, project_engine, store):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        await _submit_for_approval(project_engine, project.id)
        (await escrow.release_final_payment(CUSTOMER, project.id)).unwrap()

        completed = await fetch_all(
            store,
            select(Notification).where(
                Notification.user_id == CUSTOMER_ID,
                Notification.notification_type == NotificationType.PROJECT_COMPLETED,
            ),
        )
        assert len(completed) == 1


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


class TestRefunds:

    async def test_refund_full_deposit(self, bid_engine, orchestrator, escrow, gateway, store):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        refund = (await escrow.request_refund(CUSTOMER, deposit.id, "Changed my mind")).unwrap()

        assert refund.type == PaymentType.REFUND
        assert refund.status == PaymentStatus.REFUNDED
        assert refund.amount_cents == 48000
        assert refund.refund_of_id == deposit.id
        assert refund.refund_reason == "Changed my mind"

        original = await reload(store, Payment, deposit.id)
        assert original.status == PaymentStatus.REFUNDED
        assert original.refunded_at is not None

        call = gateway.calls_to("refund")[0]
        assert call["reference"] == deposit.external_reference
        assert call["charge_reference"] is None

    async def test_deposit_refund_returns_unreleased_balance(
        self, bid_engine, orchestrator, escrow, project_engine
    ):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        refund = (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()
        assert refund.amount_cents == 28000
        assert refund.refund_reason == "requested_by_customer"

    async def test_refund_released_payment(self, bid_engine, orchestrator, escrow, project_engine, gateway):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        release = (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        refund = (await escrow.request_refund(CUSTOMER, release.id)).unwrap()
        assert refund.amount_cents == 20000
        call = gateway.calls_to("refund")[0]
        assert call["reference"] == release.external_reference
        assert call["charge_reference"] == deposit.external_reference

    async def test_refund_leaves_statuses(self, bid_engine, orchestrator, escrow, store):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()
        assert (await reload(store, Project, project.id)).status == ProjectStatus.IN_PROGRESS

    async def test_refund_twice_conflicts(self, bid_engine, orchestrator, escrow, gateway):
        _, deposit = await funded_project(bid_engine, orchestrator, escrow)
        (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()
        result = await escrow.request_refund(CUSTOMER, deposit.id)
        assert result.error.kind == ErrorKind.CONFLICT
        assert len(gateway.calls_to("refund")) == 1

    async def test_refund_row_is_not_refundable(self, bid_engine, orchestrator, escrow):
        _, deposit = await funded_project(bid_engine, orchestrator, escrow)
        refund = (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()
        result = await escrow.request_refund(CUSTOMER, refund.id)
        assert result.error.kind == ErrorKind.CONFLICT

    async def test_fully_released_deposit_has_nothing_to_refund(
        self, bid_engine, orchestrator, escrow, project_engine
    ):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        await _submit_for_approval(project_engine, project.id)
        (await escrow.release_final_payment(CUSTOMER, project.id)).unwrap()

        result = await escrow.request_refund(CUSTOMER, deposit.id)
        assert result.error.kind == ErrorKind.CONFLICT
        assert "Nothing is left" in result.error.message

    async def test_only_payer_refunds(self, bid_engine, orchestrator, escrow):
        _, deposit = await funded_project(bid_engine, orchestrator, escrow)
        for identity in (PROVIDER_A, OTHER_CUSTOMER, ADMIN):
            result = await escrow.request_refund(identity, deposit.id)
            assert result.error.kind == ErrorKind.FORBIDDEN

    async def test_gateway_failure_writes_nothing(self, bid_engine, orchestrator, escrow, gateway, store):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        gateway.fail_on["refund"] = GatewayError("Charge already refunded", code="charge_already_refunded")

        result = await escrow.request_refund(CUSTOMER, deposit.id)
        assert result.error.kind == ErrorKind.GATEWAY
        assert (await reload(store, Payment, deposit.id)).status == PaymentStatus.HELD_IN_ESCROW
        assert len(await _payments(store, project.id)) == 1

    async def test_missing_payment(self, escrow):
        result = await escrow.request_refund(CUSTOMER, uuid.uuid4())
        assert result.error.kind == ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Ledger views
# ---------------------------------------------------------------------------


class TestLedgerViews:

    async def test_summary_never_exceeds_agreed(self, bid_engine, orchestrator, escrow, project_engine, gateway):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)

        async def committed():
            _, summary = (await escrow.get_project_payments(CUSTOMER, project.id)).unwrap()
            assert summary.committed_cents <= summary.agreed_amount_cents
            assert _transferred(gateway) <= summary.agreed_amount_cents
            assert _returned(gateway) <= _charged(gateway)
            return summary

        summary = await committed()
        assert (summary.held_cents, summary.released_cents, summary.outstanding_cents) == (48000, 0, 48000)

        first = await approved_milestone(project_engine, project.id, 20000)
        release = (await escrow.release_milestone_payment(CUSTOMER, first.id)).unwrap()
        await committed()

        (await escrow.request_refund(CUSTOMER, release.id)).unwrap()
        summary = await committed()
        assert summary.released_cents == 20000
        assert summary.reversed_cents == 20000
        assert summary.outstanding_cents == 28000
        assert summary.remaining_cents == 28000

        second = await approved_milestone(project_engine, project.id, 15000)
        (await escrow.release_milestone_payment(CUSTOMER, second.id)).unwrap()
        summary = await committed()
        assert summary.released_cents == 35000
        assert summary.remaining_cents == 13000
        assert summary.outstanding_cents == 13000

        (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()
        summary = await committed()
        assert summary.outstanding_cents == 0
        assert summary.refunded_cents == 33000
        # customer's net charge matches what the provider kept
        assert _charged(gateway) - _returned(gateway) == summary.paid_out_cents == 15000

    async def test_refunded_release_not_paid_again_on_final(
        self, bid_engine, orchestrator, escrow, project_engine, gateway, store
    ):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        release = (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()
        (await escrow.request_refund(CUSTOMER, release.id)).unwrap()
        await _submit_for_approval(project_engine, project.id)

        final = (await escrow.release_final_payment(CUSTOMER, project.id)).unwrap()
        assert final.amount_cents == 28000
        assert _transferred(gateway) == 48000
        assert _charged(gateway) - _returned(gateway) == 28000

        _, summary = (await escrow.get_project_payments(CUSTOMER, project.id)).unwrap()
        assert (summary.released_cents, summary.outstanding_cents, summary.remaining_cents) == (48000, 0, 0)
        assert summary.paid_out_cents == 28000

        provider = (await fetch_all(
            store, select(ProviderProfile).where(ProviderProfile.user_id == PROVIDER_A_ID)
        ))[0]
        assert provider.total_earned_cents == 28000

    async def test_refunded_release_then_deposit_refund(
        self, bid_engine, orchestrator, escrow, project_engine, gateway
    ):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        release = (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()
        (await escrow.request_refund(CUSTOMER, release.id)).unwrap()

        refund = (await escrow.request_refund(CUSTOMER, deposit.id)).unwrap()
        assert refund.amount_cents == 28000
        assert _returned(gateway) == _charged(gateway) == 48000

        _, summary = (await escrow.get_project_payments(CUSTOMER, project.id)).unwrap()
        assert summary.outstanding_cents == 0
        assert summary.paid_out_cents == 0

    async def test_project_payments_oldest_first(self, bid_engine, orchestrator, escrow, project_engine):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        payments, _ = (await escrow.get_project_payments(PROVIDER_A, project.id)).unwrap()
        assert [p.type for p in payments] == [PaymentType.DEPOSIT, PaymentType.MILESTONE]

    async def test_project_payments_hidden_from_strangers(self, bid_engine, orchestrator, escrow):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        result = await escrow.get_project_payments(PROVIDER_B, project.id)
        assert result.error.kind == ErrorKind.FORBIDDEN

    async def test_history_filters(self, bid_engine, orchestrator, escrow, project_engine):
        project, deposit = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()

        everything = (await escrow.payment_history(CUSTOMER)).unwrap()
        assert everything.total == 2

        deposits = (await escrow.payment_history(CUSTOMER, payment_type=PaymentType.DEPOSIT)).unwrap()
        assert [p.id for p in deposits.items] == [deposit.id]

        released = (await escrow.payment_history(CUSTOMER, status=PaymentStatus.RELEASED)).unwrap()
        assert released.total == 1

        assert (await escrow.payment_history(PROVIDER_A)).unwrap().total == 0

    async def test_approved_milestone_status_survives_release(
        self, bid_engine, orchestrator, escrow, project_engine, store
    ):
        project, _ = await funded_project(bid_engine, orchestrator, escrow)
        milestone = await approved_milestone(project_engine, project.id, 20000)
        (await escrow.release_milestone_payment(CUSTOMER, milestone.id)).unwrap()
        assert (await reload(store, Milestone, milestone.id)).status == MilestoneStatus.APPROVED
