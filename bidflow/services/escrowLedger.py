"""
Escrow Ledger Engine
====================

Moves money for a project through the payment gateway and records every
movement in the append-only ``payments`` ledger.

Flow::

    create_setup_intent         customer saves a payment method
    setup_payout_account        provider opens the account releases land on
    fund_escrow                 customer's agreed amount authorized + held
        -> release_milestone_payment   (per APPROVED milestone)
        -> release_final_payment       (remaining balance, completes project)
    request_refund              held or released funds returned to the payer

Ledger aggregation (per project):

    released     = sum(milestone/final payments, refunded or not)
    reversed     = sum(milestone/final payments later refunded)
    held         = sum(HELD_IN_ESCROW deposits)
    outstanding  = max(held - released, 0)
    remaining    = agreed_amount - released
    invariant    released + outstanding <= agreed_amount

A refunded release leaves escrow for good: the transfer is reversed and
the same amount goes back to the customer, so it still counts as released.

Each money-moving operation locks its anchor row (project or milestone),
re-validates, calls the gateway, and writes the ledger row in one
transaction. A concurrent duplicate waits on the lock and then fails
validation, so the gateway is never asked to move the same money twice.
If the gateway fails nothing is written.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bidflow.core.database import LedgerStore
from bidflow.core.result import DomainError, Page, Result
from bidflow.events import workflowEvents
from bidflow.integrations.gateway import GatewayError, PaymentGateway
from bidflow.models.base import utcnow
from bidflow.models.payment import Payment, PaymentStatus, PaymentType
from bidflow.models.profile import CustomerProfile, ProviderProfile
from bidflow.models.project import Milestone, MilestoneStatus, Project, ProjectStatus
from bidflow.services.auth_service import Identity, Role
from bidflow.services.jobStateManager import ActorType
from bidflow.services.notificationService import NotificationService
from bidflow.services.profileStats import (
    get_or_create_profile,
    increment_customer_stats,
    increment_provider_stats,
)
from bidflow.services.projectEngine import (
    can_view,
    load_project,
    sync_job_status,
    transition_project,
)
from bidflow.services.projectStateManager import is_project_closed

logger = logging.getLogger(__name__)

_RELEASE_TYPES = (PaymentType.MILESTONE, PaymentType.FINAL)
_REFUNDABLE_STATUSES = frozenset({PaymentStatus.HELD_IN_ESCROW, PaymentStatus.RELEASED})


# ---------------------------------------------------------------------------
# Ledger views
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EscrowSummary:
    """Money position of a single project, all amounts in cents."""
    agreed_amount_cents: int
    released_cents: int
    held_cents: int
    refunded_cents: int
    reversed_cents: int = 0

    @property
    def outstanding_cents(self) -> int:
        """Money still held for the provider and not yet released."""
        return max(self.held_cents - self.released_cents, 0)

    @property
    def remaining_cents(self) -> int:
        """Contract balance not yet released."""
        return self.agreed_amount_cents - self.released_cents

    @property
    def paid_out_cents(self) -> int:
        """Released to the provider and not reversed."""
        return self.released_cents - self.reversed_cents

    @property
    def committed_cents(self) -> int:
        return self.released_cents + self.outstanding_cents


async def escrow_summary(session: AsyncSession, project: Project) -> EscrowSummary:
    rows = (await session.execute(
        select(Payment.type, Payment.status, func.coalesce(func.sum(Payment.amount_cents), 0))
        .where(Payment.project_id == project.id)
        .group_by(Payment.type, Payment.status)
    )).all()

    released = reversed_ = held = refunded = 0
    for payment_type, status, total in rows:
        total = int(total)
        if payment_type in _RELEASE_TYPES:
            released += total
            if status == PaymentStatus.REFUNDED:
                reversed_ += total
        elif payment_type == PaymentType.DEPOSIT and status == PaymentStatus.HELD_IN_ESCROW:
            held += total
        elif payment_type == PaymentType.REFUND:
            refunded += total

    return EscrowSummary(
        agreed_amount_cents=project.agreed_amount_cents,
        released_cents=released,
        held_cents=held,
        refunded_cents=refunded,
        reversed_cents=reversed_,
    )


@dataclass(frozen=True)
class CustomerPaymentSetup:
    customer_reference: str
    setup_reference: str
    client_secret: str


@dataclass(frozen=True)
class PayoutOnboarding:
    account_reference: str
    onboarding_url: str
    created: bool


async def active_deposit(session: AsyncSession, project_id: uuid.UUID) -> Payment | None:
    return (await session.execute(
        select(Payment).where(
            Payment.project_id == project_id,
            Payment.type == PaymentType.DEPOSIT,
            Payment.status.in_([PaymentStatus.AUTHORIZED, PaymentStatus.HELD_IN_ESCROW]),
        )
    )).scalar_one_or_none()


def _gateway_failure(exc: GatewayError) -> DomainError:
    return DomainError.gateway(
        exc.message,
        code=exc.code,
        decline_code=exc.decline_code,
    )


def _transfer_group(project: Project) -> str:
    return f"project_{project.id}"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class EscrowLedger:
    """Escrow funding, releases and refunds against a ``LedgerStore``."""

    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentGateway,
        notifications: NotificationService,
        *,
        max_page_size: int = 100,
        payout_country: str = "US",
        payout_refresh_url: str = "",
        payout_return_url: str = "",
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._notifications = notifications
        self._max_page_size = max_page_size
        self._payout_country = payout_country
        self._payout_refresh_url = payout_refresh_url
        self._payout_return_url = payout_return_url

    # -----------------------------------------------------------------------
    # Processor accounts
    # -----------------------------------------------------------------------

    async def create_setup_intent(self, identity: Identity) -> Result[CustomerPaymentSetup]:
        """Let a customer save a card for escrow funding.

        The processor customer is created on first use and kept on the
        customer's profile, so every setup and hold shares one customer.
        """
        if identity.role != Role.CUSTOMER:
            return Result.failure(DomainError.forbidden("Only customers can save a payment method"))

        async with self._store.transaction() as tx:
            profile = await get_or_create_profile(tx.session, CustomerProfile, identity.user_id)
            try:
                if not profile.stripe_customer_id:
                    profile.stripe_customer_id = await self._gateway.create_customer(identity.user_id)
                setup = await self._gateway.create_setup_intent(profile.stripe_customer_id)
            except GatewayError as exc:
                logger.warning("Payment method setup failed: user=%s, reason=%s", identity.user_id, exc.message)
                return tx.abort(_gateway_failure(exc))
            customer_reference = profile.stripe_customer_id

        logger.info("Payment method setup started: user=%s, setup=%s", identity.user_id, setup.reference)
        return Result.success(CustomerPaymentSetup(
            customer_reference=customer_reference,
            setup_reference=setup.reference,
            client_secret=setup.client_secret,
        ))

    async def setup_payout_account(
        self,
        identity: Identity,
        *,
        country: str | None = None,
    ) -> Result[PayoutOnboarding]:
        """Open (once) the provider's payout account and return an onboarding link.

        Calling again reuses the stored account and only issues a fresh link.
        """
        if identity.role != Role.PROVIDER:
            return Result.failure(DomainError.forbidden("Only providers can set up payouts"))
        country = (country or self._payout_country).strip().upper()
        if len(country) != 2 or not country.isalpha():
            return Result.failure(DomainError.validation("Country must be a two-letter ISO code"))

        created = False
        async with self._store.transaction() as tx:
            profile = await get_or_create_profile(tx.session, ProviderProfile, identity.user_id)
            await tx.session.refresh(profile, with_for_update=True)
            try:
                if not profile.stripe_account_id:
                    profile.stripe_account_id = await self._gateway.create_payout_account(
                        identity.user_id, country=country
                    )
                    created = True
                url = await self._gateway.create_onboarding_link(
                    profile.stripe_account_id,
                    refresh_url=self._payout_refresh_url,
                    return_url=self._payout_return_url,
                )
            except GatewayError as exc:
                logger.warning("Payout account setup failed: user=%s, reason=%s", identity.user_id, exc.message)
                return tx.abort(_gateway_failure(exc))
            account_reference = profile.stripe_account_id

        if created:
            logger.info("Payout account opened: user=%s, account=%s", identity.user_id, account_reference)
        return Result.success(PayoutOnboarding(
            account_reference=account_reference,
            onboarding_url=url,
            created=created,
        ))

    # -----------------------------------------------------------------------
    # Funding
    # -----------------------------------------------------------------------

    async def fund_escrow(
        self,
        identity: Identity,
        project_id: uuid.UUID,
        payment_method_reference: str,
    ) -> Result[Payment]:
        """Authorize and hold the full agreed amount for a project."""
        if not payment_method_reference or not payment_method_reference.strip():
            return Result.failure(DomainError.validation("A payment method is required"))

        hold_reference: str | None = None
        job_change: tuple[str, str] | None = None
        started = False
        try:
            async with self._store.transaction() as tx:
                project = await load_project(tx.session, project_id, for_update=True)
                if project is None:
                    return tx.abort(DomainError.not_found("Project not found"))
                if project.customer_id != identity.user_id:
                    return tx.abort(DomainError.forbidden("Only the project's customer can fund escrow"))
                if is_project_closed(project.status):
                    return tx.abort(DomainError.conflict(
                        f"Cannot fund escrow for a {project.status.value.lower()} project"
                    ))
                if await active_deposit(tx.session, project.id) is not None:
                    return tx.abort(DomainError.conflict("Escrow is already funded for this project"))
                summary = await escrow_summary(tx.session, project)
                if summary.released_cents > 0:
                    return tx.abort(DomainError.conflict(
                        "Escrow cannot be re-funded after payments were released"
                    ))

                profile = await get_or_create_profile(tx.session, CustomerProfile, identity.user_id)
                try:
                    if not profile.stripe_customer_id:
                        profile.stripe_customer_id = await self._gateway.create_customer(identity.user_id)
                    hold = await self._gateway.authorize_hold(
                        amount_cents=project.agreed_amount_cents,
                        currency=project.currency,
                        customer_reference=profile.stripe_customer_id,
                        payment_method_reference=payment_method_reference.strip(),
                        transfer_group=_transfer_group(project),
                        metadata={"project_id": str(project.id), "type": PaymentType.DEPOSIT.value},
                    )
                except GatewayError as exc:
                    logger.warning("Escrow funding declined: project=%s, reason=%s", project.id, exc.message)
                    return tx.abort(_gateway_failure(exc))
                hold_reference = hold.reference

                payment = Payment(
                    project_id=project.id,
                    user_id=identity.user_id,
                    amount_cents=project.agreed_amount_cents,
                    currency=project.currency,
                    type=PaymentType.DEPOSIT,
                    status=PaymentStatus.HELD_IN_ESCROW,
                    external_reference=hold.reference,
                    description="Escrow deposit",
                )
                tx.session.add(payment)

                if project.status == ProjectStatus.PENDING_START:
                    transition_project(project, ProjectStatus.IN_PROGRESS, ActorType.SYSTEM)
                    started = True
                    job_change = await sync_job_status(tx, project)
                await tx.session.flush()
        except IntegrityError:
            await self._void_after_failure(hold_reference)
            logger.warning("Concurrent escrow funding rejected: project=%s", project_id)
            return Result.failure(DomainError.conflict("Escrow is already funded for this project"))
        except SQLAlchemyError:
            await self._void_after_failure(hold_reference)
            raise

        logger.info(
            "Escrow funded: project=%s, payment=%s, amount=%d",
            project_id,
            payment.id,
            payment.amount_cents,
        )
        workflowEvents.emit_escrow_funded(payment.id, project_id, payment.amount_cents, identity.user_id)
        if started:
            workflowEvents.emit_project_status_changed(
                project_id, ProjectStatus.PENDING_START.value, ProjectStatus.IN_PROGRESS.value
            )
        if job_change:
            workflowEvents.emit_job_status_changed(project.job_id, *job_change)
        return Result.success(payment)

    # -----------------------------------------------------------------------
    # Releases
    # -----------------------------------------------------------------------

    async def release_milestone_payment(
        self,
        identity: Identity,
        milestone_id: uuid.UUID,
    ) -> Result[Payment]:
        """Pay an APPROVED milestone out of escrow, exactly once."""
        transfer_reference: str | None = None
        try:
            async with self._store.transaction() as tx:
                milestone = await tx.session.get(Milestone, milestone_id, with_for_update=True)
                if milestone is None:
                    return tx.abort(DomainError.not_found("Milestone not found"))
                project = await load_project(tx.session, milestone.project_id, for_update=True)
                if project is None:
                    return tx.abort(DomainError.not_found("Project not found"))
                if project.customer_id != identity.user_id:
                    return tx.abort(DomainError.forbidden("Only the project's customer can release payments"))
                if milestone.payment_id is not None:
                    return tx.abort(DomainError.conflict("Milestone has already been paid"))
                if milestone.status != MilestoneStatus.APPROVED:
                    return tx.abort(DomainError.conflict(
                        f"Milestone must be approved before payment (status: {milestone.status.value})"
                    ))
                if project.status == ProjectStatus.CANCELLED:
                    return tx.abort(DomainError.conflict("The project is cancelled"))

                deposit = await active_deposit(tx.session, project.id)
                if deposit is None or deposit.status != PaymentStatus.HELD_IN_ESCROW:
                    return tx.abort(DomainError.conflict("No funds are held in escrow for this project"))
                summary = await escrow_summary(tx.session, project)
                if summary.released_cents + milestone.amount_cents > project.agreed_amount_cents:
                    return tx.abort(DomainError.conflict(
                        "Release would exceed the agreed project amount",
                        released_cents=summary.released_cents,
                        agreed_amount_cents=project.agreed_amount_cents,
                    ))

                release = await self._release(tx.session, project, deposit, milestone.amount_cents, PaymentType.MILESTONE)
                if isinstance(release, DomainError):
                    return tx.abort(release)
                transfer_reference = release.external_reference

                linked = await tx.session.execute(
                    update(Milestone)
                    .where(Milestone.id == milestone.id, Milestone.payment_id.is_(None))
                    .values(payment_id=release.id)
                    .execution_options(synchronize_session=False)
                )
                if linked.rowcount != 1:
                    return tx.abort(DomainError.conflict("Milestone has already been paid"))
                await tx.session.refresh(milestone)
                self._notifications.payment_received(tx, project, release.amount_cents, final=False)
        except IntegrityError:
            self._log_unrecorded_release(transfer_reference, milestone_id)
            return Result.failure(DomainError.conflict("Milestone has already been paid"))

        logger.info(
            "Milestone payment released: milestone=%s, payment=%s, amount=%d",
            milestone_id,
            release.id,
            release.amount_cents,
        )
        workflowEvents.emit_payment_released(
            release.id, release.project_id, release.type.value, release.amount_cents, identity.user_id
        )
        return Result.success(release)

    async def release_final_payment(
        self,
        identity: Identity,
        project_id: uuid.UUID,
    ) -> Result[Payment]:
        """Release the remaining balance and complete the project.

        The FINAL payment, project completion, job completion and party
        statistics commit together or not at all.
        """
        transfer_reference: str | None = None
        job_change: tuple[str, str] | None = None
        try:
            async with self._store.transaction() as tx:
                project = await load_project(tx.session, project_id, for_update=True)
                if project is None:
                    return tx.abort(DomainError.not_found("Project not found"))
                if project.customer_id != identity.user_id:
                    return tx.abort(DomainError.forbidden("Only the project's customer can release payments"))
                if project.status != ProjectStatus.PENDING_APPROVAL:
                    return tx.abort(DomainError.conflict(
                        f"Project must be pending approval for the final payment "
                        f"(status: {project.status.value})"
                    ))

                summary = await escrow_summary(tx.session, project)
                remaining = summary.remaining_cents
                if remaining <= 0:
                    return tx.abort(DomainError.conflict("Nothing remains to be released"))
                deposit = await active_deposit(tx.session, project.id)
                if deposit is None or deposit.status != PaymentStatus.HELD_IN_ESCROW:
                    return tx.abort(DomainError.conflict("No funds are held in escrow for this project"))

                release = await self._release(tx.session, project, deposit, remaining, PaymentType.FINAL)
                if isinstance(release, DomainError):
                    return tx.abort(release)
                transfer_reference = release.external_reference

                transition_project(project, ProjectStatus.COMPLETED, ActorType.SYSTEM)
                job_change = await sync_job_status(tx, project)

                total_paid = summary.paid_out_cents + remaining
                await increment_provider_stats(
                    tx.session,
                    project.provider_id,
                    projects_completed=1,
                    earned_cents=total_paid,
                )
                await increment_customer_stats(
                    tx.session,
                    project.customer_id,
                    projects_completed=1,
                    spent_cents=total_paid,
                )
                self._notifications.payment_received(tx, project, remaining, final=True)
        except IntegrityError:
            self._log_unrecorded_release(transfer_reference, project_id)
            return Result.failure(DomainError.conflict("The final payment has already been released"))

        logger.info(
            "Final payment released: project=%s, payment=%s, amount=%d",
            project_id,
            release.id,
            release.amount_cents,
        )
        workflowEvents.emit_payment_released(
            release.id, project_id, release.type.value, release.amount_cents, identity.user_id
        )
        workflowEvents.emit_project_status_changed(
            project_id, ProjectStatus.PENDING_APPROVAL.value, ProjectStatus.COMPLETED.value, identity.user_id
        )
        if job_change:
            workflowEvents.emit_job_status_changed(project.job_id, *job_change)
        return Result.success(release)

    # -----------------------------------------------------------------------
    # Refunds
    # -----------------------------------------------------------------------

    async def request_refund(
        self,
        identity: Identity,
        payment_id: uuid.UUID,
        reason: str | None = None,
    ) -> Result[Payment]:
        """Return a held deposit's unreleased balance, or a released payment.

        The original row is marked REFUNDED and a REFUND row is appended.
        Project and milestone statuses are left as they are.
        """
        reason = (reason or "").strip() or "requested_by_customer"

        async with self._store.transaction() as tx:
            payment = await tx.session.get(Payment, payment_id, with_for_update=True)
            if payment is None:
                return tx.abort(DomainError.not_found("Payment not found"))
            if payment.user_id != identity.user_id:
                return tx.abort(DomainError.forbidden("Only the payer can request a refund"))
            if payment.type == PaymentType.REFUND or payment.status not in _REFUNDABLE_STATUSES:
                return tx.abort(DomainError.conflict(
                    f"Payment cannot be refunded (status: {payment.status.value})"
                ))
            project = await load_project(tx.session, payment.project_id, for_update=True)
            if project is None:
                return tx.abort(DomainError.not_found("Project not found"))

            charge_reference: str | None = None
            if payment.type == PaymentType.DEPOSIT:
                summary = await escrow_summary(tx.session, project)
                amount = summary.outstanding_cents
                if amount <= 0:
                    return tx.abort(DomainError.conflict("Nothing is left in escrow to refund"))
            else:
                amount = payment.amount_cents
                deposit = (await tx.session.execute(
                    select(Payment)
                    .where(
                        Payment.project_id == project.id,
                        Payment.type == PaymentType.DEPOSIT,
                        Payment.external_reference.is_not(None),
                    )
                    .order_by(Payment.created_at.desc())
                    .limit(1)
                )).scalar_one_or_none()
                charge_reference = deposit.external_reference if deposit else None

            if not payment.external_reference:
                return tx.abort(DomainError.conflict("Payment has no gateway reference to refund"))
            try:
                receipt = await self._gateway.refund(
                    reference=payment.external_reference,
                    amount_cents=amount,
                    reason=reason,
                    charge_reference=charge_reference,
                )
            except GatewayError as exc:
                logger.warning("Refund failed: payment=%s, reason=%s", payment.id, exc.message)
                return tx.abort(_gateway_failure(exc))

            now = utcnow()
            payment.status = PaymentStatus.REFUNDED
            payment.refunded_at = now
            payment.refund_reason = reason

            refund = Payment(
                project_id=payment.project_id,
                user_id=payment.user_id,
                amount_cents=amount,
                currency=payment.currency,
                type=PaymentType.REFUND,
                status=PaymentStatus.REFUNDED,
                external_reference=receipt.reference,
                description=f"Refund of {payment.type.value.lower()} payment",
                refunded_at=now,
                refund_reason=reason,
                refund_of_id=payment.id,
            )
            tx.session.add(refund)
            await tx.session.flush()

        logger.info(
            "Payment refunded: payment=%s, refund=%s, amount=%d",
            payment.id,
            refund.id,
            amount,
        )
        workflowEvents.emit_payment_refunded(payment.id, refund.id, amount, identity.user_id)
        return Result.success(refund)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_project_payments(
        self,
        identity: Identity,
        project_id: uuid.UUID,
    ) -> Result[tuple[list[Payment], EscrowSummary]]:
        async with self._store.session() as session:
            project = await session.get(Project, project_id)
            if project is None:
                return Result.failure(DomainError.not_found("Project not found"))
            if not can_view(identity, project):
                return Result.failure(DomainError.forbidden("You do not have access to this project"))
            payments = (await session.execute(
                select(Payment)
                .where(Payment.project_id == project_id)
                .order_by(Payment.created_at.asc())
            )).scalars().all()
            summary = await escrow_summary(session, project)
        return Result.success((list(payments), summary))

    async def payment_history(
        self,
        identity: Identity,
        *,
        status: PaymentStatus | None = None,
        payment_type: PaymentType | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Result[Page[Payment]]:
        page = max(page, 1)
        page_size = min(max(page_size, 1), self._max_page_size)
        conditions = [Payment.user_id == identity.user_id]
        if status is not None:
            conditions.append(Payment.status == status)
        if payment_type is not None:
            conditions.append(Payment.type == payment_type)

        async with self._store.session() as session:
            total = (await session.execute(
                select(func.count()).select_from(Payment).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(
                select(Payment)
                .where(*conditions)
                .order_by(Payment.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )).scalars().all()
        return Result.success(Page(items=list(rows), total=total, page=page, page_size=page_size))

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _release(
        self,
        session: AsyncSession,
        project: Project,
        deposit: Payment,
        amount_cents: int,
        payment_type: PaymentType,
    ) -> Payment | DomainError:
        provider = (await session.execute(
            select(ProviderProfile).where(ProviderProfile.user_id == project.provider_id)
        )).scalar_one_or_none()
        try:
            transfer = await self._gateway.release_funds(
                escrow_reference=deposit.external_reference or "",
                amount_cents=amount_cents,
                currency=project.currency,
                destination_account=provider.stripe_account_id if provider else None,
                transfer_group=_transfer_group(project),
                metadata={"project_id": str(project.id), "type": payment_type.value},
            )
        except GatewayError as exc:
            logger.warning(
                "Release failed: project=%s, type=%s, reason=%s",
                project.id,
                payment_type.value,
                exc.message,
            )
            return _gateway_failure(exc)

        payment = Payment(
            project_id=project.id,
            user_id=project.customer_id,
            amount_cents=amount_cents,
            currency=project.currency,
            type=payment_type,
            status=PaymentStatus.RELEASED,
            external_reference=transfer.reference,
            description=f"{payment_type.value.capitalize()} payment release",
            released_at=utcnow(),
        )
        session.add(payment)
        await session.flush()
        return payment

    async def _void_after_failure(self, hold_reference: str | None) -> None:
        if hold_reference is None:
            return
        try:
            await self._gateway.void_hold(hold_reference)
        except GatewayError:
            logger.error("Escrow hold %s could not be voided; reconcile manually", hold_reference)

    @staticmethod
    def _log_unrecorded_release(transfer_reference: str | None, subject_id: uuid.UUID) -> None:
        if transfer_reference is not None:
            logger.error(
                "Transfer %s for %s succeeded but was not recorded; reconcile manually",
                transfer_reference,
                subject_id,
            )
