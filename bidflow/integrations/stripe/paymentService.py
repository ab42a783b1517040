"""
Stripe Escrow Gateway
=====================

Stripe implementation of ``PaymentGateway``:

- Escrow holds are PaymentIntents created with ``capture_method=manual``,
  confirmed off-session against a saved payment method.
- Releases capture the hold (first release only) and transfer the released
  amount to the provider's Connect account under the project's transfer
  group.
- Refunds cancel an uncaptured hold, refund a captured PaymentIntent, or
  reverse a transfer and refund the customer's charge.
- Payment methods are saved through off-session SetupIntents; providers
  receive releases on Connect Express accounts onboarded via AccountLinks.

All monetary amounts are in cents (integers). Network retries are delegated
to the SDK (``stripe.max_network_retries``); a timeout after the last retry
surfaces as ``GatewayError`` like any other processor failure.
"""

from __future__ import annotations

import logging
import uuid

import stripe

from bidflow.core.config import Settings
from bidflow.integrations.gateway import (
    EscrowHold,
    FundsRelease,
    GatewayError,
    PaymentSetup,
    RefundReceipt,
)

logger = logging.getLogger(__name__)

PLATFORM_TAG = "bidflow"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _handle_stripe_error(exc: stripe.StripeError) -> GatewayError:
    """Convert a Stripe SDK exception into a GatewayError."""
    error_body = getattr(exc, "error", None)

    code = getattr(error_body, "code", None) if error_body else None
    error_type = getattr(error_body, "type", None) if error_body else None
    decline_code = getattr(error_body, "decline_code", None) if error_body else None
    message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__

    logger.error(
        "Stripe API error: %s (code=%s, type=%s, decline_code=%s)",
        message,
        code,
        error_type,
        decline_code,
    )

    return GatewayError(
        message=message,
        code=code,
        error_type=error_type,
        decline_code=decline_code,
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class StripeGateway:
    """Escrow operations against the Stripe API."""

    def __init__(self, settings: Settings) -> None:
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        stripe.max_network_retries = settings.stripe_max_network_retries

    async def create_customer(self, user_id: uuid.UUID) -> str:
        try:
            customer = stripe.Customer.create(
                metadata={
                    "bidflow_user_id": str(user_id),
                    "platform": PLATFORM_TAG,
                },
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info(
            "Stripe customer created: stripe_id=%s, user_id=%s",
            customer.id,
            user_id,
        )
        return customer.id

    async def create_setup_intent(self, customer_reference: str) -> PaymentSetup:
        """Start saving a card for later off-session escrow holds."""
        try:
            intent = stripe.SetupIntent.create(
                customer=customer_reference,
                payment_method_types=["card"],
                usage="off_session",
                metadata={"platform": PLATFORM_TAG},
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info("SetupIntent created: id=%s, customer=%s", intent.id, customer_reference)
        return PaymentSetup(reference=intent.id, client_secret=intent.client_secret)

    async def create_payout_account(self, user_id: uuid.UUID, *, country: str) -> str:
        """Create a Stripe Connect Express account for a provider.

        Stripe hosts identity verification and bank details; releases can
        only be transferred once onboarding completes.
        """
        try:
            account = stripe.Account.create(
                type="express",
                country=country.upper(),
                capabilities={
                    "transfers": {"requested": True},
                },
                business_type="individual",
                metadata={
                    "bidflow_user_id": str(user_id),
                    "platform": PLATFORM_TAG,
                },
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info(
            "Connected account created: account_id=%s, user_id=%s, country=%s",
            account.id,
            user_id,
            country,
        )
        return account.id

    async def create_onboarding_link(
        self,
        account_reference: str,
        *,
        refresh_url: str,
        return_url: str,
    ) -> str:
        try:
            link = stripe.AccountLink.create(
                account=account_reference,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info(
            "Account link created for account %s, expires at %s",
            account_reference,
            link.expires_at,
        )
        return link.url

    async def authorize_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_reference: str,
        payment_method_reference: str,
        transfer_group: str,
        metadata: dict[str, str],
    ) -> EscrowHold:
        """Authorize ``amount_cents`` on the saved method and hold it.

        Raises:
            GatewayError: If attachment or authorization fails, or the intent
                needs customer action (the hold is cancelled first).
            ValueError: If amount_cents is non-positive.
        """
        if amount_cents <= 0:
            raise ValueError(f"Hold amount must be positive, got {amount_cents}")

        try:
            stripe.PaymentMethod.attach(
                payment_method_reference,
                customer=customer_reference,
            )
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                customer=customer_reference,
                payment_method=payment_method_reference,
                capture_method="manual",
                confirm=True,
                off_session=True,
                transfer_group=transfer_group,
                metadata={**metadata, "platform": PLATFORM_TAG},
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        if intent.status != "requires_capture":
            logger.warning(
                "PaymentIntent %s not held (status=%s); cancelling",
                intent.id,
                intent.status,
            )
            await self.void_hold(intent.id)
            raise GatewayError(
                message=f"Payment could not be authorized (status: {intent.status})",
                code="authorization_incomplete",
            )

        logger.info(
            "Escrow hold authorized: intent=%s, amount=%d %s",
            intent.id,
            amount_cents,
            currency,
        )
        return EscrowHold(
            reference=intent.id,
            status=intent.status,
            amount_cents=amount_cents,
            currency=currency,
        )

    async def void_hold(self, reference: str) -> None:
        try:
            stripe.PaymentIntent.cancel(reference, cancellation_reason="abandoned")
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info("Escrow hold voided: intent=%s", reference)

    async def release_funds(
        self,
        *,
        escrow_reference: str,
        amount_cents: int,
        currency: str,
        destination_account: str | None,
        transfer_group: str,
        metadata: dict[str, str],
    ) -> FundsRelease:
        """Capture the escrow hold if needed and transfer to the provider.

        Raises:
            GatewayError: If the provider has no Connect account or any
                Stripe call fails.
            ValueError: If amount_cents is non-positive.
        """
        if amount_cents <= 0:
            raise ValueError(f"Release amount must be positive, got {amount_cents}")
        if not destination_account:
            raise GatewayError(
                message="Provider has no connected payout account",
                code="missing_destination",
            )

        try:
            intent = stripe.PaymentIntent.retrieve(escrow_reference)
            if intent.status == "requires_capture":
                intent = stripe.PaymentIntent.capture(escrow_reference)
                logger.info("Escrow hold captured: intent=%s", escrow_reference)

            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=currency.lower(),
                destination=destination_account,
                transfer_group=transfer_group,
                metadata={**metadata, "platform": PLATFORM_TAG},
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info(
            "Transfer created: id=%s, account=%s, amount=%d %s",
            transfer.id,
            destination_account,
            amount_cents,
            currency,
        )
        return FundsRelease(
            reference=transfer.id,
            amount_cents=amount_cents,
            currency=currency,
        )

    async def refund(
        self,
        *,
        reference: str,
        amount_cents: int,
        reason: str,
        charge_reference: str | None = None,
    ) -> RefundReceipt:
        """Return ``amount_cents`` to the customer.

        ``reference`` is either the escrow PaymentIntent (``pi_...``) or a
        release transfer (``tr_...``). Transfers are reversed first and the
        customer is then refunded from ``charge_reference``.
        """
        if amount_cents <= 0:
            raise ValueError(f"Refund amount must be positive, got {amount_cents}")

        metadata = {"reason": reason[:500], "platform": PLATFORM_TAG}

        try:
            if reference.startswith("tr_"):
                reversal = stripe.Transfer.create_reversal(
                    reference,
                    amount=amount_cents,
                    metadata=metadata,
                )
                logger.info(
                    "Transfer reversed: transfer=%s, reversal=%s, amount=%d",
                    reference,
                    reversal.id,
                    amount_cents,
                )
                if charge_reference is None:
                    return RefundReceipt(
                        reference=reversal.id,
                        status="reversed",
                        amount_cents=amount_cents,
                    )
                reference = charge_reference

            intent = stripe.PaymentIntent.retrieve(reference)
            if intent.status == "requires_capture":
                cancelled = stripe.PaymentIntent.cancel(
                    reference,
                    cancellation_reason="requested_by_customer",
                )
                logger.info("Uncaptured hold released: intent=%s", reference)
                return RefundReceipt(
                    reference=cancelled.id,
                    status=cancelled.status,
                    amount_cents=amount_cents,
                )

            refund = stripe.Refund.create(
                payment_intent=reference,
                amount=amount_cents,
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info(
            "Refund created: id=%s, payment_intent=%s, amount=%d, status=%s",
            refund.id,
            reference,
            amount_cents,
            refund.status,
        )
        return RefundReceipt(
            reference=refund.id,
            status=refund.status,
            amount_cents=amount_cents,
        )
