"""
Payment Gateway Capability
==========================

The escrow ledger depends only on this protocol. ``StripeGateway`` in
``bidflow.integrations.stripe`` is the production implementation; tests
substitute an in-memory double.

All monetary amounts are in cents (integers). Every method raises
``GatewayError`` when the processor declines, times out, or is unreachable;
callers must treat a raised error as "nothing happened at the processor".
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Protocol


class GatewayError(Exception):
    """Raised when a payment processor operation fails.

    Attributes:
        message: Processor-supplied, human-readable error description.
        code: Processor error code, if available.
        error_type: Processor error category, if available.
        decline_code: Card issuer decline code, if available.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        error_type: str | None = None,
        decline_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.error_type = error_type
        self.decline_code = decline_code

    def __repr__(self) -> str:
        return (
            f"GatewayError(message={self.message!r}, "
            f"code={self.code!r}, type={self.error_type!r})"
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EscrowHold:
    """Funds authorized on the customer's payment method and held."""
    reference: str
    status: str
    amount_cents: int
    currency: str


@dataclass(frozen=True)
class FundsRelease:
    """Held funds moved to the provider."""
    reference: str
    amount_cents: int
    currency: str


@dataclass(frozen=True)
class RefundReceipt:
    reference: str
    status: str
    amount_cents: int


@dataclass(frozen=True)
class PaymentSetup:
    """Client-side handle for saving a payment method to the customer."""
    reference: str
    client_secret: str


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------

class PaymentGateway(Protocol):
    async def create_customer(self, user_id: uuid.UUID) -> str:
        """Register the payer with the processor and return its handle."""
        ...

    async def create_setup_intent(self, customer_reference: str) -> PaymentSetup:
        ...

    async def create_payout_account(self, user_id: uuid.UUID, *, country: str) -> str:
        """Open a payout account for a provider and return its handle."""
        ...

    async def create_onboarding_link(
        self,
        account_reference: str,
        *,
        refresh_url: str,
        return_url: str,
    ) -> str:
        """Return a short-lived URL where the provider finishes onboarding."""
        ...

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
        ...

    async def void_hold(self, reference: str) -> None:
        ...

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
        ...

    async def refund(
        self,
        *,
        reference: str,
        amount_cents: int,
        reason: str,
        charge_reference: str | None = None,
    ) -> RefundReceipt:
        ...
