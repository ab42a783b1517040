"""
Stripe Integration Module
=========================

Usage::

    from bidflow.integrations.stripe import StripeGateway

    gateway = StripeGateway(settings)
"""

from .paymentService import StripeGateway

__all__ = [
    "StripeGateway",
]
