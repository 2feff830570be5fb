"""Payment gateway integrations."""

from .stripe_service import (
    PaymentAuthorization,
    PaymentCapture,
    PaymentGateway,
    PaymentGatewayError,
    StripeService,
    to_minor_units,
)

__all__ = [
    "PaymentAuthorization",
    "PaymentCapture",
    "PaymentGateway",
    "PaymentGatewayError",
    "StripeService",
    "to_minor_units",
]
