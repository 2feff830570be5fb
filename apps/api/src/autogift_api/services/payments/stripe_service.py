"""Stripe-backed payment gateway for authorize-then-capture gift orders."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional, Protocol

import stripe
from loguru import logger

from autogift_api.core.settings import Settings, get_settings


class PaymentGatewayError(RuntimeError):
    """Raised when the gateway rejects or cannot complete a payment call."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        decline_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.decline_code = decline_code


@dataclass(slots=True)
class PaymentAuthorization:
    intent_id: str
    status: str
    amount_cents: int
    currency: str


@dataclass(slots=True)
class PaymentCapture:
    intent_id: str
    status: str
    amount_received_cents: int


class PaymentGateway(Protocol):
    """Operations the pipeline needs from a payment processor."""

    async def authorize(
        self,
        *,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        customer_ref: str | None,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> PaymentAuthorization:
        ...

    async def capture(self, intent_id: str, *, idempotency_key: str) -> PaymentCapture:
        ...

    async def create_setup_intent(
        self,
        *,
        payment_method_ref: str,
        customer_ref: str | None,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        ...

    async def retrieve_setup_payment_method(self, setup_intent_id: str) -> str | None:
        ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal currency amount to integer cents."""

    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeService:
    """Payment gateway implemented with Stripe PaymentIntents and SetupIntents.

    Authorizations use ``capture_method="manual"`` so funds are only held until
    the scheduled processor captures them. Every mutating call carries an
    idempotency key derived from the order or execution id, which makes a
    repeated capture of the same order a no-op at Stripe.
    """

    def __init__(self, api_key: str, *, api_version: Optional[str] = None) -> None:
        self._api_key = api_key
        self._api_version = api_version

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "StripeService":
        resolved = settings or get_settings()
        return cls(resolved.stripe_secret_key, api_version=resolved.stripe_api_version)

    def _request_options(self, idempotency_key: str | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    async def authorize(
        self,
        *,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        customer_ref: str | None,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> PaymentAuthorization:
        """Place a manual-capture hold for ``amount`` on the saved payment method.

        Raises:
            PaymentGatewayError: If Stripe declines or errors, or the intent
                does not end up in ``requires_capture``.
        """

        amount_cents = to_minor_units(amount)
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "payment_method": payment_method_ref,
            "capture_method": "manual",
            "confirm": True,
            "off_session": True,
            "metadata": dict(metadata or {}),
        }
        if customer_ref:
            params["customer"] = customer_ref

        try:
            intent = stripe.PaymentIntent.create(**params, **self._request_options(idempotency_key))
        except stripe.StripeError as e:
            logger.error(
                "Failed to authorize payment",
                payment_method=payment_method_ref,
                amount_cents=amount_cents,
                error=str(e),
            )
            raise _wrap_stripe_error(e) from e

        if intent.status != "requires_capture":
            logger.warning(
                "Payment authorization left intent in unexpected status",
                intent_id=intent.id,
                status=intent.status,
            )
            raise PaymentGatewayError(
                f"Authorization returned status {intent.status}",
                code="unexpected_status",
            )

        logger.info("Authorized payment", intent_id=intent.id, amount_cents=amount_cents)
        return PaymentAuthorization(
            intent_id=intent.id,
            status=intent.status,
            amount_cents=amount_cents,
            currency=currency.lower(),
        )

    async def capture(self, intent_id: str, *, idempotency_key: str) -> PaymentCapture:
        """Capture a held authorization."""

        try:
            intent = stripe.PaymentIntent.capture(intent_id, **self._request_options(idempotency_key))
        except stripe.StripeError as e:
            logger.error("Failed to capture payment", intent_id=intent_id, error=str(e))
            raise _wrap_stripe_error(e) from e

        if intent.status != "succeeded":
            raise PaymentGatewayError(
                f"Capture returned status {intent.status}",
                code="unexpected_status",
            )

        logger.info("Captured payment", intent_id=intent_id)
        return PaymentCapture(
            intent_id=intent.id,
            status=intent.status,
            amount_received_cents=int(getattr(intent, "amount_received", 0) or 0),
        )

    async def create_setup_intent(
        self,
        *,
        payment_method_ref: str,
        customer_ref: str | None,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        """Save the payment method for off-session use without charging it."""

        params: dict[str, Any] = {
            "payment_method": payment_method_ref,
            "usage": "off_session",
            "confirm": True,
            "metadata": dict(metadata or {}),
        }
        if customer_ref:
            params["customer"] = customer_ref

        try:
            setup_intent = stripe.SetupIntent.create(**params, **self._request_options(idempotency_key))
        except stripe.StripeError as e:
            logger.error("Failed to create setup intent", payment_method=payment_method_ref, error=str(e))
            raise _wrap_stripe_error(e) from e

        logger.info("Created setup intent", setup_intent_id=setup_intent.id)
        return setup_intent.id

    async def retrieve_setup_payment_method(self, setup_intent_id: str) -> str | None:
        try:
            setup_intent = stripe.SetupIntent.retrieve(setup_intent_id, **self._request_options())
        except stripe.StripeError as e:
            logger.error("Failed to retrieve setup intent", setup_intent_id=setup_intent_id, error=str(e))
            raise _wrap_stripe_error(e) from e

        payment_method = getattr(setup_intent, "payment_method", None)
        if payment_method is None:
            return None
        if isinstance(payment_method, str):
            return payment_method
        return getattr(payment_method, "id", None)


def _wrap_stripe_error(error: Exception) -> PaymentGatewayError:
    message = getattr(error, "user_message", None) or str(error) or error.__class__.__name__
    return PaymentGatewayError(
        message,
        code=getattr(error, "code", None),
        decline_code=getattr(error, "decline_code", None),
    )


__all__ = [
    "PaymentAuthorization",
    "PaymentCapture",
    "PaymentGateway",
    "PaymentGatewayError",
    "StripeService",
    "to_minor_units",
]
