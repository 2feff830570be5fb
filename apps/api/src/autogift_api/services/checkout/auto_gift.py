"""Checkout for orchestrator-committed gifts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Literal, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.domain.calendar import PipelineTiming
from autogift_api.models.gifting_rule import GiftingRule
from autogift_api.models.order import Order, OrderStatusEnum, PaymentStatusEnum
from autogift_api.models.user import User
from autogift_api.schemas.gifts import GiftProduct
from autogift_api.services.payments import PaymentGateway


def generate_order_number(order_id: UUID) -> str:
    return f"AG{order_id.hex[:10].upper()}"


def checkout_metadata(rule: GiftingRule, order_id: UUID, occurrence: date) -> dict[str, str]:
    return {
        "isAutoGift": "true",
        "ruleId": str(rule.id),
        "orderId": str(order_id),
        "occurrence": occurrence.isoformat(),
    }


@dataclass(slots=True)
class CheckoutResult:
    order: Order
    payment_mode: Literal["authorized", "setup"]
    metadata: dict[str, str]


class AutoGiftCheckoutService:
    """Creates the pending order for a rule occurrence.

    Inside the capture window the gift total is authorized straight away and
    the order starts ``scheduled``. Further out only a SetupIntent is created
    and the order waits in ``pending_payment`` for the processor to authorize it.
    """

    def __init__(self, session: AsyncSession, gateway: PaymentGateway, timing: PipelineTiming) -> None:
        self._session = session
        self._gateway = gateway
        self._timing = timing

    async def create_checkout(
        self,
        rule: GiftingRule,
        *,
        product: GiftProduct,
        shipping_address: Mapping[str, Any],
        delivery_date: date,
        today: date,
        recipient_email: str | None = None,
        recipient_name: str | None = None,
        execution_id: UUID | None = None,
    ) -> CheckoutResult:
        if not rule.payment_method_ref:
            raise ValueError("Rule has no payment method")

        order_id = uuid4()
        metadata = checkout_metadata(rule, order_id, delivery_date)
        owner = await self._session.get(User, rule.owner_id)
        customer_ref = owner.stripe_customer_id if owner is not None else None
        idempotency_key = f"autogift-{rule.id}-{delivery_date.isoformat()}"

        order = Order(
            id=order_id,
            order_number=generate_order_number(order_id),
            user_id=rule.owner_id,
            gifting_rule_id=rule.id,
            execution_id=execution_id,
            recipient_id=rule.recipient_id,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            total=product.price,
            currency=self._timing.currency,
            is_auto_gift=True,
            scheduled_delivery_date=delivery_date,
            hold_for_scheduled_delivery=True,
            hold_until=self._timing.hold_until(delivery_date),
            payment_method_ref=rule.payment_method_ref,
            shipping_address=dict(shipping_address),
            line_items=[{**product.as_json(), "quantity": 1}],
            metadata_json=metadata,
        )

        if self._timing.is_capture_ready(delivery_date, today):
            authorization = await self._gateway.authorize(
                amount=product.price,
                currency=self._timing.currency,
                payment_method_ref=rule.payment_method_ref,
                customer_ref=customer_ref,
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
            order.status = OrderStatusEnum.SCHEDULED
            order.payment_status = PaymentStatusEnum.AUTHORIZED.value
            order.payment_authorization_ref = authorization.intent_id
            payment_mode: Literal["authorized", "setup"] = "authorized"
        else:
            setup_intent_id = await self._gateway.create_setup_intent(
                payment_method_ref=rule.payment_method_ref,
                customer_ref=customer_ref,
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
            order.status = OrderStatusEnum.PENDING_PAYMENT
            order.payment_status = PaymentStatusEnum.PENDING.value
            order.setup_intent_ref = setup_intent_id
            payment_mode = "setup"

        self._session.add(order)
        await self._session.commit()
        await self._session.refresh(order)

        logger.info(
            "Auto-gift checkout created",
            order_id=str(order.id),
            rule_id=str(rule.id),
            payment_mode=payment_mode,
            delivery_date=delivery_date.isoformat(),
        )
        return CheckoutResult(order=order, payment_mode=payment_mode, metadata=metadata)


__all__ = ["AutoGiftCheckoutService", "CheckoutResult", "checkout_metadata", "generate_order_number"]
