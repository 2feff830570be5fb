"""Human approval of proposed gifts and placement of the resulting order."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.domain.calendar import PipelineTiming
from autogift_api.models.execution import (
    APPROVABLE_EXECUTION_STATUSES,
    AddressCollectionStatusEnum,
    ExecutionStatusEnum,
    GiftExecution,
)
from autogift_api.models.gifting_rule import GiftingRule
from autogift_api.models.order import Order, OrderStatusEnum, PaymentStatusEnum
from autogift_api.models.payment_attempt import PaymentAttempt, PaymentAttemptStatusEnum
from autogift_api.models.user import User
from autogift_api.schemas.gifts import GiftProduct, dump_products, load_products, products_total
from autogift_api.schemas.pipeline_events import ApprovalDecidedPayload, PaymentAttemptedPayload
from autogift_api.services.checkout import generate_order_number
from autogift_api.services.event_log import PipelineEventLog
from autogift_api.services.notifications import NotificationService
from autogift_api.services.payments import PaymentAuthorization, PaymentGateway, PaymentGatewayError

from .addresses import issue_address_request, recipient_contact, resolve_shipping_address
from .errors import (
    ApprovalError,
    ApprovalStateError,
    ExecutionNotFoundError,
    InvalidSelectionError,
    OrderLinkageError,
    PaymentMethodMissingError,
)
from .executions import transition_execution

PLACEMENT_STATUSES = (
    ExecutionStatusEnum.APPROVED,
    ExecutionStatusEnum.PROCESSING,
)


@dataclass(slots=True)
class ApprovalResult:
    execution_id: UUID
    status: ExecutionStatusEnum
    message: str
    order_id: UUID | None = None
    next_retry_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "executionId": str(self.execution_id),
            "status": self.status.value,
            "message": self.message,
            "orderId": str(self.order_id) if self.order_id else None,
            "nextRetryAt": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


def narrow_selection(proposal: Sequence[GiftProduct], selected_ids: Sequence[str] | None) -> list[GiftProduct]:
    """Keep the proposed products named in ``selected_ids`` (all of them when ``None``)."""

    if selected_ids is None:
        return list(proposal)
    by_id = {product.product_id: product for product in proposal}
    unknown = [product_id for product_id in selected_ids if product_id not in by_id]
    if unknown:
        raise InvalidSelectionError(f"Products not in proposal: {', '.join(unknown)}")
    selection = [by_id[product_id] for product_id in dict.fromkeys(selected_ids)]
    if not selection:
        raise InvalidSelectionError("At least one product must be selected")
    return selection


class ApprovalService:
    """Applies approve/reject decisions to pending gift executions.

    Approval either parks the execution until the recipient shares an address,
    or authorizes the gift total and creates the order. Card declines become a
    scheduled retry rather than a hard failure.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        gateway: PaymentGateway,
        notifications: NotificationService,
        timing: PipelineTiming,
        event_log: PipelineEventLog | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._notifications = notifications
        self._timing = timing
        self._event_log = event_log or PipelineEventLog(session)

    async def decide(
        self,
        execution_id: UUID,
        *,
        approve: bool,
        selected_product_ids: Sequence[str] | None = None,
        reason: str | None = None,
        decided_by: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalResult:
        if approve:
            return await self.approve(
                execution_id,
                selected_product_ids=selected_product_ids,
                decided_by=decided_by,
                now=now,
            )
        return await self.reject(execution_id, reason=reason, decided_by=decided_by, now=now)

    async def reject(
        self,
        execution_id: UUID,
        *,
        reason: str | None = None,
        decided_by: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalResult:
        moment = now or datetime.now(timezone.utc)
        execution, rule = await self._load_pending(execution_id)

        moved = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.REJECTED,
            expected=APPROVABLE_EXECUTION_STATUSES,
            rejection_reason=reason,
            decided_at=moment,
            decided_by=decided_by,
        )
        if not moved:
            raise ApprovalStateError(execution_id, "already decided")

        notified = await self._notifications.send_gift_rejected(rule, execution, reason)
        await self._event_log.record(
            ApprovalDecidedPayload(decision="reject", outcome="rejected", reason=reason, notified=notified),
            rule_id=rule.id,
            execution_id=execution.id,
            user_id=rule.owner_id,
        )
        logger.info("Gift execution rejected", execution_id=str(execution.id), reason=reason)
        return ApprovalResult(execution_id=execution.id, status=ExecutionStatusEnum.REJECTED, message="Gift rejected")

    async def approve(
        self,
        execution_id: UUID,
        *,
        selected_product_ids: Sequence[str] | None = None,
        decided_by: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalResult:
        moment = now or datetime.now(timezone.utc)
        execution, rule = await self._load_pending(execution_id)
        rule_id = rule.id

        proposal = load_products(execution.suggested_products) or load_products(execution.selected_products)
        selection = narrow_selection(proposal, selected_product_ids)
        if not selection:
            raise InvalidSelectionError("Execution has no products to approve")
        total = products_total(selection)

        moved = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.APPROVED,
            expected=APPROVABLE_EXECUTION_STATUSES,
            selected_products=dump_products(selection),
            total_amount=total,
            decided_at=moment,
            decided_by=decided_by,
            error_message=None,
        )
        if not moved:
            raise ApprovalStateError(execution_id, "already decided")

        selected_ids = [product.product_id for product in selection]
        try:
            address = await resolve_shipping_address(self._session, rule, execution)
            if address is None:
                return await self._request_address(rule, execution, moment, selected_ids)
            return await self.place_order(
                execution,
                rule,
                shipping_address=address,
                now=moment,
                attempt_number=execution.payment_retry_count + 1,
                selected_ids=selected_ids,
            )
        except OrderLinkageError:
            raise
        except (PaymentMethodMissingError, PaymentGatewayError) as exc:
            return await self.fail_payment(execution_id, rule_id, str(exc), moment)
        except Exception as exc:
            await self._session.rollback()
            logger.exception("Order placement failed; returning execution to pending approval", execution_id=str(execution_id))
            return await self._reset_to_pending(execution_id, str(exc))

    async def place_order(
        self,
        execution: GiftExecution,
        rule: GiftingRule,
        *,
        shipping_address: dict[str, Any],
        now: datetime,
        attempt_number: int,
        selected_ids: Sequence[str] = (),
    ) -> ApprovalResult:
        """Authorize the execution total and create its order.

        Raises:
            PaymentMethodMissingError: The rule has no payment method.
            OrderLinkageError: The order was created but the execution could not point at it.
        """

        if not rule.payment_method_ref:
            raise PaymentMethodMissingError("No payment method is attached to this gifting rule")

        amount = Decimal(execution.total_amount or 0)
        owner = await self._session.get(User, rule.owner_id)
        try:
            authorization = await self._gateway.authorize(
                amount=amount,
                currency=self._timing.currency,
                payment_method_ref=rule.payment_method_ref,
                customer_ref=owner.stripe_customer_id if owner is not None else None,
                idempotency_key=f"approval-{execution.id}-{attempt_number}",
                metadata={"isAutoGift": "true", "ruleId": str(rule.id), "executionId": str(execution.id)},
            )
        except PaymentGatewayError as exc:
            return await self._schedule_retry(execution, rule, exc, amount=amount, now=now, attempt_number=attempt_number)

        await self._record_attempt(execution, rule, attempt_number, amount, authorization=authorization)
        order = await self._create_order(execution, rule, authorization, shipping_address, now)

        hold = order.hold_for_scheduled_delivery
        target = ExecutionStatusEnum.SCHEDULED if hold else ExecutionStatusEnum.COMPLETED
        try:
            linked = await transition_execution(
                self._session,
                execution,
                target,
                expected=(*PLACEMENT_STATUSES, ExecutionStatusEnum.PAYMENT_RETRY_PENDING),
                order_id=order.id,
                payment_retry_count=attempt_number - 1,
                next_payment_retry_at=None,
                last_payment_attempt_at=now,
                payment_error_message=None,
            )
        except Exception as exc:
            raise OrderLinkageError(
                f"Order {order.id} created but execution {execution.id} could not be updated: {exc}",
                order_id=order.id,
                execution_id=execution.id,
            ) from exc
        if not linked:
            raise OrderLinkageError(
                f"Order {order.id} created but execution {execution.id} changed status concurrently",
                order_id=order.id,
                execution_id=execution.id,
            )

        await self._notifications.send_order_scheduled(rule, order)
        await self._event_log.record(
            ApprovalDecidedPayload(decision="approve", outcome=target.value, selected_product_ids=list(selected_ids)),
            rule_id=rule.id,
            execution_id=execution.id,
            order_id=order.id,
            user_id=rule.owner_id,
        )
        logger.info(
            "Gift order placed",
            execution_id=str(execution.id),
            order_id=str(order.id),
            held=hold,
            hold_until=order.hold_until.isoformat() if order.hold_until else None,
        )
        return ApprovalResult(
            execution_id=execution.id,
            status=target,
            order_id=order.id,
            message="Order scheduled for delivery" if hold else "Order placed",
        )

    async def _load_pending(self, execution_id: UUID) -> tuple[GiftExecution, GiftingRule]:
        execution = await self._session.get(GiftExecution, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        if execution.status not in APPROVABLE_EXECUTION_STATUSES:
            raise ApprovalStateError(execution_id, execution.status.value)
        rule = await self._session.get(GiftingRule, execution.rule_id)
        if rule is None:
            raise ExecutionNotFoundError(f"Gifting rule {execution.rule_id} not found")
        return execution, rule

    async def _request_address(
        self,
        rule: GiftingRule,
        execution: GiftExecution,
        now: datetime,
        selected_ids: Sequence[str],
    ) -> ApprovalResult:
        await issue_address_request(
            self._session,
            rule,
            execution,
            notifications=self._notifications,
            event_log=self._event_log,
            timing=self._timing,
            now=now,
        )
        moved = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.AWAITING_ADDRESS,
            expected=PLACEMENT_STATUSES,
            address_collection_status=AddressCollectionStatusEnum.REQUESTED,
        )
        if not moved:
            raise ApprovalStateError(execution.id, "changed while requesting an address")
        await self._event_log.record(
            ApprovalDecidedPayload(
                decision="approve",
                outcome=ExecutionStatusEnum.AWAITING_ADDRESS.value,
                selected_product_ids=list(selected_ids),
            ),
            rule_id=rule.id,
            execution_id=execution.id,
            user_id=rule.owner_id,
        )
        return ApprovalResult(
            execution_id=execution.id,
            status=ExecutionStatusEnum.AWAITING_ADDRESS,
            message="Waiting for the recipient to share a shipping address",
        )

    async def _create_order(
        self,
        execution: GiftExecution,
        rule: GiftingRule,
        authorization: PaymentAuthorization,
        shipping_address: dict[str, Any],
        now: datetime,
    ) -> Order:
        delivery_date = execution.occurrence_date
        hold = self._timing.should_hold(delivery_date, now.date())
        recipient_email, recipient_name = await recipient_contact(self._session, rule)
        order_id = uuid4()
        products = load_products(execution.selected_products)
        order = Order(
            id=order_id,
            order_number=generate_order_number(order_id),
            user_id=rule.owner_id,
            gifting_rule_id=rule.id,
            execution_id=execution.id,
            recipient_id=rule.recipient_id,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            status=OrderStatusEnum.SCHEDULED,
            payment_status=PaymentStatusEnum.AUTHORIZED.value,
            total=Decimal(execution.total_amount or 0),
            currency=self._timing.currency,
            is_auto_gift=True,
            scheduled_delivery_date=delivery_date,
            hold_for_scheduled_delivery=hold,
            hold_until=self._timing.hold_until(delivery_date) if hold else None,
            payment_method_ref=rule.payment_method_ref,
            payment_authorization_ref=authorization.intent_id,
            shipping_address=shipping_address,
            line_items=[{**product.as_json(), "quantity": 1} for product in products],
            metadata_json={"isAutoGift": "true", "ruleId": str(rule.id), "executionId": str(execution.id)},
        )
        self._session.add(order)
        await self._session.commit()
        await self._session.refresh(order)
        return order

    async def _record_attempt(
        self,
        execution: GiftExecution,
        rule: GiftingRule,
        attempt_number: int,
        amount: Decimal,
        *,
        authorization: PaymentAuthorization | None = None,
        error: PaymentGatewayError | None = None,
        next_retry_at: datetime | None = None,
    ) -> None:
        self._session.add(
            PaymentAttempt(
                execution_id=execution.id,
                attempt_number=attempt_number,
                status=PaymentAttemptStatusEnum.FAILED if error else PaymentAttemptStatusEnum.SUCCEEDED,
                amount=amount,
                currency=self._timing.currency,
                payment_method_ref=rule.payment_method_ref,
                payment_intent_ref=authorization.intent_id if authorization else None,
                error_code=error.code if error else None,
                decline_code=error.decline_code if error else None,
                error_message=str(error) if error else None,
            )
        )
        await self._event_log.record(
            PaymentAttemptedPayload(
                attempt_number=attempt_number,
                succeeded=error is None,
                amount=amount,
                intent_id=authorization.intent_id if authorization else None,
                error_code=(error.decline_code or error.code) if error else None,
                error=str(error) if error else None,
                next_retry_at=next_retry_at,
            ),
            rule_id=rule.id,
            execution_id=execution.id,
            user_id=rule.owner_id,
        )

    async def _schedule_retry(
        self,
        execution: GiftExecution,
        rule: GiftingRule,
        error: PaymentGatewayError,
        *,
        amount: Decimal,
        now: datetime,
        attempt_number: int,
    ) -> ApprovalResult:
        delay = self._timing.payment_retry_delay(attempt_number)
        next_retry_at = now + delay if delay is not None else None
        await self._record_attempt(execution, rule, attempt_number, amount, error=error, next_retry_at=next_retry_at)

        if next_retry_at is None:
            logger.warning(
                "Payment retries exhausted",
                execution_id=str(execution.id),
                attempts=attempt_number,
                decline_code=error.decline_code,
            )
            return await self.fail_payment(execution.id, rule.id, str(error), now, attempts=attempt_number)

        moved = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.PAYMENT_RETRY_PENDING,
            expected=PLACEMENT_STATUSES,
            payment_retry_count=attempt_number,
            next_payment_retry_at=next_retry_at,
            last_payment_attempt_at=now,
            payment_error_message=str(error),
        )
        if not moved:
            raise ApprovalStateError(execution.id, "changed while scheduling a payment retry")

        attempts_remaining = self._timing.payment_retry_max_attempts - attempt_number + 1
        await self._notifications.send_payment_retrying(
            rule,
            execution,
            next_retry_at=next_retry_at,
            attempts_remaining=attempts_remaining,
        )
        logger.info(
            "Payment authorization declined; retry scheduled",
            execution_id=str(execution.id),
            attempt=attempt_number,
            next_retry_at=next_retry_at.isoformat(),
            decline_code=error.decline_code,
        )
        return ApprovalResult(
            execution_id=execution.id,
            status=ExecutionStatusEnum.PAYMENT_RETRY_PENDING,
            message="Payment declined; we will retry automatically",
            next_retry_at=next_retry_at,
        )

    async def fail_payment(
        self,
        execution_id: UUID,
        rule_id: UUID,
        reason: str,
        now: datetime,
        *,
        attempts: int | None = None,
    ) -> ApprovalResult:
        await self._session.rollback()
        execution = await self._session.get(GiftExecution, execution_id)
        rule = await self._session.get(GiftingRule, rule_id)
        values: dict[str, Any] = {"payment_error_message": reason, "error_message": reason, "last_payment_attempt_at": now}
        if attempts is not None:
            values["payment_retry_count"] = attempts
            values["next_payment_retry_at"] = None
        moved = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.FAILED,
            expected=(*PLACEMENT_STATUSES, ExecutionStatusEnum.PAYMENT_RETRY_PENDING),
            **values,
        )
        if not moved:
            raise ApprovalStateError(execution_id, "changed while recording a payment failure")
        await self._notifications.send_payment_failed(rule, execution, reason)
        logger.warning("Gift execution failed on payment", execution_id=str(execution_id), reason=reason)
        return ApprovalResult(
            execution_id=execution_id,
            status=ExecutionStatusEnum.FAILED,
            message="Payment failed; please update your payment method",
        )

    async def _reset_to_pending(self, execution_id: UUID, reason: str) -> ApprovalResult:
        execution = await self._session.get(GiftExecution, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.PENDING_APPROVAL,
            expected=PLACEMENT_STATUSES,
            error_message=reason,
        )
        return ApprovalResult(
            execution_id=execution_id,
            status=ExecutionStatusEnum(execution.status),
            message=f"Order placement failed: {reason}",
        )


__all__ = ["ApprovalError", "ApprovalResult", "ApprovalService", "narrow_selection"]
