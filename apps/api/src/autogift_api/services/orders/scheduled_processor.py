"""Drives held gift orders through authorize, capture and fulfillment submission."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.core.logging import pipeline_logger
from autogift_api.domain.calendar import PipelineTiming, resolve_today
from autogift_api.models.order import Order, OrderStatusEnum, PaymentStatusEnum
from autogift_api.models.user import User
from autogift_api.schemas.pipeline_events import OrderStageAdvancedPayload, ProcessingFailedPayload
from autogift_api.services.event_log import PipelineEventLog
from autogift_api.services.fulfillment import FulfillmentClient
from autogift_api.services.notifications import NotificationService
from autogift_api.services.payments import PaymentGateway
from autogift_api.services.run_summary import RunSummary

from .state_machine import OrderStateMachine, StaleOrderTransitionError

# Query bounds are one day looser than the exact readiness predicates.
_WINDOW_SLACK_DAYS = 1

STAGE_AUTHORIZE = "authorize_deferred"
STAGE_CAPTURE = "capture"
STAGE_SUBMIT = "submit"


class OrderStageError(RuntimeError):
    """A stage could not complete for one order."""


class CapturedOrderPersistenceError(RuntimeError):
    """Funds were captured but the order row could not record it.

    Propagates out of the run: the order must reach reconciliation as paid.
    """

    def __init__(self, message: str, *, order_id: object, intent_id: str) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.intent_id = intent_id


class ScheduledOrderProcessor:
    """Advances orders one stage at a time, based on days to delivery.

    Stage 0 authorizes setup-only orders once they enter the capture window.
    Stage 1 captures authorized orders inside the capture window.
    Stage 2 submits paid orders to fulfillment inside the shipping buffer.
    Orders created without a hold are ready for every stage immediately.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        gateway: PaymentGateway,
        fulfillment: FulfillmentClient,
        notifications: NotificationService,
        timing: PipelineTiming,
        event_log: PipelineEventLog | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._fulfillment = fulfillment
        self._notifications = notifications
        self._timing = timing
        self._state = OrderStateMachine(session)
        self._event_log = event_log or PipelineEventLog(session)

    async def run(self, *, simulated_date: date | None = None) -> RunSummary:
        today = resolve_today(simulated_date)
        simulated = simulated_date is not None
        summary = RunSummary(
            component="scheduled_order_processor",
            reference_date=today,
            simulated=simulated,
            config=self._timing.as_dict(),
        )
        log = pipeline_logger("scheduled_order_processor", reference_date=today, simulated=simulated)

        await self._run_stage(
            STAGE_AUTHORIZE,
            await self._deferred_orders(today),
            lambda order: self._timing.is_capture_ready(order.scheduled_delivery_date, today),
            self._authorize_deferred,
            success_bucket="authorized",
            failure_status=OrderStatusEnum.REQUIRES_ATTENTION,
            summary=summary,
            log=log,
        )
        await self._run_stage(
            STAGE_CAPTURE,
            await self._capturable_orders(today),
            lambda order: self._is_ready(order, self._timing.is_capture_ready, today),
            self._capture,
            success_bucket="captured",
            failure_status=OrderStatusEnum.FAILED,
            summary=summary,
            log=log,
        )
        await self._run_stage(
            STAGE_SUBMIT,
            await self._submittable_orders(today),
            lambda order: self._is_ready(order, self._timing.is_submission_ready, today),
            self._submit,
            success_bucket="submitted",
            failure_status=OrderStatusEnum.FAILED,
            summary=summary,
            log=log,
        )

        log.info("Scheduled order run finished", **summary.counts)
        return summary

    @staticmethod
    def _is_ready(order: Order, predicate: Callable[[date | None, date], bool], today: date) -> bool:
        if not order.hold_for_scheduled_delivery:
            return True
        return predicate(order.scheduled_delivery_date, today)

    async def _deferred_orders(self, today: date) -> list[Order]:
        bound = today + timedelta(days=self._timing.capture_lead_days + _WINDOW_SLACK_DAYS)
        stmt = (
            select(Order)
            .where(
                Order.status == OrderStatusEnum.PENDING_PAYMENT,
                Order.scheduled_delivery_date.is_not(None),
                Order.scheduled_delivery_date <= bound,
            )
            .order_by(Order.scheduled_delivery_date.asc())
        )
        return list((await self._session.execute(stmt)).scalars())

    async def _capturable_orders(self, today: date) -> list[Order]:
        bound = today + timedelta(days=self._timing.capture_lead_days + _WINDOW_SLACK_DAYS)
        stmt = (
            select(Order)
            .where(
                Order.status == OrderStatusEnum.SCHEDULED,
                Order.payment_status == PaymentStatusEnum.AUTHORIZED.value,
                or_(
                    Order.hold_for_scheduled_delivery.is_(False),
                    Order.scheduled_delivery_date <= bound,
                ),
            )
            .order_by(Order.scheduled_delivery_date.asc())
        )
        return list((await self._session.execute(stmt)).scalars())

    async def _submittable_orders(self, today: date) -> list[Order]:
        bound = today + timedelta(days=self._timing.shipping_buffer_days + _WINDOW_SLACK_DAYS)
        stmt = (
            select(Order)
            .where(
                Order.status == OrderStatusEnum.PAYMENT_CONFIRMED,
                or_(
                    Order.hold_for_scheduled_delivery.is_(False),
                    Order.scheduled_delivery_date <= bound,
                ),
            )
            .order_by(Order.scheduled_delivery_date.asc())
        )
        return list((await self._session.execute(stmt)).scalars())

    async def _run_stage(
        self,
        stage: str,
        orders: list[Order],
        ready: Callable[[Order], bool],
        action: Callable[[Order], Awaitable[OrderStageAdvancedPayload]],
        *,
        success_bucket: str,
        failure_status: OrderStatusEnum,
        summary: RunSummary,
        log: Any,
    ) -> None:
        # A rollback expires every loaded row, so each one is re-fetched by id.
        for order_id in [order.id for order in orders]:
            order = await self._session.get(Order, order_id)
            if order is None:
                continue
            owner_id, rule_id = order.user_id, order.gifting_rule_id
            if not ready(order):
                summary.record("notReady", id=order_id, stage=stage)
                continue
            try:
                advanced = await action(order)
            except CapturedOrderPersistenceError:
                raise
            except StaleOrderTransitionError:
                summary.record("skipped", id=order_id, stage=stage, reason="advanced_concurrently")
                continue
            except Exception as exc:
                await self._session.rollback()
                log.exception("Order stage failed", order_id=str(order_id), stage=stage)
                await self._handle_failure(order_id, rule_id, owner_id, stage, failure_status, str(exc))
                summary.fail(entity_id=order_id, stage=stage, error=str(exc))
                continue

            await self._event_log.record(
                advanced,
                rule_id=rule_id,
                execution_id=order.execution_id,
                order_id=order_id,
                user_id=owner_id,
            )
            summary.record(success_bucket, id=order_id, status=advanced.to_status)

    async def _authorize_deferred(self, order: Order) -> OrderStageAdvancedPayload:
        payment_method = order.payment_method_ref
        if order.setup_intent_ref:
            payment_method = await self._gateway.retrieve_setup_payment_method(order.setup_intent_ref) or payment_method
        if not payment_method:
            raise OrderStageError("No saved payment method on the setup record")

        owner = await self._session.get(User, order.user_id) if order.user_id else None
        authorization = await self._gateway.authorize(
            amount=order.total,
            currency=order.currency or self._timing.currency,
            payment_method_ref=payment_method,
            customer_ref=owner.stripe_customer_id if owner is not None else None,
            idempotency_key=f"authorize-{order.id}",
            metadata=dict(order.metadata_json or {}),
        )
        await self._state.transition(
            order,
            OrderStatusEnum.SCHEDULED,
            expected_payment_status=PaymentStatusEnum.PENDING.value,
            values={
                "payment_status": PaymentStatusEnum.AUTHORIZED.value,
                "payment_authorization_ref": authorization.intent_id,
                "payment_method_ref": payment_method,
            },
        )
        return OrderStageAdvancedPayload(
            stage=STAGE_AUTHORIZE,
            from_status=OrderStatusEnum.PENDING_PAYMENT.value,
            to_status=OrderStatusEnum.SCHEDULED.value,
            reference=authorization.intent_id,
        )

    async def _capture(self, order: Order) -> OrderStageAdvancedPayload:
        # Re-read so a run holding a stale snapshot never captures twice.
        await self._session.refresh(order)
        if order.status != OrderStatusEnum.SCHEDULED or order.payment_status != PaymentStatusEnum.AUTHORIZED.value:
            raise StaleOrderTransitionError(order.id, OrderStatusEnum.SCHEDULED)
        if not order.payment_authorization_ref:
            raise OrderStageError("Order has no payment authorization to capture")

        order_id = order.id
        capture = await self._gateway.capture(order.payment_authorization_ref, idempotency_key=f"capture-{order_id}")
        try:
            await self._state.transition(
                order,
                OrderStatusEnum.PAYMENT_CONFIRMED,
                expected_payment_status=PaymentStatusEnum.AUTHORIZED.value,
                values={
                    "payment_status": self._timing.captured_payment_status,
                    "captured_at": datetime.now(timezone.utc),
                },
            )
        except StaleOrderTransitionError:
            raise
        except Exception as exc:
            await self._session.rollback()
            logger.critical(
                "Captured order could not be marked paid",
                order_id=str(order_id),
                intent_id=capture.intent_id,
            )
            raise CapturedOrderPersistenceError(
                f"Order {order_id} was captured as {capture.intent_id} but not recorded: {exc}",
                order_id=order_id,
                intent_id=capture.intent_id,
            ) from exc
        return OrderStageAdvancedPayload(
            stage=STAGE_CAPTURE,
            from_status=OrderStatusEnum.SCHEDULED.value,
            to_status=OrderStatusEnum.PAYMENT_CONFIRMED.value,
            reference=capture.intent_id,
        )

    async def _submit(self, order: Order) -> OrderStageAdvancedPayload:
        await self._session.refresh(order)
        if order.status != OrderStatusEnum.PAYMENT_CONFIRMED:
            raise StaleOrderTransitionError(order.id, OrderStatusEnum.PAYMENT_CONFIRMED)
        if order.fulfillment_request_id:
            raise OrderStageError(f"Order already submitted as {order.fulfillment_request_id}")

        submission = await self._fulfillment.submit_order(
            order_id=str(order.id),
            line_items=order.line_items or [],
            total=order.total,
            shipping_address=order.shipping_address,
            gift_message=order.gift_message,
        )
        await self._state.transition(
            order,
            OrderStatusEnum.PROCESSING,
            values={
                "fulfillment_request_id": submission.request_id,
                "submitted_at": datetime.now(timezone.utc),
            },
        )
        return OrderStageAdvancedPayload(
            stage=STAGE_SUBMIT,
            from_status=OrderStatusEnum.PAYMENT_CONFIRMED.value,
            to_status=OrderStatusEnum.PROCESSING.value,
            reference=submission.request_id,
        )

    async def _handle_failure(
        self,
        order_id: UUID,
        rule_id: UUID | None,
        owner_id: UUID | None,
        stage: str,
        failure_status: OrderStatusEnum,
        reason: str,
    ) -> None:
        order = await self._session.get(Order, order_id)
        if order is None:
            return
        values: dict[str, Any] = {}
        if stage == STAGE_CAPTURE:
            values["payment_status"] = PaymentStatusEnum.FAILED.value
        if OrderStateMachine.can_transition(OrderStatusEnum(order.status), failure_status):
            try:
                await self._state.transition(
                    order,
                    failure_status,
                    note=f"[{stage}] {reason}",
                    values=values,
                )
            except StaleOrderTransitionError:
                logger.info("Order moved before failure could be recorded", order_id=str(order_id))
                return
        await self._event_log.record(
            ProcessingFailedPayload(stage=stage, error=reason),
            rule_id=rule_id,
            execution_id=order.execution_id,
            order_id=order_id,
            user_id=owner_id,
        )
        await self._notifications.send_order_attention(order, stage=stage, reason=reason)


__all__ = [
    "CapturedOrderPersistenceError",
    "OrderStageError",
    "STAGE_AUTHORIZE",
    "STAGE_CAPTURE",
    "STAGE_SUBMIT",
    "ScheduledOrderProcessor",
]
