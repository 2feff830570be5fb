"""Daily scan of gifting rules: reminders at the notification lead, checkout at the commitment lead."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.core.logging import pipeline_logger
from autogift_api.domain.calendar import (
    PipelineTiming,
    days_until,
    resolve_birthday,
    resolve_custom,
    resolve_holiday,
    resolve_today,
)
from autogift_api.models.execution import ExecutionStatusEnum, GiftExecution
from autogift_api.models.gifting_rule import GiftEventTypeEnum, GiftingRule
from autogift_api.models.order import Order
from autogift_api.models.user import User
from autogift_api.schemas.gifts import dump_products, products_total
from autogift_api.schemas.pipeline_events import (
    CheckoutCreatedPayload,
    NotificationSentPayload,
    ProcessingFailedPayload,
)
from autogift_api.services.checkout import AutoGiftCheckoutService
from autogift_api.services.event_log import PipelineEventLog
from autogift_api.services.notifications import NotificationService
from autogift_api.services.notifications.service import occasion_for
from autogift_api.services.run_summary import RunSummary

from .addresses import recipient_contact, resolve_shipping_address
from .errors import GiftResolutionError, OrderLinkageError
from .executions import LIVE_EXECUTION_STATUSES, find_live_execution, transition_execution
from .selection import GiftSelector

_COMMIT_BLOCKING_STATUSES = frozenset(
    {
        ExecutionStatusEnum.REJECTED,
        ExecutionStatusEnum.PROCESSING,
        ExecutionStatusEnum.APPROVED,
        ExecutionStatusEnum.AWAITING_ADDRESS,
        ExecutionStatusEnum.PAYMENT_RETRY_PENDING,
        ExecutionStatusEnum.SCHEDULED,
        ExecutionStatusEnum.COMPLETED,
    }
)


async def resolve_event_date(session: AsyncSession, rule: GiftingRule, reference_date: date) -> date | None:
    """Next occurrence for the rule, or ``None`` when nothing can be computed."""

    if rule.event_type == GiftEventTypeEnum.BIRTHDAY:
        anchor = rule.event_anchor
        if not anchor and rule.recipient_id is not None:
            recipient = await session.get(User, rule.recipient_id)
            anchor = recipient.dob if recipient is not None else None
        return resolve_birthday(anchor, reference_date)
    if rule.event_type == GiftEventTypeEnum.HOLIDAY:
        return resolve_holiday(rule.holiday_key, reference_date)
    return resolve_custom(rule.event_anchor, reference_date)


class AutoGiftOrchestrator:
    """Walks active rules once per day.

    A rule exactly ``notification_lead_days`` out gets a reminder and a
    pending-approval execution holding candidate gifts. A rule exactly
    ``payment_commitment_lead_days`` out gets a checkout for its best
    affordable gift unless the occurrence already has an order or the owner
    rejected it.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        selector: GiftSelector,
        checkout: AutoGiftCheckoutService,
        notifications: NotificationService,
        timing: PipelineTiming,
        event_log: PipelineEventLog | None = None,
    ) -> None:
        self._session = session
        self._selector = selector
        self._checkout = checkout
        self._notifications = notifications
        self._timing = timing
        self._event_log = event_log or PipelineEventLog(session)

    async def run(self, *, simulated_date: date | None = None) -> RunSummary:
        today = resolve_today(simulated_date)
        simulated = simulated_date is not None
        log = pipeline_logger("auto_gift_orchestrator", reference_date=today, simulated=simulated)
        summary = RunSummary(
            component="auto_gift_orchestrator",
            reference_date=today,
            simulated=simulated,
            config=self._timing.as_dict(),
        )

        rules = await self._load_rules(today, summary)
        log.info("Gifting rules loaded", count=len(rules))

        for rule_id in [rule.id for rule in rules]:
            rule = await self._session.get(GiftingRule, rule_id)
            if rule is None:
                continue
            owner_id, event_date = rule.owner_id, rule.scheduled_date
            days = days_until(event_date, today)
            stage = "scan"
            try:
                if days == self._timing.notification_lead_days:
                    stage = "notification"
                    await self._notify(rule, event_date, days, summary)
                if days == self._timing.payment_commitment_lead_days:
                    stage = "commitment"
                    await self._commit(rule, event_date, today, summary)
            except OrderLinkageError:
                raise
            except Exception as exc:
                await self._session.rollback()
                log.exception("Gifting rule processing failed", rule_id=str(rule_id), stage=stage)
                summary.fail(entity_id=rule_id, stage=stage, error=str(exc))
                await self._event_log.record(
                    ProcessingFailedPayload(stage=stage, error=str(exc), event_date=event_date),
                    rule_id=rule_id,
                    user_id=owner_id,
                )

        log.info("Auto-gift run finished", **summary.counts)
        return summary

    async def _load_rules(self, today: date, summary: RunSummary) -> list[GiftingRule]:
        window_end = today + timedelta(days=self._timing.look_ahead_days)

        stale_stmt = select(GiftingRule).where(
            GiftingRule.active.is_(True),
            or_(GiftingRule.scheduled_date.is_(None), GiftingRule.scheduled_date < today),
        )
        stale = list((await self._session.execute(stale_stmt)).scalars())
        for rule in stale:
            resolved = await resolve_event_date(self._session, rule, today)
            if resolved is None:
                summary.record("unresolved", id=rule.id, error="No event date could be computed")
                continue
            rule.scheduled_date = resolved
            summary.record("datesResolved", id=rule.id, eventDate=resolved)
        if stale:
            await self._session.commit()

        window_stmt = (
            select(GiftingRule)
            .where(
                GiftingRule.active.is_(True),
                GiftingRule.scheduled_date >= today,
                GiftingRule.scheduled_date <= window_end,
            )
            .order_by(GiftingRule.scheduled_date.asc())
        )
        return list((await self._session.execute(window_stmt)).scalars())

    async def _notify(self, rule: GiftingRule, event_date: date, days: int, summary: RunSummary) -> None:
        rule_id = rule.id
        occasion = occasion_for(rule)
        execution = await find_live_execution(self._session, rule.id, event_date)
        if execution is not None:
            summary.record("alreadyNotified", id=rule.id, executionId=execution.id)
            return

        candidates = await self._selector.reminder_candidates(rule, occasion)
        execution = GiftExecution(
            rule_id=rule.id,
            owner_id=rule.owner_id,
            occurrence_date=event_date,
            status=ExecutionStatusEnum.PENDING_APPROVAL,
            suggested_products=dump_products(candidates),
            total_amount=products_total(candidates) if candidates else None,
        )
        self._session.add(execution)
        try:
            await self._session.commit()
        except IntegrityError:
            # An overlapping run inserted the execution for this occurrence first.
            await self._session.rollback()
            winner = await find_live_execution(self._session, rule_id, event_date)
            summary.record("alreadyNotified", id=rule_id, executionId=winner.id if winner else None)
            return
        await self._session.refresh(execution)

        delivered = await self._notifications.send_gift_reminder(
            rule,
            execution,
            event_date=event_date,
            candidates=[candidate.as_json() for candidate in candidates],
        )
        await self._event_log.record(
            NotificationSentPayload(
                event_date=event_date,
                days_until=days,
                delivered=delivered,
                candidates=candidates,
            ),
            rule_id=rule.id,
            execution_id=execution.id,
            user_id=rule.owner_id,
        )
        summary.record("notified", id=rule.id, executionId=execution.id, candidates=len(candidates))

    async def _commit(self, rule: GiftingRule, event_date: date, today: date, summary: RunSummary) -> None:
        existing = await self._session.execute(
            select(Order.id).where(
                Order.gifting_rule_id == rule.id,
                Order.scheduled_delivery_date == event_date,
            )
        )
        existing_order_id = existing.scalar_one_or_none()
        if existing_order_id is not None:
            summary.record("skipped", id=rule.id, reason="order_exists", orderId=existing_order_id)
            return

        execution = await find_live_execution(self._session, rule.id, event_date)
        if execution is not None and (execution.order_id or execution.status in _COMMIT_BLOCKING_STATUSES):
            summary.record("skipped", id=rule.id, reason=execution.status.value, executionId=execution.id)
            return

        if not rule.payment_method_ref:
            raise GiftResolutionError("No payment method configured for this rule", stage="commitment")

        product = await self._selector.best_affordable(rule, occasion_for(rule))
        if product is None:
            raise GiftResolutionError("No affordable gift found within budget", stage="commitment")

        address = await resolve_shipping_address(self._session, rule, execution)
        if address is None:
            raise GiftResolutionError("No shipping address available for recipient", stage="commitment")

        recipient_email, recipient_name = await recipient_contact(self._session, rule)
        result = await self._checkout.create_checkout(
            rule,
            product=product,
            shipping_address=address,
            delivery_date=event_date,
            today=today,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            execution_id=execution.id if execution is not None else None,
        )
        order = result.order

        await self._link_execution(rule, execution, order, product, event_date)
        await self._event_log.record(
            CheckoutCreatedPayload(
                order_id=order.id,
                order_number=order.order_number,
                event_date=event_date,
                amount=product.price,
                payment_mode=result.payment_mode,
                product=product,
            ),
            rule_id=rule.id,
            execution_id=order.execution_id,
            order_id=order.id,
            user_id=rule.owner_id,
        )
        summary.record(
            "checkoutCreated",
            id=rule.id,
            orderId=order.id,
            paymentMode=result.payment_mode,
            metadata=result.metadata,
        )

    async def _link_execution(
        self,
        rule: GiftingRule,
        execution: GiftExecution | None,
        order: Order,
        product: Any,
        event_date: date,
    ) -> None:
        values = {
            "order_id": order.id,
            "selected_products": dump_products([product]),
            "total_amount": product.price,
        }
        try:
            if execution is None:
                execution = GiftExecution(
                    rule_id=rule.id,
                    owner_id=rule.owner_id,
                    occurrence_date=event_date,
                    status=ExecutionStatusEnum.SCHEDULED,
                    suggested_products=dump_products([product]),
                    **values,
                )
                self._session.add(execution)
                await self._session.flush()
                order.execution_id = execution.id
                await self._session.commit()
                return
            linked = await transition_execution(
                self._session,
                execution,
                ExecutionStatusEnum.SCHEDULED,
                expected=LIVE_EXECUTION_STATUSES,
                **values,
            )
        except Exception as exc:
            raise OrderLinkageError(
                f"Order {order.id} created but not linked to its execution: {exc}",
                order_id=order.id,
                execution_id=execution.id if execution is not None else None,
            ) from exc
        if not linked:
            raise OrderLinkageError(
                f"Order {order.id} created but execution changed status concurrently",
                order_id=order.id,
                execution_id=execution.id,
            )


__all__ = ["AutoGiftOrchestrator", "resolve_event_date"]
