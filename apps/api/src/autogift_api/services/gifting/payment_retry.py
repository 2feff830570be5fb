"""Re-authorizes gifts whose payment was declined after approval."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.core.logging import pipeline_logger
from autogift_api.domain.calendar import PipelineTiming, resolve_now
from autogift_api.models.execution import ExecutionStatusEnum, GiftExecution
from autogift_api.models.gifting_rule import GiftingRule
from autogift_api.schemas.pipeline_events import ProcessingFailedPayload
from autogift_api.services.event_log import PipelineEventLog
from autogift_api.services.run_summary import RunSummary

from .addresses import resolve_shipping_address
from .approval import ApprovalService
from .errors import ApprovalStateError, OrderLinkageError, PaymentMethodMissingError
from .executions import transition_execution


class PaymentRetryProcessor:
    def __init__(
        self,
        session: AsyncSession,
        *,
        approval: ApprovalService,
        timing: PipelineTiming,
        event_log: PipelineEventLog | None = None,
    ) -> None:
        self._session = session
        self._approval = approval
        self._timing = timing
        self._event_log = event_log or PipelineEventLog(session)

    async def run(self, *, simulated_date: date | None = None) -> RunSummary:
        now = resolve_now(simulated_date)
        log = pipeline_logger("payment_retry", reference_date=now.date(), simulated=simulated_date is not None)
        summary = RunSummary(
            component="payment_retry",
            reference_date=now.date(),
            simulated=simulated_date is not None,
            config=self._timing.as_dict(),
        )

        stmt = (
            select(GiftExecution)
            .where(
                GiftExecution.status == ExecutionStatusEnum.PAYMENT_RETRY_PENDING,
                GiftExecution.next_payment_retry_at.is_not(None),
                GiftExecution.next_payment_retry_at <= now,
            )
            .order_by(GiftExecution.next_payment_retry_at.asc())
        )
        due = list((await self._session.execute(stmt)).scalars())
        log.info("Payment retries due", count=len(due))

        for execution_id in [execution.id for execution in due]:
            execution = await self._session.get(GiftExecution, execution_id)
            if execution is None:
                continue
            rule_id = execution.rule_id
            try:
                outcome = await self._retry(execution, now)
            except OrderLinkageError:
                raise
            except Exception as exc:
                await self._session.rollback()
                log.exception("Payment retry failed", execution_id=str(execution_id))
                summary.fail(entity_id=execution_id, stage="payment_retry", error=str(exc))
                try:
                    await self._approval.fail_payment(execution_id, rule_id, str(exc), now)
                except ApprovalStateError:
                    logger.info("Execution left retry processing before failure was recorded", execution_id=str(execution_id))
                await self._event_log.record(
                    ProcessingFailedPayload(stage="payment_retry", error=str(exc)),
                    rule_id=rule_id,
                    execution_id=execution_id,
                )
                continue
            if outcome is None:
                summary.record("skipped", id=execution_id)
                continue
            bucket = {
                ExecutionStatusEnum.SCHEDULED: "authorized",
                ExecutionStatusEnum.COMPLETED: "authorized",
                ExecutionStatusEnum.PAYMENT_RETRY_PENDING: "rescheduled",
            }.get(outcome.status, "failed")
            detail: dict[str, Any] = {"id": execution_id, "status": outcome.status.value}
            if outcome.order_id:
                detail["orderId"] = outcome.order_id
            if outcome.next_retry_at:
                detail["nextRetryAt"] = outcome.next_retry_at.isoformat()
            if bucket == "failed":
                detail["error"] = outcome.message
            summary.record(bucket, **detail)

        log.info("Payment retry run finished", **summary.counts)
        return summary

    async def _retry(self, execution: GiftExecution, now: datetime):
        rule = await self._session.get(GiftingRule, execution.rule_id)
        claimed = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.PROCESSING,
            expected=[ExecutionStatusEnum.PAYMENT_RETRY_PENDING],
        )
        if not claimed:
            return None

        address = await resolve_shipping_address(self._session, rule, execution)
        if address is None:
            raise ValueError("No shipping address available for payment retry")

        logger.info(
            "Retrying payment authorization",
            execution_id=str(execution.id),
            attempt=execution.payment_retry_count + 1,
        )
        try:
            return await self._approval.place_order(
                execution,
                rule,
                shipping_address=address,
                now=now,
                attempt_number=execution.payment_retry_count + 1,
                selected_ids=[product["product_id"] for product in execution.selected_products or []],
            )
        except PaymentMethodMissingError as exc:
            return await self._approval.fail_payment(execution.id, rule.id, str(exc), now)


__all__ = ["PaymentRetryProcessor"]
