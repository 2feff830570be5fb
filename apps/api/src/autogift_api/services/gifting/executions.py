"""Conditional status updates for gift executions."""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.models.execution import ExecutionStatusEnum, GiftExecution

LIVE_EXECUTION_STATUSES = frozenset(
    {
        ExecutionStatusEnum.PENDING_APPROVAL,
        ExecutionStatusEnum.PROCESSING,
        ExecutionStatusEnum.APPROVED,
        ExecutionStatusEnum.AWAITING_ADDRESS,
        ExecutionStatusEnum.PAYMENT_RETRY_PENDING,
    }
)


async def transition_execution(
    session: AsyncSession,
    execution: GiftExecution,
    target: ExecutionStatusEnum,
    *,
    expected: Iterable[ExecutionStatusEnum],
    commit: bool = True,
    **values: Any,
) -> bool:
    """Move ``execution`` to ``target`` if it still holds one of ``expected``.

    Returns ``False`` without writing when another invocation got there first.
    """

    expected_statuses = list(expected)
    stmt = (
        update(GiftExecution)
        .where(GiftExecution.id == execution.id, GiftExecution.status.in_(expected_statuses))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        logger.info(
            "Execution transition skipped; status changed concurrently",
            execution_id=str(execution.id),
            target=target.value,
        )
        await session.rollback()
        await session.refresh(execution)
        return False

    if commit:
        await session.commit()
        await session.refresh(execution)
    return True


async def find_live_execution(
    session: AsyncSession, rule_id: Any, occurrence_date: date
) -> GiftExecution | None:
    """Latest execution for the occurrence that has not failed."""

    stmt = (
        select(GiftExecution)
        .where(
            GiftExecution.rule_id == rule_id,
            GiftExecution.occurrence_date == occurrence_date,
            GiftExecution.status != ExecutionStatusEnum.FAILED,
        )
        .order_by(GiftExecution.created_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


__all__ = ["LIVE_EXECUTION_STATUSES", "find_live_execution", "transition_execution"]
