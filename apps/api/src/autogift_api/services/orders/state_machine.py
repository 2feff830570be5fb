"""Forward-only order state machine with compare-and-set transitions."""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.models.order import Order, OrderStatusEnum


class OrderStateError(RuntimeError):
    """Base exception for order state machine failures."""


class InvalidOrderTransitionError(OrderStateError):
    """Raised when a state transition violates the configured state machine."""

    def __init__(self, current_status: OrderStatusEnum, requested_status: OrderStatusEnum) -> None:
        message = f"Cannot transition order from {current_status.value} to {requested_status.value}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class StaleOrderTransitionError(OrderStateError):
    """Raised when the row no longer holds the status it was read with."""

    def __init__(self, order_id: Any, expected_status: OrderStatusEnum) -> None:
        super().__init__(f"Order {order_id} is no longer {expected_status.value}")
        self.order_id = order_id
        self.expected_status = expected_status


_ERROR_SINKS = {OrderStatusEnum.REQUIRES_ATTENTION, OrderStatusEnum.FAILED}


class OrderStateMachine:
    """Moves orders forward along pending_payment -> scheduled -> payment_confirmed -> processing.

    ``requires_attention`` and ``failed`` are reachable from every live status
    and are terminal. Every write is an ``UPDATE ... WHERE status = <expected>``
    so two overlapping runs cannot both advance the same row.
    """

    _ALLOWED_TRANSITIONS: dict[OrderStatusEnum, set[OrderStatusEnum]] = {
        OrderStatusEnum.PENDING_PAYMENT: {OrderStatusEnum.SCHEDULED, *_ERROR_SINKS},
        OrderStatusEnum.SCHEDULED: {OrderStatusEnum.PAYMENT_CONFIRMED, *_ERROR_SINKS},
        OrderStatusEnum.PAYMENT_CONFIRMED: {OrderStatusEnum.PROCESSING, *_ERROR_SINKS},
        OrderStatusEnum.PROCESSING: set(_ERROR_SINKS),
        OrderStatusEnum.REQUIRES_ATTENTION: set(),
        OrderStatusEnum.FAILED: set(),
    }

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @classmethod
    def can_transition(cls, current: OrderStatusEnum, target: OrderStatusEnum) -> bool:
        return target in cls._ALLOWED_TRANSITIONS.get(current, set())

    async def transition(
        self,
        order: Order,
        target_status: OrderStatusEnum,
        *,
        expected_payment_status: str | None = None,
        note: str | None = None,
        values: dict[str, Any] | None = None,
    ) -> Order:
        """Advance ``order`` and commit, or raise if the move is illegal or stale."""

        order_id = order.id
        current_status = OrderStatusEnum(order.status)
        if not self.can_transition(current_status, target_status):
            raise InvalidOrderTransitionError(current_status, target_status)

        changes: dict[str, Any] = dict(values or {})
        changes["status"] = target_status
        if note:
            changes["notes"] = _append_note(order.notes, note)

        stmt = update(Order).where(Order.id == order_id, Order.status == current_status)
        if expected_payment_status is not None:
            stmt = stmt.where(Order.payment_status == expected_payment_status)
        stmt = stmt.values(**changes).execution_options(synchronize_session=False)

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            # Rolling back expires ``order``; only values read above are used from here.
            await self._session.rollback()
            raise StaleOrderTransitionError(order_id, current_status)

        await self._session.commit()
        await self._session.refresh(order)
        logger.info(
            "Order status transitioned",
            order_id=str(order_id),
            from_status=current_status.value,
            to_status=target_status.value,
        )
        return order


def _append_note(existing: str | None, note: str) -> str:
    if not existing:
        return note
    return f"{existing}\n{note}"


__all__ = [
    "InvalidOrderTransitionError",
    "OrderStateError",
    "OrderStateMachine",
    "StaleOrderTransitionError",
]
