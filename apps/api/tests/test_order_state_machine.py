from datetime import date

import pytest
from sqlalchemy import update

from autogift_api.models.order import Order, OrderStatusEnum, PaymentStatusEnum
from autogift_api.services.orders import (
    InvalidOrderTransitionError,
    OrderStateMachine,
    StaleOrderTransitionError,
)


def test_order_transitions_only_move_forward() -> None:
    allowed = OrderStateMachine.can_transition

    assert allowed(OrderStatusEnum.PENDING_PAYMENT, OrderStatusEnum.SCHEDULED)
    assert allowed(OrderStatusEnum.SCHEDULED, OrderStatusEnum.PAYMENT_CONFIRMED)
    assert allowed(OrderStatusEnum.PAYMENT_CONFIRMED, OrderStatusEnum.PROCESSING)
    assert allowed(OrderStatusEnum.PROCESSING, OrderStatusEnum.FAILED)
    assert allowed(OrderStatusEnum.PENDING_PAYMENT, OrderStatusEnum.REQUIRES_ATTENTION)

    assert not allowed(OrderStatusEnum.SCHEDULED, OrderStatusEnum.PENDING_PAYMENT)
    assert not allowed(OrderStatusEnum.SCHEDULED, OrderStatusEnum.PROCESSING)
    assert not allowed(OrderStatusEnum.FAILED, OrderStatusEnum.SCHEDULED)
    assert not allowed(OrderStatusEnum.REQUIRES_ATTENTION, OrderStatusEnum.FAILED)


@pytest.mark.asyncio
async def test_transition_rejects_illegal_move(session_factory, seed) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 25))
    order_id = await seed.order(scenario, delivery_date=date(2025, 12, 25), status=OrderStatusEnum.SCHEDULED)

    async with session_factory() as session:
        order = await session.get(Order, order_id)
        with pytest.raises(InvalidOrderTransitionError):
            await OrderStateMachine(session).transition(order, OrderStatusEnum.PROCESSING)


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(session_factory, seed) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 25))
    order_id = await seed.order(scenario, delivery_date=date(2025, 12, 25), status=OrderStatusEnum.SCHEDULED)

    async with session_factory() as session:
        order = await session.get(Order, order_id)
        # Another run captures the order after this one loaded it.
        await session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(status=OrderStatusEnum.PAYMENT_CONFIRMED)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        assert order.status == OrderStatusEnum.SCHEDULED

        with pytest.raises(StaleOrderTransitionError):
            await OrderStateMachine(session).transition(
                order,
                OrderStatusEnum.PAYMENT_CONFIRMED,
                expected_payment_status=PaymentStatusEnum.AUTHORIZED.value,
            )


@pytest.mark.asyncio
async def test_transition_appends_notes(session_factory, seed) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 25))
    order_id = await seed.order(
        scenario,
        delivery_date=date(2025, 12, 25),
        status=OrderStatusEnum.PAYMENT_CONFIRMED,
        notes="Happy birthday!",
    )

    async with session_factory() as session:
        order = await session.get(Order, order_id)
        await OrderStateMachine(session).transition(order, OrderStatusEnum.FAILED, note="[submit] timeout")

    async with session_factory() as session:
        stored = await session.get(Order, order_id)
        assert stored.status == OrderStatusEnum.FAILED
        assert stored.notes == "Happy birthday!\n[submit] timeout"
