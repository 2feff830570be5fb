from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from autogift_api.domain.calendar import as_utc
from autogift_api.models.execution import ExecutionStatusEnum, GiftExecution
from autogift_api.models.order import Order, OrderStatusEnum
from autogift_api.models.payment_attempt import PaymentAttempt, PaymentAttemptStatusEnum
from autogift_api.models.pipeline_event import PipelineEvent, PipelineEventTypeEnum
from autogift_api.services.gifting import (
    ApprovalStateError,
    ExecutionNotFoundError,
    InvalidSelectionError,
    OrderLinkageError,
)
from autogift_api.services.gifting import approval as approval_module
from autogift_api.services.pipeline import PipelineServices

from conftest import card_declined, utc


async def _decide(session_factory, dependencies, execution_id, *, now=None, **kwargs):
    async with session_factory() as session:
        approval = PipelineServices(session, dependencies).approval()
        return await approval.decide(execution_id, now=now or utc(2025, 12, 1), **kwargs)


@pytest.mark.asyncio
async def test_approval_close_to_delivery_places_unheld_order(session_factory, seed, dependencies, gateway, email_backend) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    result = await _decide(session_factory, dependencies, execution_id, approve=True, decided_by="owner")

    assert result.status == ExecutionStatusEnum.COMPLETED
    assert result.order_id is not None
    assert gateway.authorizations[0]["idempotency_key"] == f"approval-{execution_id}-1"
    assert gateway.authorizations[0]["amount"] == Decimal("45.00")

    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
        order = await session.get(Order, result.order_id)
        attempts = list((await session.execute(select(PaymentAttempt))).scalars())

    assert execution.status == ExecutionStatusEnum.COMPLETED
    assert execution.order_id == order.id
    assert execution.decided_by == "owner"
    assert order.status == OrderStatusEnum.SCHEDULED
    assert order.payment_status == "authorized"
    assert order.hold_for_scheduled_delivery is False
    assert order.hold_until is None
    assert order.total == Decimal("45.00")
    assert [item["product_id"] for item in order.line_items] == ["prod-a", "prod-b"]
    assert order.execution_id == execution_id
    assert [attempt.status for attempt in attempts] == [PaymentAttemptStatusEnum.SUCCEEDED]
    assert email_backend.sent_messages[-1]["Subject"] == f"Gift order {order.order_number} confirmed"


@pytest.mark.asyncio
async def test_approval_far_from_delivery_holds_order(session_factory, seed, dependencies) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 20))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 20))

    result = await _decide(session_factory, dependencies, execution_id, approve=True)

    assert result.status == ExecutionStatusEnum.SCHEDULED
    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
    assert order.hold_for_scheduled_delivery is True
    assert order.hold_until == date(2025, 12, 17)


@pytest.mark.asyncio
async def test_approval_narrows_to_selected_products(session_factory, seed, dependencies, gateway) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    result = await _decide(session_factory, dependencies, execution_id, approve=True, selected_product_ids=["prod-b"])

    assert gateway.authorizations[0]["amount"] == Decimal("30.00")
    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
        execution = await session.get(GiftExecution, execution_id)
    assert [item["product_id"] for item in order.line_items] == ["prod-b"]
    assert [product["product_id"] for product in execution.selected_products] == ["prod-b"]


@pytest.mark.asyncio
async def test_unknown_selection_is_rejected_without_state_change(session_factory, seed, dependencies) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    with pytest.raises(InvalidSelectionError):
        await _decide(session_factory, dependencies, execution_id, approve=True, selected_product_ids=["prod-z"])

    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
    assert execution.status == ExecutionStatusEnum.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_rejection_is_final(session_factory, seed, dependencies, gateway, email_backend) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    result = await _decide(session_factory, dependencies, execution_id, approve=False, reason="Already bought one")

    assert result.status == ExecutionStatusEnum.REJECTED
    assert gateway.authorizations == []
    assert email_backend.sent_messages[0]["Subject"] == "Auto-gift for Riley cancelled"

    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
        events = list(
            (await session.execute(select(PipelineEvent).where(PipelineEvent.execution_id == execution_id))).scalars()
        )
    assert execution.rejection_reason == "Already bought one"
    assert events[0].event_type == PipelineEventTypeEnum.APPROVAL_DECIDED
    assert events[0].payload["outcome"] == "rejected"

    with pytest.raises(ApprovalStateError):
        await _decide(session_factory, dependencies, execution_id, approve=True)


@pytest.mark.asyncio
async def test_unknown_execution_raises(session_factory, dependencies) -> None:
    with pytest.raises(ExecutionNotFoundError):
        await _decide(session_factory, dependencies, uuid4(), approve=True)


@pytest.mark.asyncio
async def test_declined_card_schedules_retry(session_factory, seed, dependencies, gateway, email_backend) -> None:
    gateway.authorize_errors.append(card_declined())
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    result = await _decide(session_factory, dependencies, execution_id, approve=True)

    assert result.status == ExecutionStatusEnum.PAYMENT_RETRY_PENDING
    assert result.next_retry_at == utc(2025, 12, 1) + timedelta(hours=12)

    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
        attempts = list((await session.execute(select(PaymentAttempt))).scalars())
        orders = list((await session.execute(select(Order))).scalars())

    assert execution.status == ExecutionStatusEnum.PAYMENT_RETRY_PENDING
    assert execution.payment_retry_count == 1
    assert as_utc(execution.next_payment_retry_at) == utc(2025, 12, 2, 0)
    assert execution.payment_error_message == "Your card was declined."
    assert orders == []
    assert len(attempts) == 1
    assert attempts[0].status == PaymentAttemptStatusEnum.FAILED
    assert attempts[0].decline_code == "insufficient_funds"

    message = email_backend.sent_messages[-1]
    assert message["Subject"] == "Payment issue with your gift for Riley"
    assert "3 attempts left" in message.get_body(preferencelist=("plain",)).get_content()


@pytest.mark.asyncio
async def test_approval_without_address_requests_one_from_recipient(session_factory, seed, dependencies, gateway, email_backend) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5), with_recipient=False)
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    result = await _decide(session_factory, dependencies, execution_id, approve=True)

    assert result.status == ExecutionStatusEnum.AWAITING_ADDRESS
    assert gateway.authorizations == []

    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
    assert execution.status == ExecutionStatusEnum.AWAITING_ADDRESS
    assert execution.address_collection_status.value == "requested"

    message = email_backend.sent_messages[0]
    assert message["To"] == "riley@example.com"
    assert message["Subject"] == "You have a gift on the way"
    assert "https://gifts.test/gift-address/" in message.get_body(preferencelist=("plain",)).get_content()


@pytest.mark.asyncio
async def test_unexpected_placement_error_returns_execution_to_pending(
    session_factory, seed, dependencies, gateway, monkeypatch
) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    async def address_lookup_down(session, rule, execution):
        raise RuntimeError("address lookup timed out")

    monkeypatch.setattr(approval_module, "resolve_shipping_address", address_lookup_down)

    result = await _decide(session_factory, dependencies, execution_id, approve=True)

    assert result.status == ExecutionStatusEnum.PENDING_APPROVAL
    assert result.message == "Order placement failed: address lookup timed out"
    assert gateway.authorizations == []
    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
        orders = list((await session.execute(select(Order))).scalars())
    assert execution.status == ExecutionStatusEnum.PENDING_APPROVAL
    assert execution.error_message == "address lookup timed out"
    assert orders == []


@pytest.mark.asyncio
async def test_approval_without_payment_method_fails_and_tells_owner(
    session_factory, seed, dependencies, gateway, email_backend
) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5), payment_method_ref=None)
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))

    result = await _decide(session_factory, dependencies, execution_id, approve=True)

    assert result.status == ExecutionStatusEnum.FAILED
    assert gateway.authorizations == []
    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
    assert execution.status == ExecutionStatusEnum.FAILED
    assert execution.error_message == "No payment method is attached to this gifting rule"

    message = email_backend.sent_messages[-1]
    assert message["Subject"] == "Action needed: update your payment method"
    assert "No payment method is attached" in message.get_body(preferencelist=("plain",)).get_content()


@pytest.mark.asyncio
async def test_order_left_unlinked_raises_linkage_error(session_factory, seed, dependencies, gateway, monkeypatch) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))
    original = approval_module.transition_execution

    async def linking_update_fails(session, execution, target, **kwargs):
        if target in (ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.SCHEDULED):
            raise RuntimeError("connection reset")
        return await original(session, execution, target, **kwargs)

    monkeypatch.setattr(approval_module, "transition_execution", linking_update_fails)

    with pytest.raises(OrderLinkageError) as excinfo:
        await _decide(session_factory, dependencies, execution_id, approve=True)

    assert excinfo.value.execution_id == execution_id
    assert len(gateway.authorizations) == 1
    async with session_factory() as session:
        order = (await session.execute(select(Order))).scalar_one()
        execution = await session.get(GiftExecution, execution_id)
    assert excinfo.value.order_id == order.id
    assert order.execution_id == execution_id
    assert execution.status == ExecutionStatusEnum.APPROVED
    assert execution.order_id is None
