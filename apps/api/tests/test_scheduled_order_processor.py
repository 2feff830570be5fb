from datetime import date

import pytest
from sqlalchemy import select, update

from autogift_api.domain.calendar import PipelineTiming
from autogift_api.models.order import Order, OrderStatusEnum, PaymentStatusEnum
from autogift_api.models.pipeline_event import PipelineEvent, PipelineEventTypeEnum
from autogift_api.services.orders import CapturedOrderPersistenceError, OrderStateMachine
from autogift_api.services.payments import PaymentGatewayError
from autogift_api.services.pipeline import PipelineServices

from conftest import card_declined, fulfillment_down

TODAY = date(2025, 12, 1)


async def _run(session_factory, dependencies, today=TODAY):
    async with session_factory() as session:
        return await PipelineServices(session, dependencies).scheduled_orders().run(simulated_date=today)


async def _order(session_factory, order_id) -> Order:
    async with session_factory() as session:
        return await session.get(Order, order_id)


@pytest.mark.asyncio
async def test_deferred_order_is_authorized_then_captured(session_factory, seed, dependencies, gateway) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    order_id = await seed.order(
        scenario,
        delivery_date=date(2025, 12, 5),
        status=OrderStatusEnum.PENDING_PAYMENT,
        payment_status=PaymentStatusEnum.PENDING.value,
        setup_intent_ref="seti_1",
    )

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {"authorized": 1, "captured": 1, "notReady": 1}
    assert gateway.authorizations[0]["payment_method_ref"] == "pm_saved"
    assert gateway.authorizations[0]["idempotency_key"] == f"authorize-{order_id}"
    assert gateway.authorizations[0]["customer_ref"] == "cus_owner"
    assert gateway.captures == [{"intent_id": "pi_1", "idempotency_key": f"capture-{order_id}"}]

    order = await _order(session_factory, order_id)
    assert order.status == OrderStatusEnum.PAYMENT_CONFIRMED
    assert order.payment_status == "captured"
    assert order.payment_method_ref == "pm_saved"
    assert order.captured_at is not None


@pytest.mark.asyncio
async def test_deferred_order_waits_for_capture_window(session_factory, seed, dependencies, gateway) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 6))
    order_id = await seed.order(
        scenario,
        delivery_date=date(2025, 12, 6),
        status=OrderStatusEnum.PENDING_PAYMENT,
        payment_status=PaymentStatusEnum.PENDING.value,
        setup_intent_ref="seti_1",
    )

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {"notReady": 1}
    assert summary.details["notReady"][0]["stage"] == "authorize_deferred"
    assert gateway.authorizations == []
    assert (await _order(session_factory, order_id)).status == OrderStatusEnum.PENDING_PAYMENT


@pytest.mark.asyncio
async def test_deferred_authorization_failure_needs_attention(session_factory, seed, dependencies, gateway, email_backend) -> None:
    gateway.authorize_errors.append(card_declined())
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    order_id = await seed.order(
        scenario,
        delivery_date=date(2025, 12, 5),
        status=OrderStatusEnum.PENDING_PAYMENT,
        payment_status=PaymentStatusEnum.PENDING.value,
        setup_intent_ref="seti_1",
    )

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {"failed": 1}
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatusEnum.REQUIRES_ATTENTION
    assert order.notes == "[authorize_deferred] Your card was declined."
    assert email_backend.sent_messages[-1]["Subject"] == f"Gift order {order.order_number} needs attention"


@pytest.mark.asyncio
async def test_capture_happens_once(session_factory, seed, dependencies, gateway) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    order_id = await seed.order(scenario, delivery_date=date(2025, 12, 5), status=OrderStatusEnum.SCHEDULED)

    first = await _run(session_factory, dependencies)
    second = await _run(session_factory, dependencies)

    assert first.counts == {"captured": 1, "notReady": 1}
    assert second.counts == {"notReady": 1}
    assert gateway.captures == [{"intent_id": "pi_existing", "idempotency_key": f"capture-{order_id}"}]

    async with session_factory() as session:
        events = list((await session.execute(select(PipelineEvent).where(PipelineEvent.order_id == order_id))).scalars())
    assert [event.event_type for event in events] == [PipelineEventTypeEnum.ORDER_STAGE_ADVANCED]
    assert events[0].payload["to_status"] == "payment_confirmed"


@pytest.mark.asyncio
async def test_held_order_is_not_captured_early(session_factory, seed, dependencies, gateway) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 20))
    await seed.order(scenario, delivery_date=date(2025, 12, 20), status=OrderStatusEnum.SCHEDULED)

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {}
    assert gateway.captures == []


@pytest.mark.asyncio
async def test_capture_failure_fails_order(session_factory, seed, dependencies, gateway) -> None:
    gateway.capture_errors.append(PaymentGatewayError("Authorization expired", code="charge_expired_for_capture"))
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    order_id = await seed.order(scenario, delivery_date=date(2025, 12, 5), status=OrderStatusEnum.SCHEDULED)

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {"failed": 1}
    assert summary.details["failed"][0]["stage"] == "capture"
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatusEnum.FAILED
    assert order.payment_status == PaymentStatusEnum.FAILED.value
    assert order.notes == "[capture] Authorization expired"


@pytest.mark.asyncio
async def test_paid_order_is_submitted_inside_shipping_buffer(session_factory, seed, dependencies, fulfillment) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 4))
    order_id = await seed.order(
        scenario,
        delivery_date=date(2025, 12, 4),
        status=OrderStatusEnum.PAYMENT_CONFIRMED,
        payment_status="captured",
        gift_message="Happy birthday!",
        notes="[ops] address confirmed by phone",
    )

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {"submitted": 1}
    submission = fulfillment.submissions[0]
    assert submission["order_id"] == str(order_id)
    assert submission["gift_message"] == "Happy birthday!"
    assert submission["shipping_address"]["city"] == "Portland"

    order = await _order(session_factory, order_id)
    assert order.status == OrderStatusEnum.PROCESSING
    assert order.fulfillment_request_id == "req_1"
    assert order.submitted_at is not None


@pytest.mark.asyncio
async def test_submission_failure_fails_order(session_factory, seed, dependencies, fulfillment) -> None:
    fulfillment.errors.append(fulfillment_down())
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 4))
    order_id = await seed.order(
        scenario,
        delivery_date=date(2025, 12, 4),
        status=OrderStatusEnum.PAYMENT_CONFIRMED,
        payment_status="captured",
    )

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {"failed": 1}
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatusEnum.FAILED
    assert order.notes == "[submit] Fulfillment service returned 503"


@pytest.mark.asyncio
async def test_unheld_order_runs_every_stage_immediately(session_factory, seed, dependencies, gateway, fulfillment) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 20))
    order_id = await seed.order(
        scenario,
        delivery_date=date(2025, 12, 20),
        status=OrderStatusEnum.SCHEDULED,
        hold=False,
    )

    summary = await _run(session_factory, dependencies)

    assert summary.counts == {"captured": 1, "submitted": 1}
    assert len(gateway.captures) == 1
    assert len(fulfillment.submissions) == 1
    assert (await _order(session_factory, order_id)).status == OrderStatusEnum.PROCESSING


@pytest.mark.asyncio
async def test_captured_payment_label_is_configurable(session_factory, seed, dependencies) -> None:
    dependencies.timing = PipelineTiming(captured_payment_status="paid")
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    order_id = await seed.order(scenario, delivery_date=date(2025, 12, 5), status=OrderStatusEnum.SCHEDULED)

    await _run(session_factory, dependencies)

    assert (await _order(session_factory, order_id)).payment_status == "paid"


@pytest.mark.asyncio
async def test_capture_lost_to_concurrent_run_is_skipped(session_factory, seed, dependencies, gateway, email_backend) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    order_id = await seed.order(scenario, delivery_date=date(2025, 12, 5), status=OrderStatusEnum.SCHEDULED)
    original_capture = gateway.capture

    async def capture_while_rival_commits(intent_id, *, idempotency_key):
        result = await original_capture(intent_id, idempotency_key=idempotency_key)
        async with session_factory() as rival:
            await rival.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(status=OrderStatusEnum.PAYMENT_CONFIRMED, payment_status="captured")
            )
            await rival.commit()
        return result

    gateway.capture = capture_while_rival_commits

    summary = await _run(session_factory, dependencies)

    assert "failed" not in summary.counts
    assert summary.details["skipped"][0]["stage"] == "capture"
    assert summary.details["skipped"][0]["reason"] == "advanced_concurrently"
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatusEnum.PAYMENT_CONFIRMED
    assert order.payment_status == "captured"
    assert email_backend.sent_messages == []


@pytest.mark.asyncio
async def test_captured_order_that_cannot_be_recorded_propagates(
    session_factory, seed, dependencies, gateway, email_backend, monkeypatch
) -> None:
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5))
    order_id = await seed.order(scenario, delivery_date=date(2025, 12, 5), status=OrderStatusEnum.SCHEDULED)
    original_transition = OrderStateMachine.transition

    async def transition_fails_after_capture(self, order, target_status, **kwargs):
        if target_status == OrderStatusEnum.PAYMENT_CONFIRMED:
            raise RuntimeError("database is locked")
        return await original_transition(self, order, target_status, **kwargs)

    monkeypatch.setattr(OrderStateMachine, "transition", transition_fails_after_capture)

    with pytest.raises(CapturedOrderPersistenceError) as excinfo:
        await _run(session_factory, dependencies)

    assert excinfo.value.order_id == order_id
    assert excinfo.value.intent_id == "pi_existing"
    assert len(gateway.captures) == 1
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatusEnum.SCHEDULED
    assert order.payment_status == PaymentStatusEnum.AUTHORIZED.value
    assert email_backend.sent_messages == []
