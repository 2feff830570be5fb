from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from autogift_api.services.payments import PaymentGatewayError, StripeService, to_minor_units


def test_minor_units_round_half_up() -> None:
    assert to_minor_units(Decimal("25.50")) == 2550
    assert to_minor_units(Decimal("19.995")) == 2000
    assert to_minor_units(Decimal("0")) == 0


@pytest.mark.asyncio
async def test_authorize_places_manual_capture_hold(monkeypatch) -> None:
    calls: list[dict] = []

    def fake_create(**params):
        calls.append(params)
        return SimpleNamespace(id="pi_123", status="requires_capture")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    service = StripeService("sk_test_123", api_version="2024-06-20")

    authorization = await service.authorize(
        amount=Decimal("25.50"),
        currency="USD",
        payment_method_ref="pm_card",
        customer_ref="cus_owner",
        idempotency_key="autogift-rule-2025-12-05",
        metadata={"isAutoGift": "true"},
    )

    assert authorization.intent_id == "pi_123"
    assert authorization.amount_cents == 2550
    params = calls[0]
    assert params["amount"] == 2550
    assert params["currency"] == "usd"
    assert params["capture_method"] == "manual"
    assert params["confirm"] is True
    assert params["off_session"] is True
    assert params["customer"] == "cus_owner"
    assert params["idempotency_key"] == "autogift-rule-2025-12-05"
    assert params["api_key"] == "sk_test_123"
    assert params["stripe_version"] == "2024-06-20"
    assert params["metadata"] == {"isAutoGift": "true"}


@pytest.mark.asyncio
async def test_authorize_wraps_card_errors(monkeypatch) -> None:
    def fake_create(**params):
        raise stripe.CardError("Your card was declined.", None, "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    service = StripeService("sk_test_123")

    with pytest.raises(PaymentGatewayError) as excinfo:
        await service.authorize(
            amount=Decimal("10"),
            currency="usd",
            payment_method_ref="pm_card",
            customer_ref=None,
            idempotency_key="key",
        )

    assert excinfo.value.code == "card_declined"
    assert "declined" in str(excinfo.value)


@pytest.mark.asyncio
async def test_authorize_rejects_unexpected_intent_status(monkeypatch) -> None:
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "create",
        lambda **params: SimpleNamespace(id="pi_456", status="requires_action"),
    )
    service = StripeService("sk_test_123")

    with pytest.raises(PaymentGatewayError) as excinfo:
        await service.authorize(
            amount=Decimal("10"),
            currency="usd",
            payment_method_ref="pm_card",
            customer_ref=None,
            idempotency_key="key",
        )

    assert excinfo.value.code == "unexpected_status"


@pytest.mark.asyncio
async def test_capture_uses_idempotency_key(monkeypatch) -> None:
    calls: list[tuple[str, dict]] = []

    def fake_capture(intent_id, **options):
        calls.append((intent_id, options))
        return SimpleNamespace(id=intent_id, status="succeeded", amount_received=2550)

    monkeypatch.setattr(stripe.PaymentIntent, "capture", fake_capture)
    service = StripeService("sk_test_123")

    capture = await service.capture("pi_123", idempotency_key="capture-order-1")

    assert capture.amount_received_cents == 2550
    assert calls == [("pi_123", {"api_key": "sk_test_123", "idempotency_key": "capture-order-1"})]


@pytest.mark.asyncio
async def test_setup_intent_round_trip(monkeypatch) -> None:
    monkeypatch.setattr(stripe.SetupIntent, "create", lambda **params: SimpleNamespace(id="seti_1"))
    monkeypatch.setattr(
        stripe.SetupIntent,
        "retrieve",
        lambda setup_intent_id, **options: SimpleNamespace(payment_method=SimpleNamespace(id="pm_saved")),
    )
    service = StripeService("sk_test_123")

    setup_intent_id = await service.create_setup_intent(
        payment_method_ref="pm_card",
        customer_ref="cus_owner",
        idempotency_key="autogift-rule-2025-12-20",
    )

    assert setup_intent_id == "seti_1"
    assert await service.retrieve_setup_payment_method(setup_intent_id) == "pm_saved"
