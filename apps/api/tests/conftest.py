import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from autogift_api import models  # noqa: E402,F401
from autogift_api.api.dependencies.pipeline import get_pipeline_dependencies  # noqa: E402
from autogift_api.app import create_app  # noqa: E402
from autogift_api.db.base import Base  # noqa: E402
from autogift_api.db.session import get_session  # noqa: E402
from autogift_api.domain.calendar import PipelineTiming  # noqa: E402
from autogift_api.models.execution import ExecutionStatusEnum, GiftExecution  # noqa: E402
from autogift_api.models.gifting_rule import GiftEventTypeEnum, GiftingRule  # noqa: E402
from autogift_api.models.order import Order, OrderStatusEnum, PaymentStatusEnum  # noqa: E402
from autogift_api.models.user import User  # noqa: E402
from autogift_api.models.wishlist import WishlistItem  # noqa: E402
from autogift_api.services.fulfillment import FulfillmentSubmission, FulfillmentSubmissionError  # noqa: E402
from autogift_api.services.notifications import InMemoryEmailBackend  # noqa: E402
from autogift_api.services.payments import (  # noqa: E402
    PaymentAuthorization,
    PaymentCapture,
    PaymentGatewayError,
    to_minor_units,
)
from autogift_api.services.pipeline import PipelineDependencies  # noqa: E402

SHIPPING_ADDRESS = {
    "name": "Riley Park",
    "address_line1": "12 Elm Street",
    "city": "Portland",
    "state": "OR",
    "zip_code": "97201",
    "country": "US",
}


class FakeGateway:
    """In-memory payment gateway. Queue errors in ``authorize_errors`` / ``capture_errors``."""

    def __init__(self) -> None:
        self.authorizations: list[dict[str, Any]] = []
        self.captures: list[dict[str, Any]] = []
        self.setup_intents: list[dict[str, Any]] = []
        self.authorize_errors: list[Exception] = []
        self.capture_errors: list[Exception] = []
        self.saved_payment_method: str | None = "pm_saved"

    async def authorize(
        self,
        *,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        customer_ref: str | None,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> PaymentAuthorization:
        self.authorizations.append(
            {
                "amount": Decimal(amount),
                "currency": currency,
                "payment_method_ref": payment_method_ref,
                "customer_ref": customer_ref,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata or {}),
            }
        )
        if self.authorize_errors:
            raise self.authorize_errors.pop(0)
        return PaymentAuthorization(
            intent_id=f"pi_{len(self.authorizations)}",
            status="requires_capture",
            amount_cents=to_minor_units(amount),
            currency=currency,
        )

    async def capture(self, intent_id: str, *, idempotency_key: str) -> PaymentCapture:
        self.captures.append({"intent_id": intent_id, "idempotency_key": idempotency_key})
        if self.capture_errors:
            raise self.capture_errors.pop(0)
        return PaymentCapture(intent_id=intent_id, status="succeeded", amount_received_cents=0)

    async def create_setup_intent(
        self,
        *,
        payment_method_ref: str,
        customer_ref: str | None,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        self.setup_intents.append(
            {
                "payment_method_ref": payment_method_ref,
                "customer_ref": customer_ref,
                "idempotency_key": idempotency_key,
            }
        )
        return f"seti_{len(self.setup_intents)}"

    async def retrieve_setup_payment_method(self, setup_intent_id: str) -> str | None:
        return self.saved_payment_method


def card_declined(message: str = "Your card was declined.") -> PaymentGatewayError:
    return PaymentGatewayError(message, code="card_declined", decline_code="insufficient_funds")


class FakeFulfillment:
    def __init__(self) -> None:
        self.submissions: list[dict[str, Any]] = []
        self.errors: list[Exception] = []

    async def submit_order(
        self,
        *,
        order_id: str,
        line_items,
        total: Decimal,
        shipping_address,
        gift_message: str | None = None,
    ) -> FulfillmentSubmission:
        self.submissions.append(
            {
                "order_id": order_id,
                "line_items": list(line_items),
                "total": total,
                "shipping_address": shipping_address,
                "gift_message": gift_message,
            }
        )
        if self.errors:
            raise self.errors.pop(0)
        return FulfillmentSubmission(request_id=f"req_{len(self.submissions)}", payload={})


def fulfillment_down() -> FulfillmentSubmissionError:
    return FulfillmentSubmissionError("Fulfillment service returned 503", status_code=503)


class FakeCatalog:
    def __init__(self, products: list[dict[str, Any]] | None = None) -> None:
        self.products = products or []
        self.fallback_products: list[dict[str, Any]] | None = None
        self.queries: list[str] = []

    async def search(self, query: str, *, max_price: Decimal, min_price: Decimal | None = None, limit: int = 20):
        self.queries.append(query)
        if self.fallback_products is not None and len(self.queries) > 1:
            return list(self.fallback_products)
        return list(self.products)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fulfillment() -> FakeFulfillment:
    return FakeFulfillment()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def email_backend() -> InMemoryEmailBackend:
    return InMemoryEmailBackend()


@pytest.fixture
def timing() -> PipelineTiming:
    return PipelineTiming()


@pytest.fixture
def dependencies(gateway, fulfillment, catalog, timing, email_backend) -> PipelineDependencies:
    return PipelineDependencies(
        gateway=gateway,
        fulfillment=fulfillment,
        catalog=catalog,
        timing=timing,
        email_backend=email_backend,
        frontend_url="https://gifts.test",
    )


@pytest_asyncio.fixture
async def app_with_db(session_factory, dependencies):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    async def override_get_pipeline_dependencies():
        return dependencies

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_pipeline_dependencies] = override_get_pipeline_dependencies

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@dataclass
class GiftScenario:
    """Ids of one owner, one recipient and one gifting rule."""

    owner_id: UUID
    recipient_id: UUID | None
    rule_id: UUID
    wishlist_ids: list[UUID] = field(default_factory=list)


class Seeder:
    """Inserts pipeline rows, one committed session per call."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def _add(self, *rows: Any) -> None:
        async with self._session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def scenario(
        self,
        *,
        scheduled_date: date | None,
        event_type: GiftEventTypeEnum = GiftEventTypeEnum.BIRTHDAY,
        budget: str = "50",
        wishlist_prices: tuple[str, ...] = ("15.00", "30.00", "80.00"),
        recipient_address: dict[str, Any] | None = SHIPPING_ADDRESS,
        with_recipient: bool = True,
        payment_method_ref: str | None = "pm_card",
        event_anchor: str | None = None,
        holiday_key: str | None = None,
    ) -> GiftScenario:
        owner = User(
            id=uuid4(),
            email=f"owner-{uuid4().hex[:8]}@example.com",
            display_name="Jordan",
            stripe_customer_id="cus_owner",
        )
        rows: list[Any] = [owner]
        recipient = None
        if with_recipient:
            recipient = User(
                id=uuid4(),
                email=f"recipient-{uuid4().hex[:8]}@example.com",
                display_name="Riley",
                dob="1990-12-08",
                shipping_address=recipient_address,
            )
            rows.append(recipient)

        rule = GiftingRule(
            id=uuid4(),
            owner_id=owner.id,
            recipient_id=recipient.id if recipient else None,
            pending_recipient_email=None if recipient else "riley@example.com",
            pending_recipient_name=None if recipient else "Riley",
            event_type=event_type,
            holiday_key=holiday_key,
            event_anchor=event_anchor,
            budget_limit=Decimal(budget),
            payment_method_ref=payment_method_ref,
            scheduled_date=scheduled_date,
            active=True,
        )
        rows.append(rule)

        wishlist_ids: list[UUID] = []
        if recipient is not None:
            for index, price in enumerate(wishlist_prices):
                item = WishlistItem(
                    id=uuid4(),
                    user_id=recipient.id,
                    product_id=f"prod-{price}",
                    title=f"Wishlist item {index + 1}",
                    price=Decimal(price),
                )
                wishlist_ids.append(item.id)
                rows.append(item)

        await self._add(*rows)
        return GiftScenario(
            owner_id=owner.id,
            recipient_id=recipient.id if recipient else None,
            rule_id=rule.id,
            wishlist_ids=wishlist_ids,
        )

    async def execution(
        self,
        scenario: GiftScenario,
        *,
        occurrence_date: date,
        status: ExecutionStatusEnum = ExecutionStatusEnum.PENDING_APPROVAL,
        products: list[dict[str, Any]] | None = None,
        **values: Any,
    ) -> UUID:
        proposal = products if products is not None else [
            {"product_id": "prod-a", "title": "Candle set", "price": "15.00", "source": "wishlist"},
            {"product_id": "prod-b", "title": "Cookbook", "price": "30.00", "source": "wishlist"},
        ]
        execution = GiftExecution(
            id=uuid4(),
            rule_id=scenario.rule_id,
            owner_id=scenario.owner_id,
            occurrence_date=occurrence_date,
            status=status,
            suggested_products=proposal,
            total_amount=sum((Decimal(item["price"]) for item in proposal), Decimal("0")),
            **values,
        )
        await self._add(execution)
        return execution.id

    async def order(
        self,
        scenario: GiftScenario,
        *,
        delivery_date: date,
        status: OrderStatusEnum,
        payment_status: str = PaymentStatusEnum.AUTHORIZED.value,
        hold: bool = True,
        **values: Any,
    ) -> UUID:
        order_id = uuid4()
        fields: dict[str, Any] = {
            "total": Decimal("30.00"),
            "currency": "usd",
            "payment_method_ref": "pm_card",
            "payment_authorization_ref": "pi_existing" if payment_status == PaymentStatusEnum.AUTHORIZED.value else None,
            "shipping_address": dict(SHIPPING_ADDRESS),
            "line_items": [{"product_id": "prod-b", "title": "Cookbook", "price": "30.00", "quantity": 1}],
        }
        fields.update(values)
        order = Order(
            id=order_id,
            order_number=f"AG{order_id.hex[:10].upper()}",
            user_id=scenario.owner_id,
            gifting_rule_id=scenario.rule_id,
            recipient_id=scenario.recipient_id,
            status=status,
            payment_status=payment_status,
            is_auto_gift=True,
            scheduled_delivery_date=delivery_date,
            hold_for_scheduled_delivery=hold,
            **fields,
        )
        await self._add(order)
        return order_id


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


def utc(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)
