import base64
import json
from decimal import Decimal

import httpx
import pytest

from autogift_api.services.catalog import CatalogClient, CatalogLookupError
from autogift_api.services.fulfillment.client import (
    FulfillmentClient,
    FulfillmentSubmissionError,
    build_submission_payload,
    missing_address_fields,
)

from conftest import SHIPPING_ADDRESS

LINE_ITEMS = [{"product_id": "prod-b", "title": "Cookbook", "price": "30.00", "quantity": 1}]


def test_missing_address_fields() -> None:
    assert missing_address_fields(SHIPPING_ADDRESS) == []
    assert missing_address_fields({"name": "Riley", "city": " "}) == ["address_line1", "city", "state", "zip_code"]
    assert missing_address_fields(None) == ["name", "address_line1", "city", "state", "zip_code"]


def test_submission_payload_splits_recipient_name() -> None:
    payload = build_submission_payload(
        order_id="order-1",
        line_items=LINE_ITEMS,
        total=Decimal("30.00"),
        shipping_address={**SHIPPING_ADDRESS, "name": "Riley Ann Park", "phone_number": "555-0100"},
        gift_message="Enjoy",
    )

    assert payload["client_reference"] == "order-1"
    assert payload["max_price"] == 3000
    assert payload["products"] == [{"product_id": "prod-b", "quantity": 1}]
    assert payload["shipping_address"]["first_name"] == "Riley"
    assert payload["shipping_address"]["last_name"] == "Ann Park"
    assert payload["shipping_address"]["phone_number"] == "555-0100"
    assert payload["is_gift"] is True
    assert payload["gift_message"] == "Enjoy"


@pytest.mark.asyncio
async def test_fulfillment_submission_posts_order() -> None:
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(201, json={"request_id": "req_789"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = FulfillmentClient("https://fulfillment.test/", api_key="ful_key", http_client=http_client)
        submission = await client.submit_order(
            order_id="order-1",
            line_items=LINE_ITEMS,
            total=Decimal("30.00"),
            shipping_address=SHIPPING_ADDRESS,
        )

    assert submission.request_id == "req_789"
    request = captured["request"]
    assert str(request.url) == "https://fulfillment.test/v1/orders"
    assert request.headers["Idempotency-Key"] == "submit-order-1"
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"ful_key:").decode()
    assert json.loads(request.content)["client_reference"] == "order-1"


@pytest.mark.asyncio
async def test_fulfillment_rejects_incomplete_address_without_calling_service() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(201, json={"request_id": "req_1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = FulfillmentClient("https://fulfillment.test", http_client=http_client)
        with pytest.raises(FulfillmentSubmissionError) as excinfo:
            await client.submit_order(
                order_id="order-1",
                line_items=LINE_ITEMS,
                total=Decimal("30.00"),
                shipping_address={"name": "Riley"},
            )

    assert "address_line1" in str(excinfo.value)
    assert calls == []


@pytest.mark.asyncio
async def test_fulfillment_http_errors_are_wrapped() -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503))) as http_client:
        client = FulfillmentClient("https://fulfillment.test", http_client=http_client)
        with pytest.raises(FulfillmentSubmissionError) as excinfo:
            await client.submit_order(
                order_id="order-1",
                line_items=LINE_ITEMS,
                total=Decimal("30.00"),
                shipping_address=SHIPPING_ADDRESS,
            )

    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_fulfillment_requires_request_id() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "queued"}))
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = FulfillmentClient("https://fulfillment.test", http_client=http_client)
        with pytest.raises(FulfillmentSubmissionError):
            await client.submit_order(
                order_id="order-1",
                line_items=LINE_ITEMS,
                total=Decimal("30.00"),
                shipping_address=SHIPPING_ADDRESS,
            )


@pytest.mark.asyncio
async def test_catalog_search_sends_budget_filters() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"products": [{"product_id": "cat-1", "title": "Tea sampler", "price": 22}, "garbage"]},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = CatalogClient("https://catalog.test", http_client=http_client)
        products = await client.search("birthday gift", max_price=Decimal("50"), min_price=Decimal("10"))

    assert products == [{"product_id": "cat-1", "title": "Tea sampler", "price": 22}]
    assert bodies[0]["query"] == "birthday gift"
    assert bodies[0]["filters"] == {"max_price": 50.0, "min_price": 10.0}


@pytest.mark.asyncio
async def test_catalog_errors_are_wrapped() -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as http_client:
        client = CatalogClient("https://catalog.test", http_client=http_client)
        with pytest.raises(CatalogLookupError):
            await client.search("gift", max_price=Decimal("50"))
