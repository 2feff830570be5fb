"""Client for the third-party fulfillment submission service."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Sequence

import httpx
from loguru import logger

from autogift_api.core.settings import Settings, get_settings
from autogift_api.services.payments import to_minor_units

REQUIRED_ADDRESS_FIELDS = ("name", "address_line1", "city", "state", "zip_code")


class FulfillmentSubmissionError(RuntimeError):
    """Raised when an order cannot be handed to the fulfillment service."""

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


@dataclass(slots=True)
class FulfillmentSubmission:
    request_id: str
    payload: Mapping[str, Any]


def missing_address_fields(address: Mapping[str, Any] | None) -> list[str]:
    if not isinstance(address, Mapping):
        return list(REQUIRED_ADDRESS_FIELDS)
    missing: list[str] = []
    for key in REQUIRED_ADDRESS_FIELDS:
        value = address.get(key)
        if not isinstance(value, str) or not value.strip():
            missing.append(key)
    return missing


def _split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.strip().split(" ")
    return parts[0], " ".join(parts[1:])


def build_submission_payload(
    *,
    order_id: str,
    line_items: Sequence[Mapping[str, Any]],
    total: Decimal,
    shipping_address: Mapping[str, Any],
    gift_message: str | None = None,
) -> dict[str, Any]:
    first_name, last_name = _split_name(str(shipping_address.get("name", "")))
    return {
        "client_reference": order_id,
        "products": [
            {"product_id": item.get("product_id"), "quantity": int(item.get("quantity") or 1)}
            for item in line_items
        ],
        "max_price": to_minor_units(total),
        "shipping_address": {
            "first_name": first_name,
            "last_name": last_name,
            "address_line1": shipping_address.get("address_line1"),
            "address_line2": shipping_address.get("address_line2") or "",
            "zip_code": shipping_address.get("zip_code"),
            "city": shipping_address.get("city"),
            "state": shipping_address.get("state"),
            "country": shipping_address.get("country") or "US",
            "phone_number": shipping_address.get("phone_number") or shipping_address.get("phone") or "",
        },
        "is_gift": True,
        "gift_message": gift_message or "",
    }


class FulfillmentClient:
    """Submits paid orders to the external purchasing and shipping service."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "FulfillmentClient":
        resolved = settings or get_settings()
        return cls(
            resolved.fulfillment_api_url,
            api_key=resolved.fulfillment_api_key,
            timeout=resolved.fulfillment_timeout_seconds,
        )

    async def submit_order(
        self,
        *,
        order_id: str,
        line_items: Sequence[Mapping[str, Any]],
        total: Decimal,
        shipping_address: Mapping[str, Any] | None,
        gift_message: str | None = None,
    ) -> FulfillmentSubmission:
        """Submit one order, keyed by ``order_id``; returns the provider request id."""

        missing = missing_address_fields(shipping_address)
        if missing:
            raise FulfillmentSubmissionError(
                f"Incomplete shipping address, missing: {', '.join(missing)}"
            )
        if not line_items:
            raise FulfillmentSubmissionError("Order has no line items to submit")

        payload = build_submission_payload(
            order_id=order_id,
            line_items=line_items,
            total=total,
            shipping_address=shipping_address or {},
            gift_message=gift_message,
        )
        url = f"{self._base_url}/v1/orders"
        headers = {"Idempotency-Key": f"submit-{order_id}"}
        auth = httpx.BasicAuth(self._api_key, "") if self._api_key else None

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(url, json=payload, headers=headers, auth=auth)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Fulfillment submission rejected",
                order_id=order_id,
                status_code=exc.response.status_code,
            )
            raise FulfillmentSubmissionError(
                f"Fulfillment service returned {exc.response.status_code}",
                url=url,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Fulfillment submission failed", order_id=order_id, error=str(exc))
            raise FulfillmentSubmissionError(str(exc) or exc.__class__.__name__, url=url) from exc
        except ValueError as exc:
            raise FulfillmentSubmissionError("Fulfillment service returned invalid JSON", url=url) from exc
        finally:
            if owns_client:
                await client.aclose()

        request_id = body.get("request_id") if isinstance(body, Mapping) else None
        if not isinstance(request_id, str) or not request_id:
            raise FulfillmentSubmissionError("Fulfillment response did not include a request id", url=url)

        logger.info("Submitted order to fulfillment", order_id=order_id, request_id=request_id)
        return FulfillmentSubmission(request_id=request_id, payload=body)


__all__ = [
    "FulfillmentClient",
    "FulfillmentSubmission",
    "FulfillmentSubmissionError",
    "REQUIRED_ADDRESS_FIELDS",
    "build_submission_payload",
    "missing_address_fields",
]
