"""Product search against the external catalog service."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

import httpx
from loguru import logger

from autogift_api.core.settings import Settings, get_settings


class CatalogLookupError(RuntimeError):
    """Raised when the catalog search cannot be completed."""


class CatalogClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CatalogClient":
        resolved = settings or get_settings()
        return cls(resolved.catalog_api_url, timeout=resolved.catalog_timeout_seconds)

    async def search(
        self,
        query: str,
        *,
        max_price: Decimal,
        min_price: Decimal | None = None,
        limit: int = 20,
    ) -> list[Mapping[str, Any]]:
        """Return raw product dicts (``product_id``, ``title``, ``price``, ``stars``, ...)."""

        filters: dict[str, Any] = {"max_price": float(max_price)}
        if min_price is not None:
            filters["min_price"] = float(min_price)
        body = {"query": query, "page": 1, "limit": limit, "filters": filters}

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(f"{self._base_url}/v1/products/search", json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Catalog search failed", query=query, error=str(exc))
            raise CatalogLookupError(f"Product search failed: {exc}") from exc
        except ValueError as exc:
            raise CatalogLookupError("Catalog returned invalid JSON") from exc
        finally:
            if owns_client:
                await client.aclose()

        products = payload.get("products") if isinstance(payload, Mapping) else None
        if not isinstance(products, list):
            return []
        return [product for product in products if isinstance(product, Mapping)]


__all__ = ["CatalogClient", "CatalogLookupError"]
