"""Typed gift product snapshots stored on executions and orders."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field


class GiftProduct(BaseModel):
    """A product as it was when it was proposed for a gift."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_id: str
    title: str
    price: Decimal = Field(ge=0)
    image_url: str | None = None
    category: str | None = None
    retailer: str | None = None
    rating: float = 0.0
    review_count: int = 0
    source: Literal["wishlist", "catalog"] = "catalog"

    def as_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def load_products(raw: Iterable[Mapping[str, Any]] | None) -> list[GiftProduct]:
    if not raw:
        return []
    return [GiftProduct.model_validate(item) for item in raw]


def dump_products(products: Iterable[GiftProduct]) -> list[dict[str, Any]]:
    return [product.as_json() for product in products]


def products_total(products: Iterable[GiftProduct]) -> Decimal:
    return sum((product.price for product in products), Decimal("0"))


class GiftPreferences(BaseModel):
    """Owner-stated constraints on what the pipeline may buy."""

    model_config = ConfigDict(extra="ignore")

    categories: list[str] = Field(default_factory=list)
    min_price: Decimal | None = None
    exclude_items: list[str] = Field(default_factory=list)


__all__ = ["GiftPreferences", "GiftProduct", "dump_products", "load_products", "products_total"]
