"""Gift candidate lookup: recipient wishlist first, catalog search second."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.models.gifting_rule import GiftingRule
from autogift_api.models.wishlist import WishlistItem
from autogift_api.schemas.gifts import GiftPreferences, GiftProduct
from autogift_api.services.catalog import CatalogClient, CatalogLookupError

MAX_CANDIDATES = 3

_OCCASION_KEYWORDS = ("birthday", "anniversary", "wedding", "graduation")


def _occasion_keyword(occasion: str) -> str | None:
    lowered = occasion.lower()
    for keyword in _OCCASION_KEYWORDS:
        if keyword in lowered:
            return keyword
    return None


def build_search_query(occasion: str, categories: Sequence[str] = ()) -> str:
    keyword = _occasion_keyword(occasion)
    if keyword:
        query = f"{keyword} gift"
    elif occasion and occasion.lower() not in {"holiday", "custom"}:
        query = f"{occasion.replace('_', ' ').lower()} gift"
    else:
        query = "gift"
    if categories:
        query = f"{' '.join(categories)} {query}"
    return query


def build_fallback_query(occasion: str) -> str:
    keyword = _occasion_keyword(occasion)
    if keyword in {"birthday", "wedding"}:
        return f"{keyword} gift popular"
    if keyword:
        return f"{keyword} gift ideas"
    return "popular gift ideas"


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def filter_and_rank(
    products: Iterable[Mapping[str, Any]],
    budget: Decimal,
    preferences: GiftPreferences,
    *,
    limit: int = MAX_CANDIDATES,
) -> list[GiftProduct]:
    """Keep products priced in (0, budget] that respect preferences, best rated first."""

    excluded = [item.lower() for item in preferences.exclude_items if item]
    kept: list[GiftProduct] = []
    for raw in products:
        price = _to_decimal(raw.get("price"))
        if price <= 0 or price > budget:
            continue
        if preferences.min_price is not None and price < preferences.min_price:
            continue
        title = str(raw.get("title") or "")
        if any(keyword in title.lower() for keyword in excluded):
            continue
        if not raw.get("product_id"):
            continue
        kept.append(
            GiftProduct(
                product_id=str(raw["product_id"]),
                title=title,
                price=price,
                image_url=raw.get("image") or raw.get("image_url"),
                category=raw.get("category"),
                retailer=raw.get("retailer"),
                rating=_to_float(raw.get("stars", raw.get("rating"))),
                review_count=_to_int(raw.get("num_reviews", raw.get("review_count"))),
                source="catalog",
            )
        )
    kept.sort(key=lambda product: (product.rating, product.review_count), reverse=True)
    return kept[:limit]


def _wishlist_product(item: WishlistItem) -> GiftProduct:
    return GiftProduct(
        product_id=item.product_id,
        title=item.title,
        price=Decimal(item.price),
        image_url=item.image_url,
        category=item.category,
        retailer=item.retailer,
        rating=item.rating or 0.0,
        review_count=item.review_count or 0,
        source="wishlist",
    )


class GiftSelector:
    def __init__(self, session: AsyncSession, catalog: CatalogClient | None = None) -> None:
        self._session = session
        self._catalog = catalog

    async def _affordable_wishlist(self, user_id: UUID | None, budget: Decimal) -> list[WishlistItem]:
        if user_id is None:
            return []
        stmt = select(WishlistItem).where(
            WishlistItem.user_id == user_id,
            WishlistItem.price.is_not(None),
            WishlistItem.price > 0,
            WishlistItem.price <= budget,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def reminder_candidates(self, rule: GiftingRule, occasion: str) -> list[GiftProduct]:
        """Cheapest wishlist items within budget, else catalog suggestions."""

        budget = Decimal(rule.budget_limit)
        items = await self._affordable_wishlist(rule.recipient_id, budget)
        if items:
            items.sort(key=lambda item: Decimal(item.price))
            return [_wishlist_product(item) for item in items[:MAX_CANDIDATES]]
        try:
            return await self.catalog_candidates(rule, occasion)
        except CatalogLookupError:
            logger.warning("Catalog unavailable for reminder candidates", rule_id=str(rule.id))
            return []

    async def best_affordable(self, rule: GiftingRule, occasion: str) -> GiftProduct | None:
        """Highest-priced wishlist item within budget, else the top catalog match.

        Raises:
            CatalogLookupError: If the wishlist is empty and the catalog is unreachable.
        """

        budget = Decimal(rule.budget_limit)
        items = await self._affordable_wishlist(rule.recipient_id, budget)
        if items:
            best = max(items, key=lambda item: Decimal(item.price))
            return _wishlist_product(best)
        candidates = await self.catalog_candidates(rule, occasion)
        return candidates[0] if candidates else None

    async def catalog_candidates(self, rule: GiftingRule, occasion: str) -> list[GiftProduct]:
        if self._catalog is None:
            return []
        budget = Decimal(rule.budget_limit)
        preferences = GiftPreferences.model_validate(rule.gift_preferences or {})

        query = build_search_query(occasion, preferences.categories)
        products = await self._catalog.search(query, max_price=budget, min_price=preferences.min_price)
        ranked = filter_and_rank(products, budget, preferences)
        if ranked:
            return ranked

        fallback = build_fallback_query(occasion)
        logger.info("No catalog matches, trying fallback query", rule_id=str(rule.id), query=fallback)
        products = await self._catalog.search(fallback, max_price=budget)
        return filter_and_rank(products, budget, preferences)


__all__ = [
    "GiftSelector",
    "MAX_CANDIDATES",
    "build_fallback_query",
    "build_search_query",
    "filter_and_rank",
]
