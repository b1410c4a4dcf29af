"""Product recommendations for a chat message: intent, fallback ladder, summary text."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from shopping_chat.catalog import CatalogStore, Product
from shopping_chat.intent import (
    NO_INTENT,
    Intent,
    brand_display_name,
    category_display_name,
    color_display_name,
    extract_intent,
    search_query,
    should_recommend,
)
from shopping_chat.query_plan import MIN_RESULTS, CatalogQueryAttempt, synthesize


_LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RECOMMENDATIONS = 6
NO_RESULTS_SUMMARY = "抱歉，没有找到符合您需求的商品。您可以尝试调整搜索条件或浏览其他商品。"
NO_INTENT_SUMMARY = "未检测到商品相关需求"


@dataclass(frozen=True)
class RecommendationResult:
    has_recommendations: bool
    products: tuple[Product, ...] = field(default_factory=tuple)
    summary_text: str = ""
    search_query: str = ""
    source_intent: Intent = NO_INTENT

    @property
    def product_ids(self) -> list[int]:
        return [product.id for product in self.products]

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasRecommendations": self.has_recommendations,
            "products": [product.to_public() for product in self.products],
            "summaryText": self.summary_text,
            "searchQuery": self.search_query,
            "intent": self.source_intent.to_dict(),
        }


def _price_line(intent: Intent) -> str | None:
    price = intent.price_range
    if price is None:
        return None
    if price.min is not None and price.max is not None:
        return f"{price.min}-{price.max}元"
    if price.max is not None:
        return f"{price.max}元以下"
    if price.min is not None:
        return f"{price.min}元以上"
    return None


def compose_summary(intent: Intent, product_count: int) -> str:
    if product_count <= 0:
        return NO_RESULTS_SUMMARY

    lines = [f"根据您的需求，我为您推荐了{product_count}款商品：", ""]
    category = category_display_name(intent.category)
    if category:
        lines.append(f"**类别**: {category}")
    color = color_display_name(intent.color)
    if color:
        lines.append(f"**颜色**: {color}")
    brand = brand_display_name(intent.brand)
    if brand:
        lines.append(f"**品牌**: {brand}")
    price = _price_line(intent)
    if price:
        lines.append(f"**价格**: {price}")
    lines.append("")
    lines.append("这些商品都经过精心筛选，具有良好的性价比和用户评价。您可以点击查看详情或直接加入购物车。")
    return "\n".join(lines)


class ProductRecommender:
    def __init__(self, catalog: CatalogStore, *, max_recommendations: int = DEFAULT_MAX_RECOMMENDATIONS) -> None:
        self.catalog = catalog
        self.max_recommendations = max(1, int(max_recommendations))

    @staticmethod
    def should_recommend(text: str) -> bool:
        return should_recommend(text)

    async def _run_attempt(self, attempt: CatalogQueryAttempt) -> list[Product]:
        try:
            return await self.catalog.find(attempt.filters, attempt.order, attempt.limit)
        except Exception:
            _LOGGER.warning("Catalog query attempt %r failed; treating it as empty.", attempt.kind, exc_info=True)
            return []

    async def collect(self, intent: Intent) -> list[Product]:
        """Run the query ladder for an intent and merge results, first occurrence wins."""
        target = self.max_recommendations
        products: list[Product] = []
        seen: set[int] = set()

        for attempt in synthesize(intent, limit=target):
            if not attempt.should_run(len(products), target=target, minimum=MIN_RESULTS):
                continue
            for product in await self._run_attempt(attempt):
                if product.id in seen:
                    continue
                seen.add(product.id)
                products.append(product)
                if len(products) >= target:
                    break
            if len(products) >= target:
                break

        return products

    async def recommend(self, text: str) -> RecommendationResult:
        intent = extract_intent(text)
        if not intent.has_intent:
            _LOGGER.info("No shopping intent detected; skipping recommendations.")
            return RecommendationResult(
                has_recommendations=False,
                summary_text=NO_INTENT_SUMMARY,
                source_intent=intent,
            )

        products = await self.collect(intent)
        _LOGGER.info(
            "Recommendations ready: category=%s color=%s brand=%s found=%d",
            intent.category,
            intent.color,
            intent.brand,
            len(products),
        )
        return RecommendationResult(
            has_recommendations=True,
            products=tuple(products),
            summary_text=compose_summary(intent, len(products)),
            search_query=search_query(intent),
            source_intent=intent,
        )
