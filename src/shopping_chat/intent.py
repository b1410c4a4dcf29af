"""Rule-based shopping intent extraction from free-form chat messages."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any


# Synonym tables are scanned in declaration order; the first synonym found in the
# message wins, so longer or more specific literals are declared before their
# prefixes ("运动鞋" before "鞋").
CATEGORY_SYNONYMS: dict[str, str] = {
    "运动鞋": "shoes",
    "鞋子": "shoes",
    "鞋": "shoes",
    "高跟鞋": "shoes",
    "平底鞋": "shoes",
    "靴子": "shoes",
    "sneakers": "shoes",
    "sneaker": "shoes",
    "shoes": "shoes",
    "shoe": "shoes",
    "boots": "shoes",
    "手机": "electronics",
    "iPhone": "electronics",
    "苹果手机": "electronics",
    "三星": "electronics",
    "华为": "electronics",
    "小米": "electronics",
    "电脑": "electronics",
    "笔记本": "electronics",
    "MacBook": "electronics",
    "phone": "electronics",
    "laptop": "electronics",
    "衣服": "clothing",
    "服装": "clothing",
    "上衣": "clothing",
    "裤子": "clothing",
    "裙子": "clothing",
    "外套": "clothing",
    "jacket": "clothing",
    "dress": "clothing",
    "pants": "clothing",
    "包包": "bags",
    "包": "bags",
    "手提包": "bags",
    "背包": "bags",
    "handbag": "bags",
    "backpack": "bags",
    "bag": "bags",
    "化妆品": "beauty",
    "护肤品": "beauty",
    "口红": "beauty",
    "香水": "beauty",
    "lipstick": "beauty",
    "perfume": "beauty",
}

COLOR_SYNONYMS: dict[str, str] = {
    "红色": "red",
    "红": "red",
    "黑色": "black",
    "黑": "black",
    "白色": "white",
    "白": "white",
    "蓝色": "blue",
    "蓝": "blue",
    "绿色": "green",
    "绿": "green",
    "黄色": "yellow",
    "黄": "yellow",
    "粉色": "pink",
    "粉": "pink",
    "紫色": "purple",
    "紫": "purple",
    "灰色": "gray",
    "灰": "gray",
    "棕色": "brown",
    "棕": "brown",
    "red": "red",
    "black": "black",
    "white": "white",
    "blue": "blue",
    "green": "green",
    "yellow": "yellow",
    "pink": "pink",
    "purple": "purple",
    "gray": "gray",
    "grey": "gray",
    "brown": "brown",
}

BRAND_SYNONYMS: dict[str, str] = {
    "Nike": "nike",
    "耐克": "nike",
    "Adidas": "adidas",
    "阿迪达斯": "adidas",
    "Apple": "apple",
    "苹果": "apple",
    "Samsung": "samsung",
    "三星": "samsung",
    "华为": "huawei",
    "Huawei": "huawei",
    "小米": "xiaomi",
    "Xiaomi": "xiaomi",
    "LV": "louis_vuitton",
    "路易威登": "louis_vuitton",
    "Gucci": "gucci",
    "古驰": "gucci",
    "Chanel": "chanel",
    "香奈儿": "chanel",
}

CATEGORY_DISPLAY_NAMES: dict[str, str] = {
    "shoes": "鞋类",
    "electronics": "电子产品",
    "clothing": "服装",
    "bags": "包包",
    "beauty": "美妆",
}

COLOR_DISPLAY_NAMES: dict[str, str] = {
    "red": "红色",
    "black": "黑色",
    "white": "白色",
    "blue": "蓝色",
    "green": "绿色",
    "yellow": "黄色",
    "pink": "粉色",
    "purple": "紫色",
    "gray": "灰色",
    "brown": "棕色",
}

BRAND_DISPLAY_NAMES: dict[str, str] = {
    "nike": "Nike",
    "adidas": "Adidas",
    "apple": "Apple",
    "samsung": "Samsung",
    "huawei": "华为",
    "xiaomi": "小米",
    "louis_vuitton": "Louis Vuitton",
    "gucci": "Gucci",
    "chanel": "Chanel",
}

# (pattern, kind, multiplier). Only the first pattern that matches is used.
_PRICE_PATTERNS: list[tuple[re.Pattern[str], str, int]] = [
    (re.compile(r"(\d+)块以下"), "max", 1),
    (re.compile(r"(\d+)元以下"), "max", 1),
    (re.compile(r"(\d+)以下"), "max", 1),
    (re.compile(r"(\d+)块以上"), "min", 1),
    (re.compile(r"(\d+)元以上"), "min", 1),
    (re.compile(r"(\d+)以上"), "min", 1),
    (re.compile(r"(\d+)到(\d+)"), "range", 1),
    (re.compile(r"(\d+)-(\d+)"), "range", 1),
    (re.compile(r"(\d+)k以下"), "max", 1000),
    (re.compile(r"(\d+)k以上"), "min", 1000),
    (re.compile(r"between\s*\$?(\d+)\s*(?:and|to)\s*\$?(\d+)"), "range", 1),
    (re.compile(r"(?:under|below|less than)\s*\$?(\d+)k\b"), "max", 1000),
    (re.compile(r"(?:under|below|less than)\s*\$?(\d+)"), "max", 1),
    (re.compile(r"(?:over|above|more than)\s*\$?(\d+)k\b"), "min", 1000),
    (re.compile(r"(?:over|above|more than)\s*\$?(\d+)"), "min", 1),
]

RECOMMENDATION_KEYWORDS: tuple[str, ...] = (
    "推荐",
    "建议",
    "介绍",
    "有什么",
    "哪些",
    "选择",
    "买什么",
    "推荐一下",
    "给我推荐",
    "帮我推荐",
    "有什么好的",
    "性价比",
    "便宜",
    "实惠",
    "质量好",
    "口碑好",
    "recommend",
    "suggest",
    "what should i buy",
)

COMPARISON_KEYWORDS: tuple[str, ...] = (
    "对比",
    "比较",
    "哪个好",
    "区别",
    "差异",
    "vs",
    "和",
    "与",
    "相比",
    "对比一下",
    "比较一下",
    "compare",
    "versus",
)


@dataclass(frozen=True)
class PriceRange:
    min: int | None = None
    max: int | None = None

    def to_dict(self) -> dict[str, int]:
        out: dict[str, int] = {}
        if self.min is not None:
            out["min"] = self.min
        if self.max is not None:
            out["max"] = self.max
        return out


@dataclass(frozen=True)
class Intent:
    has_intent: bool = False
    category: str | None = None
    color: str | None = None
    brand: str | None = None
    price_range: PriceRange | None = None
    keywords: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasIntent": self.has_intent,
            "category": self.category,
            "color": self.color,
            "brand": self.brand,
            "priceRange": self.price_range.to_dict() if self.price_range else None,
            "keywords": list(self.keywords),
        }


NO_INTENT = Intent()


def _normalize(text: str) -> str:
    return " ".join(str(text or "").casefold().split())


def _contains(normalized_text: str, synonym: str) -> bool:
    needle = synonym.casefold()
    if needle.isascii():
        return re.search(rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])", normalized_text) is not None
    return needle in normalized_text


def _first_match(normalized_text: str, table: dict[str, str]) -> tuple[str, str] | None:
    for synonym, canonical in table.items():
        if _contains(normalized_text, synonym):
            return synonym, canonical
    return None


def _extract_price(normalized_text: str) -> tuple[PriceRange, str] | None:
    for pattern, kind, multiplier in _PRICE_PATTERNS:
        match = pattern.search(normalized_text)
        if not match:
            continue
        if kind == "max":
            return PriceRange(max=int(match.group(1)) * multiplier), match.group(0)
        if kind == "min":
            return PriceRange(min=int(match.group(1)) * multiplier), match.group(0)
        low = int(match.group(1)) * multiplier
        high = int(match.group(2)) * multiplier
        if low > high:
            low, high = high, low
        return PriceRange(min=low, max=high), match.group(0)
    return None


def extract_intent(text: str) -> Intent:
    """Extract a structured shopping intent from one user message.

    Total by construction: messages without a known category synonym yield
    ``NO_INTENT`` and no other field is populated for them.
    """
    normalized = _normalize(text)
    if not normalized:
        return NO_INTENT

    category_hit = _first_match(normalized, CATEGORY_SYNONYMS)
    if category_hit is None:
        return NO_INTENT

    keywords: list[str] = [category_hit[0]]

    color_hit = _first_match(normalized, COLOR_SYNONYMS)
    if color_hit:
        keywords.append(color_hit[0])

    brand_hit = _first_match(normalized, BRAND_SYNONYMS)
    if brand_hit:
        keywords.append(brand_hit[0])

    price_hit = _extract_price(normalized)
    if price_hit:
        keywords.append(price_hit[1])

    return Intent(
        has_intent=True,
        category=category_hit[1],
        color=color_hit[1] if color_hit else None,
        brand=brand_hit[1] if brand_hit else None,
        price_range=price_hit[0] if price_hit else None,
        keywords=tuple(keywords),
    )


def _first_synonym(table: dict[str, str], canonical: str) -> str | None:
    for synonym, value in table.items():
        if value == canonical:
            return synonym
    return None


def search_query(intent: Intent) -> str:
    """Human-readable query string for an intent, built from the synonym tables."""
    parts: list[str] = []
    if intent.category:
        parts.append(_first_synonym(CATEGORY_SYNONYMS, intent.category) or intent.category)
    if intent.color:
        parts.append(_first_synonym(COLOR_SYNONYMS, intent.color) or intent.color)
    if intent.brand:
        parts.append(_first_synonym(BRAND_SYNONYMS, intent.brand) or intent.brand)
    if intent.price_range:
        if intent.price_range.max is not None:
            parts.append(f"{intent.price_range.max}元以下")
        elif intent.price_range.min is not None:
            parts.append(f"{intent.price_range.min}元以上")
    return " ".join(parts)


def category_display_name(category: str | None) -> str | None:
    if not category:
        return None
    return CATEGORY_DISPLAY_NAMES.get(category, category)


def color_display_name(color: str | None) -> str | None:
    if not color:
        return None
    return COLOR_DISPLAY_NAMES.get(color, color)


def brand_display_name(brand: str | None) -> str | None:
    if not brand:
        return None
    return BRAND_DISPLAY_NAMES.get(brand, brand)


def has_recommendation_request(text: str) -> bool:
    normalized = _normalize(text)
    return any(_contains(normalized, keyword) for keyword in RECOMMENDATION_KEYWORDS)


def has_comparison_request(text: str) -> bool:
    normalized = _normalize(text)
    return any(_contains(normalized, keyword) for keyword in COMPARISON_KEYWORDS)


def should_recommend(text: str) -> bool:
    return extract_intent(text).has_intent or has_recommendation_request(text)
