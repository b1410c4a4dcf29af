"""Declarative catalog query plans derived from a shopping intent.

A plan is an ordered ladder of attempts, most specific first. Nothing here
touches a store: the recommender executes the attempts and decides, using each
attempt's ``condition``, whether it still needs to run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from shopping_chat.intent import Intent


DEFAULT_PAGE_SIZE = 10
MIN_RESULTS = 3
SUPPLEMENT_LIMIT = 3
KEYWORD_LIMIT = 3
POPULAR_MIN_RATING = 4.0
TEXT_SEARCH_FIELDS = ("name", "description", "brand")

# When an attempt may run, relative to the results accumulated so far.
ALWAYS = "always"
BELOW_MINIMUM = "below_minimum"
BELOW_TARGET = "below_target"
WHEN_EMPTY = "when_empty"

POPULARITY_ORDER: tuple[tuple[str, str], ...] = (("rating", "desc"), ("review_count", "desc"))


@dataclass(frozen=True)
class Equals:
    value: Any


@dataclass(frozen=True)
class Between:
    min: float | None = None
    max: float | None = None


@dataclass(frozen=True)
class GreaterThan:
    value: float


@dataclass(frozen=True)
class TextSearch:
    term: str
    fields: tuple[str, ...] = TEXT_SEARCH_FIELDS


Constraint = Union[Equals, Between, GreaterThan, TextSearch]


def _availability_filters() -> dict[str, Constraint]:
    return {"status": Equals("active"), "stock": GreaterThan(0)}


@dataclass(frozen=True)
class CatalogQueryAttempt:
    kind: str
    filters: dict[str, Constraint]
    order: tuple[tuple[str, str], ...] = POPULARITY_ORDER
    limit: int = DEFAULT_PAGE_SIZE
    condition: str = ALWAYS
    source_keyword: str | None = field(default=None, compare=False)

    def should_run(self, accumulated: int, *, target: int, minimum: int = MIN_RESULTS) -> bool:
        if accumulated >= target:
            return False
        if self.condition == BELOW_MINIMUM:
            return accumulated < minimum
        if self.condition == WHEN_EMPTY:
            return accumulated == 0
        return True

    def describe(self) -> dict[str, Any]:
        filters: dict[str, Any] = {}
        for name, constraint in self.filters.items():
            if isinstance(constraint, Equals):
                filters[name] = {"eq": constraint.value}
            elif isinstance(constraint, Between):
                filters[name] = {"min": constraint.min, "max": constraint.max}
            elif isinstance(constraint, GreaterThan):
                filters[name] = {"gt": constraint.value}
            else:
                filters[name] = {"contains": constraint.term, "fields": list(constraint.fields)}
        return {
            "kind": self.kind,
            "filters": filters,
            "order": [list(pair) for pair in self.order],
            "limit": self.limit,
            "condition": self.condition,
        }


def _price_constraint(intent: Intent) -> Between | None:
    price = intent.price_range
    if price is None or (price.min is None and price.max is None):
        return None
    return Between(min=price.min, max=price.max)


def popular_attempt(limit: int) -> CatalogQueryAttempt:
    filters = _availability_filters()
    filters["rating"] = Between(min=POPULAR_MIN_RATING)
    return CatalogQueryAttempt(kind="popular", filters=filters, limit=limit, condition=WHEN_EMPTY)


def synthesize(intent: Intent, *, limit: int = DEFAULT_PAGE_SIZE) -> list[CatalogQueryAttempt]:
    """Build the fallback ladder for an intent.

    ``limit`` is the page size of the exact attempt and the popularity fallback.
    Intents without shopping intent only get the popularity fallback.
    """
    safe_limit = max(1, int(limit))
    if not intent.has_intent:
        return [popular_attempt(safe_limit)]

    attempts: list[CatalogQueryAttempt] = []
    price = _price_constraint(intent)

    exact = _availability_filters()
    if intent.category:
        exact["category"] = Equals(intent.category)
    if intent.color:
        exact["color"] = Equals(intent.color)
    if intent.brand:
        exact["brand"] = Equals(intent.brand)
    if price is not None:
        exact["price"] = price
    attempts.append(CatalogQueryAttempt(kind="exact", filters=exact, limit=safe_limit))

    if intent.category:
        relaxed = _availability_filters()
        relaxed["category"] = Equals(intent.category)
        attempts.append(
            CatalogQueryAttempt(
                kind="category",
                filters=relaxed,
                limit=SUPPLEMENT_LIMIT,
                condition=BELOW_MINIMUM,
            )
        )

    if price is not None:
        by_price = _availability_filters()
        by_price["price"] = price
        attempts.append(
            CatalogQueryAttempt(
                kind="price",
                filters=by_price,
                limit=SUPPLEMENT_LIMIT,
                condition=BELOW_MINIMUM,
            )
        )

    for keyword in intent.keywords:
        by_keyword = _availability_filters()
        by_keyword["keyword"] = TextSearch(keyword)
        attempts.append(
            CatalogQueryAttempt(
                kind="keyword",
                filters=by_keyword,
                limit=KEYWORD_LIMIT,
                condition=BELOW_TARGET,
                source_keyword=keyword,
            )
        )

    attempts.append(popular_attempt(safe_limit))
    return attempts
