"""Catalog store contract and the SQLite-backed implementation used by the recommender."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

from shopping_chat.db import ShopDB, run_blocking
from shopping_chat.query_plan import Between, Constraint, Equals, GreaterThan, TextSearch


_FILTER_COLUMNS = {
    "id": "id",
    "name": "name",
    "description": "description",
    "category": "category",
    "brand": "brand",
    "color": "color",
    "price": "price",
    "rating": "rating",
    "review_count": "review_count",
    "stock": "stock",
    "status": "status",
}
_ORDER_DIRECTIONS = {"asc": "ASC", "desc": "DESC"}


@dataclass(frozen=True)
class Product:
    id: int
    name: str
    category: str
    color: str | None
    brand: str | None
    price: float
    original_price: float | None
    rating: float
    review_count: int
    image_url: str | None
    stock: int
    description: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Product":
        original_price = row.get("original_price")
        return cls(
            id=int(row["id"]),
            name=str(row["name"]),
            category=str(row["category"]),
            color=row.get("color"),
            brand=row.get("brand"),
            price=float(row["price"]),
            original_price=float(original_price) if original_price is not None else None,
            rating=float(row.get("rating") or 0.0),
            review_count=int(row.get("review_count") or 0),
            image_url=row.get("image_url"),
            stock=int(row.get("stock") or 0),
            description=row.get("description"),
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "color": self.color,
            "brand": self.brand,
            "price": self.price,
            "originalPrice": self.original_price,
            "rating": self.rating,
            "reviewCount": self.review_count,
            "image": self.image_url,
            "stock": self.stock,
            "description": self.description,
        }


class CatalogStore(Protocol):
    async def find(
        self,
        filters: Mapping[str, Constraint],
        order: Sequence[tuple[str, str]],
        limit: int,
    ) -> list[Product]:
        ...


def _column(field_name: str) -> str:
    column = _FILTER_COLUMNS.get(field_name)
    if column is None:
        raise ValueError(f"Unsupported catalog field: {field_name}")
    return column


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def compile_filters(filters: Mapping[str, Constraint]) -> tuple[str, list[Any]]:
    """Translate declarative constraints into a parameterized SQL WHERE clause."""
    clauses: list[str] = []
    params: list[Any] = []
    for field_name, constraint in filters.items():
        if isinstance(constraint, TextSearch):
            columns = [_column(name) for name in constraint.fields]
            if not columns or not constraint.term.strip():
                continue
            pattern = f"%{_escape_like(constraint.term.strip())}%"
            clauses.append(
                "(" + " OR ".join(f"lower({column}) LIKE lower(?) ESCAPE '\\'" for column in columns) + ")"
            )
            params.extend([pattern] * len(columns))
            continue

        column = _column(field_name)
        if isinstance(constraint, Equals):
            if isinstance(constraint.value, str):
                clauses.append(f"lower({column}) = lower(?)")
            else:
                clauses.append(f"{column} = ?")
            params.append(constraint.value)
        elif isinstance(constraint, Between):
            if constraint.min is not None:
                clauses.append(f"{column} >= ?")
                params.append(constraint.min)
            if constraint.max is not None:
                clauses.append(f"{column} <= ?")
                params.append(constraint.max)
        elif isinstance(constraint, GreaterThan):
            clauses.append(f"{column} > ?")
            params.append(constraint.value)
        else:
            raise ValueError(f"Unsupported constraint for {field_name}: {constraint!r}")

    return (" AND ".join(clauses) if clauses else "1 = 1"), params


def compile_order(order: Sequence[tuple[str, str]]) -> str:
    parts: list[str] = []
    for field_name, direction in order:
        sql_direction = _ORDER_DIRECTIONS.get(str(direction).lower())
        if sql_direction is None:
            raise ValueError(f"Unsupported sort direction: {direction}")
        parts.append(f"{_column(field_name)} {sql_direction}")
    parts.append("id ASC")
    return ", ".join(parts)


class SQLiteCatalogStore:
    def __init__(self, db: ShopDB) -> None:
        self.db = db

    def find_sync(
        self,
        filters: Mapping[str, Constraint],
        order: Sequence[tuple[str, str]],
        limit: int,
    ) -> list[Product]:
        where_sql, params = compile_filters(filters)
        rows = self.db.query_products(
            where_sql=where_sql,
            params=params,
            order_sql=compile_order(order),
            limit=limit,
        )
        return [Product.from_row(row) for row in rows]

    async def find(
        self,
        filters: Mapping[str, Constraint],
        order: Sequence[tuple[str, str]],
        limit: int,
    ) -> list[Product]:
        return await run_blocking(self.find_sync, filters, order, limit)
