"""SQLite access layer for catalog products, chat sessions, messages, and personas."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar


_DB_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="shop-db")
_T = TypeVar("_T")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def run_blocking(fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
    """Run a blocking SQLite call on the shared DB thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_DB_EXECUTOR, partial(fn, *args, **kwargs))


PRODUCT_COLUMNS = (
    "id",
    "name",
    "description",
    "category",
    "brand",
    "color",
    "price",
    "original_price",
    "rating",
    "review_count",
    "image_url",
    "stock",
    "status",
)


class ShopDB:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS products (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    category TEXT NOT NULL,
                    brand TEXT,
                    color TEXT,
                    price REAL NOT NULL,
                    original_price REAL,
                    rating REAL NOT NULL DEFAULT 0,
                    review_count INTEGER NOT NULL DEFAULT 0,
                    image_url TEXT,
                    stock INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'active',
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_products_category ON products(category);
                CREATE INDEX IF NOT EXISTS idx_products_brand ON products(brand);
                CREATE INDEX IF NOT EXISTS idx_products_status ON products(status);
                CREATE INDEX IF NOT EXISTS idx_products_price ON products(price);
                CREATE INDEX IF NOT EXISTS idx_products_rating ON products(rating);

                CREATE TABLE IF NOT EXISTS ai_personas (
                    id TEXT PRIMARY KEY,
                    label TEXT NOT NULL,
                    description TEXT,
                    system_prompt TEXT NOT NULL,
                    greeting_template TEXT NOT NULL,
                    tone_line TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_persona_preferences (
                    user_id TEXT NOT NULL,
                    persona_id TEXT NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, persona_id),
                    FOREIGN KEY (persona_id) REFERENCES ai_personas(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS chat_sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    persona_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active'
                );

                CREATE INDEX IF NOT EXISTS idx_chat_sessions_user ON chat_sessions(user_id);

                CREATE TABLE IF NOT EXISTS chat_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                    content TEXT NOT NULL,
                    persona_id TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (session_id) REFERENCES chat_sessions(session_id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id);

                CREATE TABLE IF NOT EXISTS message_products (
                    message_id INTEGER NOT NULL,
                    product_id INTEGER NOT NULL,
                    display_order INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (message_id, product_id),
                    FOREIGN KEY (message_id) REFERENCES chat_messages(id) ON DELETE CASCADE
                );
                """
            )

            # Databases created before sessions could be deleted lack this column.
            self._ensure_column(
                conn,
                "chat_sessions",
                "status",
                "TEXT NOT NULL DEFAULT 'active'",
            )

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
        rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        return {str(row[1]) for row in rows}

    def _ensure_column(
        self,
        conn: sqlite3.Connection,
        table_name: str,
        column_name: str,
        declaration: str,
    ) -> None:
        existing = self._table_columns(conn, table_name)
        if column_name in existing:
            return
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {declaration}")

    def upsert_products(self, products: Iterable[dict[str, Any]]) -> int:
        timestamp = _utc_now()
        payload: list[tuple[Any, ...]] = []
        for product in products:
            payload.append(
                (
                    int(product["id"]),
                    str(product["name"]),
                    product.get("description"),
                    str(product["category"]),
                    product.get("brand"),
                    product.get("color"),
                    float(product["price"]),
                    product.get("original_price"),
                    float(product.get("rating") or 0.0),
                    int(product.get("review_count") or 0),
                    product.get("image_url"),
                    int(product.get("stock") or 0),
                    str(product.get("status") or "active"),
                    timestamp,
                )
            )

        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO products (
                    id, name, description, category, brand, color, price, original_price,
                    rating, review_count, image_url, stock, status, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    description=excluded.description,
                    category=excluded.category,
                    brand=excluded.brand,
                    color=excluded.color,
                    price=excluded.price,
                    original_price=excluded.original_price,
                    rating=excluded.rating,
                    review_count=excluded.review_count,
                    image_url=excluded.image_url,
                    stock=excluded.stock,
                    status=excluded.status,
                    updated_at=excluded.updated_at
                """,
                payload,
            )
        return len(payload)

    def query_products(
        self,
        *,
        where_sql: str,
        params: list[Any],
        order_sql: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        column_sql = ", ".join(PRODUCT_COLUMNS)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {column_sql}
                FROM products
                WHERE {where_sql}
                ORDER BY {order_sql}
                LIMIT ?
                """,
                (*params, max(1, int(limit))),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_product(self, product_id: int) -> dict[str, Any] | None:
        column_sql = ", ".join(PRODUCT_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {column_sql} FROM products WHERE id = ?",
                (product_id,),
            ).fetchone()
        return dict(row) if row else None

    def upsert_personas(self, personas: Iterable[dict[str, Any]]) -> None:
        timestamp = _utc_now()
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO ai_personas (
                    id, label, description, system_prompt, greeting_template, tone_line, is_active, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    label=excluded.label,
                    description=excluded.description,
                    system_prompt=excluded.system_prompt,
                    greeting_template=excluded.greeting_template,
                    tone_line=excluded.tone_line,
                    updated_at=excluded.updated_at
                """,
                [
                    (
                        persona["id"],
                        persona["label"],
                        persona.get("description"),
                        persona["system_prompt"],
                        persona["greeting_template"],
                        persona["tone_line"],
                        1 if persona.get("is_active", True) else 0,
                        timestamp,
                    )
                    for persona in personas
                ],
            )

    def get_persona(self, persona_id: str, *, active_only: bool = True) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, label, description, system_prompt, greeting_template, tone_line, is_active
                FROM ai_personas
                WHERE id = ? AND (is_active = 1 OR ? = 0)
                """,
                (persona_id, 1 if active_only else 0),
            ).fetchone()
        return dict(row) if row else None

    def list_personas(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, label, description, system_prompt, greeting_template, tone_line, is_active
                FROM ai_personas
                WHERE is_active = 1
                ORDER BY id ASC
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def get_default_persona_id(self, user_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT persona_id
                FROM user_persona_preferences
                WHERE user_id = ? AND is_default = 1
                """,
                (user_id,),
            ).fetchone()
        return str(row["persona_id"]) if row else None

    def set_default_persona(self, *, user_id: str, persona_id: str) -> None:
        timestamp = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_persona_preferences
                SET is_default = 0, updated_at = ?
                WHERE user_id = ? AND is_default = 1
                """,
                (timestamp, user_id),
            )
            conn.execute(
                """
                INSERT INTO user_persona_preferences (user_id, persona_id, is_default, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(user_id, persona_id) DO UPDATE SET
                    is_default = 1,
                    updated_at = excluded.updated_at
                """,
                (user_id, persona_id, timestamp),
            )

    def create_session(self, *, user_id: str, persona_id: str, session_id: str | None = None) -> dict[str, Any]:
        safe_session_id = session_id or uuid.uuid4().hex
        created_at = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (session_id, user_id, persona_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (safe_session_id, user_id, persona_id, created_at),
            )
        return {
            "session_id": safe_session_id,
            "user_id": user_id,
            "persona_id": persona_id,
            "created_at": created_at,
            "status": "active",
        }

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT session_id, user_id, persona_id, created_at, status
                FROM chat_sessions
                WHERE session_id = ?
                """,
                (session_id,),
            ).fetchone()
        return dict(row) if row else None

    def list_sessions(self, user_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT session_id, user_id, persona_id, created_at, status
                FROM chat_sessions
                WHERE user_id = ? AND status = 'active'
                ORDER BY created_at ASC
                """,
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def mark_session_deleted(self, session_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE chat_sessions SET status = 'deleted' WHERE session_id = ?",
                (session_id,),
            )
        return cursor.rowcount > 0

    def create_message(
        self,
        *,
        session_id: str,
        role: str,
        content: str,
        persona_id: str | None = None,
        product_ids: list[int] | None = None,
    ) -> dict[str, Any]:
        created_at = _utc_now()
        ordered_ids = list(dict.fromkeys(int(pid) for pid in product_ids or []))
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO chat_messages (session_id, role, content, persona_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, role, content, persona_id, created_at),
            )
            message_id = int(cursor.lastrowid)
            if ordered_ids:
                conn.executemany(
                    """
                    INSERT INTO message_products (message_id, product_id, display_order, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [(message_id, pid, order, created_at) for order, pid in enumerate(ordered_ids)],
                )
        return {
            "id": message_id,
            "session_id": session_id,
            "role": role,
            "content": content,
            "persona_id": persona_id,
            "created_at": created_at,
            "product_ids": ordered_ids,
        }

    def list_messages(
        self,
        *,
        session_ids: list[str],
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if not session_ids:
            return []
        safe_limit = max(1, min(int(limit), 500))
        safe_offset = max(0, int(offset))
        placeholder_sql = ", ".join(["?"] * len(session_ids))
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, session_id, role, content, persona_id, created_at
                FROM chat_messages
                WHERE session_id IN ({placeholder_sql})
                ORDER BY id ASC
                LIMIT ? OFFSET ?
                """,
                (*session_ids, safe_limit, safe_offset),
            ).fetchall()
            messages = [dict(row) for row in rows]
            self._attach_products(conn, messages)
        return messages

    def recent_messages(self, session_id: str, *, limit: int) -> list[dict[str, Any]]:
        safe_limit = max(1, int(limit))
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, session_id, role, content, persona_id, created_at
                FROM chat_messages
                WHERE session_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (session_id, safe_limit),
            ).fetchall()
        return [dict(row) for row in reversed(rows)]

    def _attach_products(self, conn: sqlite3.Connection, messages: list[dict[str, Any]]) -> None:
        if not messages:
            return
        by_id = {int(message["id"]): message for message in messages}
        for message in messages:
            message["products"] = []
        placeholder_sql = ", ".join(["?"] * len(by_id))
        rows = conn.execute(
            f"""
            SELECT mp.message_id,
                   mp.display_order,
                   p.id,
                   p.name,
                   p.image_url,
                   p.price
            FROM message_products mp
            JOIN products p ON p.id = mp.product_id
            WHERE mp.message_id IN ({placeholder_sql})
            ORDER BY mp.message_id ASC, mp.display_order ASC
            """,
            tuple(by_id.keys()),
        ).fetchall()
        for row in rows:
            by_id[int(row["message_id"])]["products"].append(
                {
                    "id": int(row["id"]),
                    "name": row["name"],
                    "image_url": row["image_url"],
                    "price": row["price"],
                }
            )

    def message_product_ids(self, message_id: int) -> list[int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT product_id
                FROM message_products
                WHERE message_id = ?
                ORDER BY display_order ASC
                """,
                (message_id,),
            ).fetchall()
        return [int(row["product_id"]) for row in rows]

    def stats(self) -> dict[str, Any]:
        with self._connect() as conn:
            counts = conn.execute(
                """
                SELECT
                  (SELECT COUNT(*) FROM products) AS product_count,
                  (SELECT COUNT(*) FROM chat_sessions) AS session_count,
                  (SELECT COUNT(*) FROM chat_messages) AS message_count,
                  (SELECT COUNT(*) FROM ai_personas) AS persona_count
                """
            ).fetchone()
        return (
            dict(counts)
            if counts
            else {
                "product_count": 0,
                "session_count": 0,
                "message_count": 0,
                "persona_count": 0,
            }
        )
