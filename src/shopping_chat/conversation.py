"""Conversation store contract: sessions and the messages recorded for each turn."""

from __future__ import annotations

from typing import Any, Protocol, Sequence

from shopping_chat.db import ShopDB, run_blocking


USER = "user"
ASSISTANT = "assistant"


class ConversationStore(Protocol):
    async def create_session(self, *, user_id: str, persona_id: str) -> dict[str, Any]:
        ...

    async def create_message(
        self,
        *,
        session_id: str,
        role: str,
        content: str,
        persona_id: str | None = None,
        product_ids: Sequence[int] | None = None,
    ) -> dict[str, Any]:
        ...

    async def recent_messages(self, session_id: str, *, limit: int) -> list[dict[str, Any]]:
        ...


class SQLiteConversationStore:
    def __init__(self, db: ShopDB) -> None:
        self.db = db

    async def create_session(self, *, user_id: str, persona_id: str) -> dict[str, Any]:
        return await run_blocking(self.db.create_session, user_id=user_id, persona_id=persona_id)

    async def create_message(
        self,
        *,
        session_id: str,
        role: str,
        content: str,
        persona_id: str | None = None,
        product_ids: Sequence[int] | None = None,
    ) -> dict[str, Any]:
        if role not in {USER, ASSISTANT}:
            raise ValueError(f"role must be one of: {USER}, {ASSISTANT}")
        return await run_blocking(
            self.db.create_message,
            session_id=session_id,
            role=role,
            content=content,
            persona_id=persona_id,
            product_ids=list(product_ids or []),
        )

    async def recent_messages(self, session_id: str, *, limit: int) -> list[dict[str, Any]]:
        return await run_blocking(self.db.recent_messages, session_id, limit=limit)
