"""Shopping chat service wiring intent analysis, recommendations, and streamed chat turns."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from shopping_chat.catalog import SQLiteCatalogStore
from shopping_chat.conversation import SQLiteConversationStore
from shopping_chat.coordinator import Turn, TurnCoordinator, TurnRequest, TurnTimeouts
from shopping_chat.db import ShopDB, run_blocking
from shopping_chat.generation import GenerationEngine, make_engine
from shopping_chat.intent import extract_intent, has_comparison_request, search_query
from shopping_chat.personas import PersonaDirectory
from shopping_chat.protocol import COMPLETE, CONTENT_DELTA, ERROR, PRODUCTS
from shopping_chat.recommendation import ProductRecommender
from shopping_chat.settings import ServiceConfig


_LOGGER = logging.getLogger(__name__)


class ShoppingChatService:
    def __init__(
        self,
        root_dir: Path | None = None,
        *,
        config: ServiceConfig | None = None,
        engine: GenerationEngine | None = None,
    ) -> None:
        self.root_dir = root_dir or Path(__file__).resolve().parents[2]
        self.cfg = config or ServiceConfig.from_env(self.root_dir)
        self.db = ShopDB(self.cfg.db_path)

        self.engine = engine or make_engine()
        self.personas = PersonaDirectory(self.db)
        self.catalog = SQLiteCatalogStore(self.db)
        self.conversations = SQLiteConversationStore(self.db)
        self.recommender = ProductRecommender(self.catalog, max_recommendations=self.cfg.max_recommendations)
        self.coordinator = TurnCoordinator(
            engine=self.engine,
            conversations=self.conversations,
            recommender=self.recommender,
            system_prompt_for=self.personas.system_prompt,
            timeouts=TurnTimeouts(
                first_token_seconds=self.cfg.first_token_timeout_seconds,
                idle_seconds=self.cfg.idle_timeout_seconds,
                total_seconds=self.cfg.total_timeout_seconds,
            ),
            history_limit=self.cfg.history_turns,
            recommendations_enabled=self.cfg.recommendations_enabled,
        )

    def seed_products(self, products: Iterable[dict[str, Any]]) -> int:
        count = self.db.upsert_products(products)
        _LOGGER.info("Upserted %d catalog products.", count)
        return count

    def seed_products_from_file(self, path: Path) -> int:
        payload = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            payload = payload.get("products", [])
        if not isinstance(payload, list):
            raise ValueError(f"Catalog file must hold a list of products: {path}")
        return self.seed_products(payload)

    def stats(self) -> dict[str, Any]:
        details = self.db.stats()
        details["engine"] = self.engine.name
        details["max_recommendations"] = self.cfg.max_recommendations
        details["recommendations_enabled"] = self.cfg.recommendations_enabled
        return details

    def health(self) -> dict[str, Any]:
        try:
            engine_health = self.engine.health_check()
        except Exception as exc:
            _LOGGER.warning("Engine health check failed: %s", exc)
            engine_health = {"status": "unhealthy", "engine": self.engine.name, "error": str(exc)}
        return {"engine": engine_health, "stats": self.stats()}

    async def analyze(self, query: str) -> dict[str, Any]:
        text = (query or "").strip()
        if not text:
            raise ValueError("query must not be empty.")
        intent = extract_intent(text)
        recommendation = await self.recommender.recommend(text)
        return {
            "query": text,
            "intent": intent.to_dict(),
            "searchQuery": search_query(intent),
            "isComparison": has_comparison_request(text),
            "shouldRecommend": self.recommender.should_recommend(text),
            "recommendation": recommendation.to_dict(),
        }

    async def recommend(self, query: str) -> dict[str, Any]:
        text = (query or "").strip()
        if not text:
            raise ValueError("query must not be empty.")
        result = await self.recommender.recommend(text)
        return result.to_dict()

    def _resolve_user(self, user_id: str | None) -> str:
        return (user_id or "").strip() or self.cfg.default_user_id

    def _resolve_persona(self, user_id: str, persona_id: str | None) -> str:
        if persona_id:
            if not self.personas.is_valid(persona_id):
                raise ValueError(f"Unknown or inactive persona: {persona_id}")
            return persona_id
        return self.db.get_default_persona_id(user_id) or self.cfg.default_persona_id

    def _require_session(self, session_id: str, user_id: str) -> dict[str, Any]:
        session = self.db.get_session(session_id)
        if not session or session.get("status") != "active" or str(session["user_id"]) != user_id:
            raise KeyError(f"Chat session not found: {session_id}")
        return session

    async def start_turn(
        self,
        *,
        message: str,
        user_id: str | None = None,
        persona_id: str | None = None,
        session_id: str | None = None,
    ) -> Turn:
        text = (message or "").strip()
        if not text:
            raise ValueError("message must not be empty.")
        safe_user_id = self._resolve_user(user_id)
        if session_id:
            session = await run_blocking(self._require_session, session_id, safe_user_id)
            resolved_persona = persona_id or str(session["persona_id"])
        else:
            resolved_persona = persona_id
        resolved_persona = await run_blocking(self._resolve_persona, safe_user_id, resolved_persona)
        return self.coordinator.start_turn(
            TurnRequest(text=text, user_id=safe_user_id, persona_id=resolved_persona, session_id=session_id)
        )

    async def chat(
        self,
        *,
        message: str,
        user_id: str | None = None,
        persona_id: str | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Run one turn to its end and fold the frames into a single response."""
        turn = await self.start_turn(
            message=message,
            user_id=user_id,
            persona_id=persona_id,
            session_id=session_id,
        )
        frames = [event.to_payload() async for event in turn.events()]
        products_frame = next((frame for frame in frames if frame["type"] == PRODUCTS), None)
        error_frame = next((frame for frame in frames if frame["type"] == ERROR), None)
        complete_frame = next((frame for frame in frames if frame["type"] == COMPLETE), None)
        if error_frame is not None:
            raise RuntimeError(error_frame["error"])
        return {
            "sessionId": turn.session_id,
            "personaId": turn.request.persona_id,
            "reply": complete_frame["content"] if complete_frame else "",
            "deltaCount": sum(1 for frame in frames if frame["type"] == CONTENT_DELTA),
            "products": products_frame["products"] if products_frame else [],
            "summaryText": products_frame["summaryText"] if products_frame else None,
            "searchQuery": products_frame["searchQuery"] if products_frame else None,
        }

    def create_session(self, *, user_id: str | None = None, persona_id: str | None = None) -> dict[str, Any]:
        safe_user_id = self._resolve_user(user_id)
        resolved_persona = self._resolve_persona(safe_user_id, persona_id)
        session = self.db.create_session(user_id=safe_user_id, persona_id=resolved_persona)
        greeting = self.personas.get(resolved_persona)["greeting_template"]
        return {
            "sessionId": session["session_id"],
            "userId": safe_user_id,
            "personaId": resolved_persona,
            "greeting": greeting,
            "createdAt": session["created_at"],
        }

    def delete_session(self, session_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        safe_user_id = self._resolve_user(user_id)
        self._require_session(session_id, safe_user_id)
        self.db.mark_session_deleted(session_id)
        return {"sessionId": session_id, "deleted": True}

    def chat_history(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        safe_user_id = self._resolve_user(user_id)
        sessions = self.db.list_sessions(safe_user_id)
        if session_id:
            sessions = [session for session in sessions if session["session_id"] == session_id]
            if not sessions:
                raise KeyError(f"Chat session not found: {session_id}")

        messages = self.db.list_messages(
            session_ids=[session["session_id"] for session in sessions],
            limit=limit,
            offset=offset,
        )
        return {
            "userId": safe_user_id,
            "sessions": [
                {
                    "sessionId": session["session_id"],
                    "personaId": session["persona_id"],
                    "createdAt": session["created_at"],
                }
                for session in sessions
            ],
            "messages": [
                {
                    "id": message["id"],
                    "sessionId": message["session_id"],
                    "role": message["role"],
                    "content": message["content"],
                    "personaId": message["persona_id"],
                    "createdAt": message["created_at"],
                    "products": message["products"],
                }
                for message in messages
            ],
            "limit": limit,
            "offset": offset,
        }

    def list_personas(self) -> list[dict[str, Any]]:
        return self.personas.list()

    def persona_init(self, user_id: str | None = None) -> dict[str, Any]:
        return self.personas.init_for_user(self._resolve_user(user_id))

    def switch_persona(self, *, persona_id: str, user_id: str | None = None) -> dict[str, Any]:
        return self.personas.switch_for_user(self._resolve_user(user_id), persona_id)
