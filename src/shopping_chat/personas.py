"""Built-in assistant personas and the per-user persona preference."""

from __future__ import annotations

from typing import Any

from shopping_chat.db import ShopDB


DEFAULT_PERSONA_ID = "friendly"

BUILTIN_PERSONAS: list[dict[str, Any]] = [
    {
        "id": "friendly",
        "label": "贴心导购",
        "description": "热情、亲切，像朋友一样帮你挑选商品。",
        "system_prompt": (
            "你是一位热情亲切的购物助手。用轻松友好的语气回答用户的问题，"
            "简洁地给出购物建议，不要编造商品信息。"
        ),
        "greeting_template": "嗨！我是你的购物小助手，今天想找点什么？",
        "tone_line": "Let's find something perfect for you!",
    },
    {
        "id": "rational",
        "label": "理性分析师",
        "description": "注重性价比和参数对比，给出有理有据的建议。",
        "system_prompt": (
            "你是一位理性的购物顾问。从性价比、质量和实用性角度分析用户需求，"
            "条理清晰、简明扼要，不要编造商品信息。"
        ),
        "greeting_template": "你好，我会从性价比和实用性帮你分析，请告诉我你的需求。",
        "tone_line": "Let's optimize for quality and value.",
    },
    {
        "id": "luxury",
        "label": "奢品顾问",
        "description": "优雅、专业，专注高端品质与品牌故事。",
        "system_prompt": (
            "你是一位高端奢侈品购物顾问。用优雅专业的语气介绍品质与品牌，"
            "回答简洁，不要编造商品信息。"
        ),
        "greeting_template": "您好，很荣幸为您甄选高品质的好物。",
        "tone_line": "Let's discover the finest options available.",
    },
]


def _public_persona(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "label": row["label"],
        "description": row.get("description"),
        "systemPrompt": row["system_prompt"],
        "greeting": row["greeting_template"],
        "isActive": bool(row.get("is_active", 1)),
    }


class PersonaDirectory:
    def __init__(self, db: ShopDB) -> None:
        self.db = db
        self.db.upsert_personas(BUILTIN_PERSONAS)

    def list(self) -> list[dict[str, Any]]:
        return [_public_persona(row) for row in self.db.list_personas()]

    def get(self, persona_id: str) -> dict[str, Any]:
        row = self.db.get_persona(persona_id)
        if not row:
            raise KeyError(f"Persona not found or inactive: {persona_id}")
        return row

    def is_valid(self, persona_id: str) -> bool:
        return self.db.get_persona(persona_id) is not None

    def system_prompt(self, persona_id: str | None) -> str:
        row = self.db.get_persona(persona_id or DEFAULT_PERSONA_ID) or self.db.get_persona(DEFAULT_PERSONA_ID)
        return str(row["system_prompt"]) if row else ""

    def init_for_user(self, user_id: str) -> dict[str, Any]:
        persona_id = self.db.get_default_persona_id(user_id)
        row = self.db.get_persona(persona_id) if persona_id else None
        if row is None:
            row = self.get(DEFAULT_PERSONA_ID)
            self.db.set_default_persona(user_id=user_id, persona_id=row["id"])
        return {
            "personaId": row["id"],
            "persona": _public_persona(row),
            "greeting": row["greeting_template"],
        }

    def switch_for_user(self, user_id: str, persona_id: str) -> dict[str, Any]:
        row = self.get(persona_id)
        self.db.set_default_persona(user_id=user_id, persona_id=row["id"])
        return {
            "personaId": row["id"],
            "persona": {"id": row["id"], "label": row["label"], "description": row.get("description")},
            "greeting": row["greeting_template"],
            "message": f"Switched to: {row['label']}. {row['tone_line']}",
        }
