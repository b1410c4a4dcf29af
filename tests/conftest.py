from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from typing import AsyncIterator, Sequence

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
for extra in (ROOT_DIR / "src", ROOT_DIR / "app"):
    if str(extra) not in sys.path:
        sys.path.insert(0, str(extra))

from shopping_chat.db import ShopDB
from shopping_chat.generation import GenerationEngine, GenerationError, GenerationOptions
from shopping_chat.personas import PersonaDirectory
from shopping_chat.settings import ServiceConfig


SAMPLE_PRODUCTS = [
    {"id": 1, "name": "Nike 红色跑步鞋", "category": "shoes", "brand": "Nike", "color": "red", "price": 459.0, "rating": 4.7, "review_count": 1280, "stock": 35},
    {"id": 2, "name": "Adidas 黑色运动鞋", "category": "shoes", "brand": "Adidas", "color": "black", "price": 899.0, "rating": 4.8, "review_count": 2150, "stock": 20},
    {"id": 3, "name": "红色帆布鞋", "category": "shoes", "brand": None, "color": "red", "price": 129.0, "rating": 4.2, "review_count": 310, "stock": 80},
    {"id": 4, "name": "Adidas 红色德训鞋", "category": "shoes", "brand": "Adidas", "color": "red", "price": 759.0, "rating": 4.6, "review_count": 540, "stock": 12},
    {"id": 5, "name": "棕色靴子", "category": "shoes", "brand": None, "color": "brown", "price": 699.0, "rating": 4.4, "review_count": 210, "stock": 0},
    {"id": 6, "name": "Nike 白色板鞋", "category": "shoes", "brand": "Nike", "color": "white", "price": 399.0, "rating": 4.5, "review_count": 860, "stock": 50},
    {"id": 7, "name": "下架红色鞋", "category": "shoes", "brand": None, "color": "red", "price": 99.0, "rating": 5.0, "review_count": 10, "stock": 10, "status": "inactive"},
    {"id": 8, "name": "Apple iPhone 15", "category": "electronics", "brand": "Apple", "color": "black", "price": 5999.0, "rating": 4.9, "review_count": 5400, "stock": 40},
    {"id": 9, "name": "黑色连衣裙", "category": "clothing", "brand": None, "color": "black", "price": 399.0, "rating": 4.5, "review_count": 760, "stock": 30},
    {"id": 10, "name": "Chanel 红色口红", "description": "丝绒哑光", "category": "beauty", "brand": "Chanel", "color": "red", "price": 380.0, "rating": 4.8, "review_count": 2300, "stock": 55},
    {"id": 11, "name": "保湿护肤品", "category": "beauty", "brand": None, "color": "white", "price": 268.0, "rating": 3.9, "review_count": 150, "stock": 40},
]


class ScriptedEngine(GenerationEngine):
    """Replays fixed fragments; optionally fails or stalls after some of them."""

    name = "scripted"

    def __init__(
        self,
        fragments: Sequence[str],
        *,
        fail_after: int | None = None,
        stall_after: int | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.stall_after = stall_after
        self.delay_seconds = delay_seconds
        self.calls: list[list[dict[str, str]]] = []
        self.finished = False

    async def stream(self, messages, options: GenerationOptions) -> AsyncIterator[str]:
        self.calls.append([dict(message) for message in messages])
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index == self.fail_after:
                raise GenerationError("upstream exploded with secret details")
            if self.stall_after is not None and index == self.stall_after:
                await asyncio.sleep(3600)
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise GenerationError("upstream exploded with secret details")
        self.finished = True


@pytest.fixture
def db(tmp_path: Path) -> ShopDB:
    shop_db = ShopDB(tmp_path / "shop.db")
    shop_db.upsert_products(SAMPLE_PRODUCTS)
    PersonaDirectory(shop_db)
    return shop_db


@pytest.fixture
def service_config(tmp_path: Path) -> ServiceConfig:
    return ServiceConfig(
        db_path=tmp_path / "service.db",
        default_user_id="1",
        default_persona_id="friendly",
        max_recommendations=6,
        history_turns=10,
        first_token_timeout_seconds=5.0,
        idle_timeout_seconds=5.0,
        total_timeout_seconds=10.0,
        recommendations_enabled=True,
    )
