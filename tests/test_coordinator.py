from __future__ import annotations

import asyncio
from typing import Any

from conftest import ScriptedEngine

from shopping_chat.catalog import SQLiteCatalogStore
from shopping_chat.conversation import SQLiteConversationStore
from shopping_chat.coordinator import (
    GENERIC_ERROR_MESSAGE,
    TIMEOUT_ERROR_MESSAGE,
    TurnCoordinator,
    TurnRequest,
    TurnState,
    TurnTimeouts,
)
from shopping_chat.generation import _CANNED_REPLIES, CannedReplyEngine
from shopping_chat.personas import PersonaDirectory
from shopping_chat.protocol import validate_sequence
from shopping_chat.recommendation import ProductRecommender


class MemoryConversations:
    def __init__(self, *, fail_writes: bool = False) -> None:
        self.fail_writes = fail_writes
        self.sessions: list[dict[str, Any]] = []
        self.messages: list[dict[str, Any]] = []

    async def create_session(self, *, user_id, persona_id):
        if self.fail_writes:
            raise RuntimeError("disk full")
        session = {"session_id": f"s{len(self.sessions) + 1}", "user_id": user_id, "persona_id": persona_id}
        self.sessions.append(session)
        return session

    async def create_message(self, *, session_id, role, content, persona_id=None, product_ids=None):
        if self.fail_writes:
            raise RuntimeError("disk full")
        message = {
            "id": len(self.messages) + 1,
            "session_id": session_id,
            "role": role,
            "content": content,
            "persona_id": persona_id,
            "product_ids": list(product_ids or []),
        }
        self.messages.append(message)
        return message

    async def recent_messages(self, session_id, *, limit):
        rows = [message for message in self.messages if message["session_id"] == session_id]
        return rows[-limit:]


class ExplodingRecommender:
    @staticmethod
    def should_recommend(text):
        return True

    async def recommend(self, text):
        raise RuntimeError("catalog offline")


def _request(text: str, session_id: str | None = None) -> TurnRequest:
    return TurnRequest(text=text, user_id="1", persona_id="friendly", session_id=session_id)


def _types(events) -> list[str]:
    return [event.type for event in events]


def test_plain_reply_streams_deltas_then_completes():
    conversations = MemoryConversations()
    coordinator = TurnCoordinator(engine=ScriptedEngine(["你", "好", "！"]), conversations=conversations)

    events = asyncio.run(coordinator.run_turn(_request("你好")))

    assert _types(events) == ["start", "content-delta", "content-delta", "content-delta", "complete", "end"]
    assert [event.content for event in events if event.type == "content-delta"] == ["你", "好", "！"]
    assert events[-2].content == "你好！"
    assert {event.session_id for event in events} == {"s1"}
    validate_sequence(events)

    assert [(m["role"], m["content"]) for m in conversations.messages] == [
        ("user", "你好"),
        ("assistant", "你好！"),
    ]


def test_offline_replies_follow_the_turn_persona():
    conversations = MemoryConversations()
    coordinator = TurnCoordinator(engine=CannedReplyEngine(seed=1), conversations=conversations)
    request = TurnRequest(text="你好", user_id="1", persona_id="luxury")

    events = asyncio.run(coordinator.run_turn(request))

    validate_sequence(events)
    assert events[-2].content in _CANNED_REPLIES["luxury"]
    assert conversations.messages[-1]["persona_id"] == "luxury"


def test_no_intent_never_emits_products(db):
    conversations = MemoryConversations()
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["今天", "晴"]),
        conversations=conversations,
        recommender=ProductRecommender(SQLiteCatalogStore(db)),
    )

    events = asyncio.run(coordinator.run_turn(_request("今天天气怎么样")))

    assert "products" not in _types(events)
    assert len(conversations.messages) == 2


def test_shopping_turn_emits_products_before_complete(db):
    conversations = MemoryConversations()
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["好的", "，为你挑选"]),
        conversations=conversations,
        recommender=ProductRecommender(SQLiteCatalogStore(db)),
    )

    events = asyncio.run(coordinator.run_turn(_request("红色运动鞋，500以下")))

    assert _types(events) == ["start", "content-delta", "content-delta", "products", "complete", "end"]
    validate_sequence(events)
    products_event = events[3]
    product_ids = [product["id"] for product in products_event.products]
    assert product_ids[:2] == [1, 3]
    assert products_event.search_query == "运动鞋 红色 500元以下"

    user, recommendation, text = conversations.messages
    assert user["role"] == "user"
    assert recommendation["role"] == "assistant"
    assert recommendation["content"] == products_event.summary_text
    assert recommendation["product_ids"] == product_ids
    assert text["content"] == "好的，为你挑选"
    assert text["product_ids"] == []


def test_engine_failure_emits_safe_error_and_skips_reply_persistence():
    conversations = MemoryConversations()
    coordinator = TurnCoordinator(engine=ScriptedEngine(["a", "b", "c"], fail_after=2), conversations=conversations)

    events = asyncio.run(coordinator.run_turn(_request("你好")))

    assert _types(events) == ["start", "content-delta", "content-delta", "error", "end"]
    assert events[3].error == GENERIC_ERROR_MESSAGE
    assert "secret" not in events[3].error
    validate_sequence(events)
    assert [m["role"] for m in conversations.messages] == ["user"]


def test_first_fragment_timeout_is_an_error():
    conversations = MemoryConversations()
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["a"], stall_after=0),
        conversations=conversations,
        timeouts=TurnTimeouts(first_token_seconds=0.05, idle_seconds=5.0, total_seconds=5.0),
    )

    events = asyncio.run(coordinator.run_turn(_request("你好")))

    assert _types(events) == ["start", "error", "end"]
    assert events[1].error == TIMEOUT_ERROR_MESSAGE
    assert [m["role"] for m in conversations.messages] == ["user"]


def test_idle_timeout_after_partial_reply():
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["a", "b"], stall_after=1),
        conversations=MemoryConversations(),
        timeouts=TurnTimeouts(first_token_seconds=5.0, idle_seconds=0.05, total_seconds=5.0),
    )

    events = asyncio.run(coordinator.run_turn(_request("你好")))

    assert _types(events) == ["start", "content-delta", "error", "end"]
    assert events[2].error == TIMEOUT_ERROR_MESSAGE


def test_total_deadline_bounds_slow_streams():
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["a"] * 50, delay_seconds=0.02),
        conversations=MemoryConversations(),
        timeouts=TurnTimeouts(first_token_seconds=1.0, idle_seconds=1.0, total_seconds=0.1),
    )

    events = asyncio.run(coordinator.run_turn(_request("你好")))

    assert events[-2].type == "error"
    assert events[-2].error == TIMEOUT_ERROR_MESSAGE
    validate_sequence(events)


def test_persistence_failures_do_not_change_the_stream():
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["你", "好"]),
        conversations=MemoryConversations(fail_writes=True),
    )

    events = asyncio.run(coordinator.run_turn(_request("你好")))

    assert _types(events) == ["start", "content-delta", "content-delta", "complete", "end"]
    assert events[0].session_id
    assert {event.session_id for event in events} == {events[0].session_id}


def test_recommendation_failure_completes_on_text_path():
    conversations = MemoryConversations()
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["ok"]),
        conversations=conversations,
        recommender=ExplodingRecommender(),
    )

    events = asyncio.run(coordinator.run_turn(_request("红色运动鞋")))

    assert _types(events) == ["start", "content-delta", "complete", "end"]
    assert [m["content"] for m in conversations.messages] == ["红色运动鞋", "ok"]


def test_detached_consumer_gets_no_frames_but_turn_finishes():
    conversations = MemoryConversations()
    engine = ScriptedEngine(list("abcdef"), delay_seconds=0.01)
    coordinator = TurnCoordinator(engine=engine, conversations=conversations)

    async def scenario():
        turn = coordinator.start_turn(_request("你好"))
        stream = turn.events()
        received = [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        await turn.wait()
        return turn, received

    turn, received = asyncio.run(scenario())

    assert _types(received) == ["start", "content-delta"]
    assert turn.detached is True
    assert turn.state is TurnState.ENDED
    assert turn.final_text == "abcdef"
    assert engine.finished is True
    assert turn._queue.empty()
    assert [(m["role"], m["content"]) for m in conversations.messages] == [("user", "你好"), ("assistant", "abcdef")]


def test_history_and_persona_prompt_reach_the_engine(db):
    engine = ScriptedEngine(["好的"])
    coordinator = TurnCoordinator(
        engine=engine,
        conversations=SQLiteConversationStore(db),
        system_prompt_for=PersonaDirectory(db).system_prompt,
        history_limit=10,
    )

    async def scenario():
        first = await coordinator.run_turn(_request("你好"))
        session_id = first[0].session_id
        await coordinator.run_turn(_request("再来一个", session_id=session_id))
        return session_id

    session_id = asyncio.run(scenario())

    second_call = engine.calls[1]
    assert second_call[0]["role"] == "system"
    assert "购物助手" in second_call[0]["content"]
    assert second_call[1:] == [
        {"role": "user", "content": "你好"},
        {"role": "assistant", "content": "好的"},
        {"role": "user", "content": "再来一个"},
    ]
    assert [m["content"] for m in db.recent_messages(session_id, limit=10)] == ["你好", "好的", "再来一个", "好的"]


def test_sqlite_store_records_recommendation_products_in_order(db):
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["推荐如下"]),
        conversations=SQLiteConversationStore(db),
        recommender=ProductRecommender(SQLiteCatalogStore(db)),
    )

    events = asyncio.run(coordinator.run_turn(_request("红色运动鞋，500以下")))
    session_id = events[0].session_id
    products_event = next(event for event in events if event.type == "products")

    messages = db.list_messages(session_ids=[session_id])
    assert [m["role"] for m in messages] == ["user", "assistant", "assistant"]
    assert db.message_product_ids(messages[1]["id"]) == [product["id"] for product in products_event.products]
    assert messages[2]["content"] == "推荐如下"


def test_recommendations_can_be_disabled(db):
    coordinator = TurnCoordinator(
        engine=ScriptedEngine(["ok"]),
        conversations=MemoryConversations(),
        recommender=ProductRecommender(SQLiteCatalogStore(db)),
        recommendations_enabled=False,
    )

    events = asyncio.run(coordinator.run_turn(_request("红色运动鞋")))

    assert "products" not in _types(events)
