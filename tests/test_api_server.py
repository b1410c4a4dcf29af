from __future__ import annotations

import json

from fastapi.testclient import TestClient
import pytest

from conftest import SAMPLE_PRODUCTS, ScriptedEngine

from api_server import create_app
from shopping_chat.protocol import validate_sequence
from shopping_chat.service import ShoppingChatService


@pytest.fixture
def service(tmp_path, service_config) -> ShoppingChatService:
    svc = ShoppingChatService(root_dir=tmp_path, config=service_config, engine=ScriptedEngine(["你", "好", "！"]))
    svc.seed_products(SAMPLE_PRODUCTS)
    return svc


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


def _sse_frames(body: str) -> list[dict]:
    return [json.loads(line[len("data: ") :]) for line in body.splitlines() if line.startswith("data: ")]


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["engine"]["engine"] == "scripted"
    assert payload["stats"]["product_count"] == len(SAMPLE_PRODUCTS)
    assert payload["stats"]["persona_count"] == 3


def test_chat_stream_plain_turn(client):
    response = client.post("/api/chat/stream", json={"message": "你好"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = _sse_frames(response.text)
    validate_sequence(frames)
    assert [frame["type"] for frame in frames] == ["start", "content-delta", "content-delta", "content-delta", "complete", "end"]
    assert frames[-2]["content"] == "你好！"


def test_chat_stream_with_products_then_history(client):
    response = client.post("/api/chat/stream", json={"message": "红色运动鞋，500以下", "user_id": "42"})
    frames = _sse_frames(response.text)
    validate_sequence(frames)

    products = next(frame for frame in frames if frame["type"] == "products")
    assert [product["id"] for product in products["products"]][:2] == [1, 3]
    assert products["summaryText"].startswith("根据您的需求")

    session_id = frames[0]["sessionId"]
    history = client.get("/api/chat/history", params={"user_id": "42", "session_id": session_id}).json()
    assert [message["role"] for message in history["messages"]] == ["user", "assistant", "assistant"]
    assert [product["id"] for product in history["messages"][1]["products"]] == [
        product["id"] for product in products["products"]
    ]
    assert history["messages"][2]["content"] == "你好！"


def test_chat_json_endpoint(client):
    response = client.post("/api/chat", json={"message": "推荐一款手机"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["reply"] == "你好！"
    assert payload["deltaCount"] == 3
    assert payload["products"][0]["id"] == 8
    assert payload["personaId"] == "friendly"


def test_chat_rejects_bad_input(client):
    assert client.post("/api/chat/stream", json={"message": ""}).status_code == 422
    assert client.post("/api/chat/stream", json={"message": "hi", "session_id": "missing"}).status_code == 404
    assert client.post("/api/chat/stream", json={"message": "hi", "persona_id": "pirate"}).status_code == 400


def test_chat_engine_failure_maps_to_500(tmp_path, service_config):
    svc = ShoppingChatService(root_dir=tmp_path, config=service_config, engine=ScriptedEngine(["a"], fail_after=1))
    with TestClient(create_app(svc)) as test_client:
        stream = test_client.post("/api/chat/stream", json={"message": "你好"})
        frames = _sse_frames(stream.text)
        assert [frame["type"] for frame in frames] == ["start", "content-delta", "error", "end"]

        response = test_client.post("/api/chat", json={"message": "你好"})
        assert response.status_code == 500


def test_session_lifecycle(client):
    created = client.post("/api/chat/session/create", json={"user_id": "7", "persona_id": "luxury"})
    assert created.status_code == 200
    session = created.json()
    assert session["personaId"] == "luxury"
    assert session["greeting"]

    turn = client.post(
        "/api/chat/stream",
        json={"message": "你好", "user_id": "7", "session_id": session["sessionId"]},
    )
    assert {frame["sessionId"] for frame in _sse_frames(turn.text)} == {session["sessionId"]}

    history = client.get("/api/chat/history", params={"user_id": "7"}).json()
    assert [item["sessionId"] for item in history["sessions"]] == [session["sessionId"]]
    assert all(message["personaId"] == "luxury" for message in history["messages"])

    deleted = client.delete(f"/api/chat/session/{session['sessionId']}", params={"user_id": "7"})
    assert deleted.status_code == 200
    assert client.get("/api/chat/history", params={"user_id": "7", "session_id": session["sessionId"]}).status_code == 404
    assert client.delete(f"/api/chat/session/{session['sessionId']}", params={"user_id": "7"}).status_code == 404


def test_other_users_cannot_use_a_session(client):
    session = client.post("/api/chat/session/create", json={"user_id": "alice"}).json()

    response = client.post(
        "/api/chat/stream",
        json={"message": "你好", "user_id": "bob", "session_id": session["sessionId"]},
    )
    assert response.status_code == 404


def test_personas(client):
    personas = client.get("/api/personas").json()["personas"]
    assert {persona["id"] for persona in personas} == {"friendly", "rational", "luxury"}

    initial = client.post("/api/persona/init", json={"user_id": "9"}).json()
    assert initial["personaId"] == "friendly"

    switched = client.post("/api/persona/switch", json={"user_id": "9", "persona_id": "rational"})
    assert switched.status_code == 200
    assert "Let's optimize for quality and value." in switched.json()["message"]
    assert client.post("/api/persona/init", json={"user_id": "9"}).json()["personaId"] == "rational"

    assert client.post("/api/persona/switch", json={"user_id": "9", "persona_id": "pirate"}).status_code == 404


def test_default_persona_applies_to_new_turns(client):
    client.post("/api/persona/switch", json={"user_id": "5", "persona_id": "rational"})

    payload = client.post("/api/chat", json={"message": "你好", "user_id": "5"}).json()

    assert payload["personaId"] == "rational"


def test_intent_analysis(client):
    payload = client.post("/api/intent/analyze", json={"query": "iPhone vs 华为手机"}).json()

    assert payload["intent"]["category"] == "electronics"
    assert payload["isComparison"] is True
    assert payload["shouldRecommend"] is True
    assert payload["recommendation"]["hasRecommendations"] is True


def test_recommendations_endpoint(client):
    payload = client.post("/api/recommendations", json={"query": "今天天气怎么样"}).json()

    assert payload["hasRecommendations"] is False
    assert payload["products"] == []


def test_websocket_turns(client):
    with client.websocket_connect("/api/chat/ws") as websocket:
        websocket.send_json({"message": "你好"})
        frames = []
        while True:
            frame = websocket.receive_json()
            frames.append(frame)
            if frame["type"] == "end":
                break
        validate_sequence(frames)

        websocket.send_json({"message": ""})
        rejected = [websocket.receive_json() for _ in range(3)]
        assert [frame["type"] for frame in rejected] == ["start", "error", "end"]
        validate_sequence(rejected)

        websocket.send_json({"message": "你好", "session_id": "missing"})
        rejected = [websocket.receive_json() for _ in range(3)]
        assert [frame["type"] for frame in rejected] == ["start", "error", "end"]
        assert {frame["sessionId"] for frame in rejected} == {"missing"}

        websocket.send_text("红色运动鞋")
        types = []
        while True:
            frame = websocket.receive_json()
            types.append(frame["type"])
            if frame["type"] == "end":
                break
        assert "products" in types
