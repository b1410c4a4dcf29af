"""FastAPI entrypoint exposing the shopping chat APIs: streamed chat, recommendations, sessions, personas."""

from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from shopping_chat.coordinator import Turn
from shopping_chat.protocol import EndEvent, ErrorEvent, StartEvent, encode_json, encode_sse
from shopping_chat.service import ShoppingChatService


load_dotenv(ROOT_DIR / ".env")
logging.basicConfig(
    level=os.getenv("SHOP_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_LOGGER = logging.getLogger("shopping_chat.api")


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    user_id: str | None = None
    persona_id: str | None = None
    session_id: str | None = None


class QueryRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000)


class SessionCreateRequest(BaseModel):
    user_id: str | None = None
    persona_id: str | None = None


class PersonaInitRequest(BaseModel):
    user_id: str | None = None


class PersonaSwitchRequest(BaseModel):
    persona_id: str = Field(min_length=1)
    user_id: str | None = None


def _cors_origins() -> list[str]:
    raw = os.getenv("SHOP_CORS_ORIGINS", "").strip()
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


async def _sse_frames(turn: Turn):
    try:
        async for event in turn.events():
            yield encode_sse(event)
    finally:
        turn.detach()


def create_app(service: ShoppingChatService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service or ShoppingChatService(root_dir=ROOT_DIR)
        yield
        # Let detached turns finish their writes before shutdown.
        await app.state.service.coordinator.drain()

    app = FastAPI(title="Shopping Chat Assistant", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def svc() -> ShoppingChatService:
        return app.state.service

    @app.get("/api/health")
    def health() -> dict:
        details = svc().health()
        return {
            "status": "ok",
            "app": "shopping-chat-assistant",
            **details,
        }

    @app.post("/api/chat/stream")
    async def chat_stream(request: ChatRequest) -> StreamingResponse:
        try:
            turn = await svc().start_turn(
                message=request.message,
                user_id=request.user_id,
                persona_id=request.persona_id,
                session_id=request.session_id,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        return StreamingResponse(
            _sse_frames(turn),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.post("/api/chat")
    async def chat(request: ChatRequest) -> dict:
        try:
            return await svc().chat(
                message=request.message,
                user_id=request.user_id,
                persona_id=request.persona_id,
                session_id=request.session_id,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RuntimeError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.websocket("/api/chat/ws")
    async def chat_ws(websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    data = {"message": raw}
                if not isinstance(data, dict):
                    data = {"message": str(data)}

                session_id = data.get("session_id") or data.get("sessionId")
                try:
                    turn = await svc().start_turn(
                        message=str(data.get("message") or ""),
                        user_id=data.get("user_id") or data.get("userId"),
                        persona_id=data.get("persona_id") or data.get("personaId"),
                        session_id=session_id,
                    )
                except (KeyError, ValueError) as exc:
                    # Rejected turns are still framed start..end.
                    rejected = str(session_id or "")
                    for event in (
                        StartEvent(session_id=rejected),
                        ErrorEvent(session_id=rejected, error=str(exc)),
                        EndEvent(session_id=rejected),
                    ):
                        await websocket.send_text(encode_json(event))
                    continue

                try:
                    async for event in turn.events():
                        await websocket.send_text(encode_json(event))
                finally:
                    turn.detach()
        except WebSocketDisconnect:
            _LOGGER.info("Chat websocket disconnected.")

    @app.post("/api/intent/analyze")
    async def analyze(request: QueryRequest) -> dict:
        try:
            return await svc().analyze(request.query)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/api/recommendations")
    async def recommendations(request: QueryRequest) -> dict:
        try:
            return await svc().recommend(request.query)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/api/chat/session/create")
    def create_session(request: SessionCreateRequest) -> dict:
        try:
            return svc().create_session(user_id=request.user_id, persona_id=request.persona_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.delete("/api/chat/session/{session_id}")
    def delete_session(session_id: str, user_id: str | None = None) -> dict:
        try:
            return svc().delete_session(session_id, user_id=user_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/api/chat/history")
    def chat_history(
        user_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        safe_limit = max(1, min(limit, 200))
        safe_offset = max(0, offset)
        try:
            return svc().chat_history(
                user_id=user_id,
                session_id=session_id,
                limit=safe_limit,
                offset=safe_offset,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/api/personas")
    def personas() -> dict:
        return {"personas": svc().list_personas()}

    @app.post("/api/persona/init")
    def persona_init(request: PersonaInitRequest) -> dict:
        return svc().persona_init(request.user_id)

    @app.post("/api/persona/switch")
    def persona_switch(request: PersonaSwitchRequest) -> dict:
        try:
            return svc().switch_persona(persona_id=request.persona_id, user_id=request.user_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    return app


app = create_app()
