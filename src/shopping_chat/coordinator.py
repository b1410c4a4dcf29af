"""Per-turn streaming coordinator.

A turn persists the user message, streams the engine reply as ``content-delta``
frames, optionally attaches one ``products`` frame, persists the assistant
messages and finishes with ``complete``/``error`` followed by ``end``.

The turn body runs as its own task and feeds an ``asyncio.Queue``. A consumer
that goes away calls ``Turn.detach()``: no further frames are queued, but the
engine call and the persistence writes still run to the end so the transcript
stays consistent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
import logging
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

from shopping_chat.conversation import ASSISTANT, USER, ConversationStore
from shopping_chat.db import run_blocking
from shopping_chat.generation import (
    ChatMessage,
    GenerationEngine,
    GenerationOptions,
    GenerationTimeout,
)
from shopping_chat.protocol import (
    CompleteEvent,
    ContentDeltaEvent,
    EndEvent,
    ErrorEvent,
    ProductsEvent,
    StartEvent,
    StreamEvent,
)
from shopping_chat.recommendation import ProductRecommender, RecommendationResult


_LOGGER = logging.getLogger(__name__)

TIMEOUT_ERROR_MESSAGE = "The assistant took too long to answer. Please try again."
GENERIC_ERROR_MESSAGE = "The assistant is temporarily unavailable. Please try again."


class TurnState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    STREAMING = "streaming"
    RECOMMENDING = "recommending"
    COMPLETED = "completed"
    ERRORED = "errored"
    ENDED = "ended"


@dataclass(frozen=True)
class TurnRequest:
    text: str
    user_id: str
    persona_id: str
    session_id: str | None = None


@dataclass(frozen=True)
class TurnTimeouts:
    first_token_seconds: float = 30.0
    idle_seconds: float = 30.0
    total_seconds: float = 120.0


def safe_error_message(exc: BaseException) -> str:
    if isinstance(exc, GenerationTimeout):
        return TIMEOUT_ERROR_MESSAGE
    return GENERIC_ERROR_MESSAGE


class Turn:
    """Handle on one running turn: read its frames, detach, or wait for it."""

    def __init__(self, request: TurnRequest) -> None:
        self.request = request
        self.session_id: str = request.session_id or ""
        self.state = TurnState.IDLE
        self.final_text: str | None = None
        self.recommendation: RecommendationResult | None = None
        self.error: str | None = None
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._detached = False
        self._task: asyncio.Task[None] | None = None

    @property
    def detached(self) -> bool:
        return self._detached

    def _emit(self, event: StreamEvent) -> None:
        if self._detached:
            return
        self._queue.put_nowait(event)

    def _close(self) -> None:
        if not self._detached:
            self._queue.put_nowait(None)

    def detach(self) -> None:
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()
        if self.state is not TurnState.ENDED:
            _LOGGER.info("Consumer detached from turn in session %s (state=%s).", self.session_id, self.state.value)

    async def events(self) -> AsyncIterator[StreamEvent]:
        finished = False
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    finished = True
                    return
                yield event
        finally:
            if not finished:
                self.detach()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)


class TurnCoordinator:
    def __init__(
        self,
        *,
        engine: GenerationEngine,
        conversations: ConversationStore,
        recommender: ProductRecommender | None = None,
        system_prompt_for: Callable[[str], str] | None = None,
        options: GenerationOptions | None = None,
        timeouts: TurnTimeouts | None = None,
        history_limit: int = 10,
        recommendations_enabled: bool = True,
    ) -> None:
        self.engine = engine
        self.conversations = conversations
        self.recommender = recommender
        self.system_prompt_for = system_prompt_for
        self.options = options or GenerationOptions()
        self.timeouts = timeouts or TurnTimeouts()
        self.history_limit = max(0, int(history_limit))
        self.recommendations_enabled = recommendations_enabled
        self._tasks: set[asyncio.Task[None]] = set()

    def start_turn(self, request: TurnRequest) -> Turn:
        """Schedule a turn on the running loop and return its handle."""
        turn = Turn(request)
        task = asyncio.get_running_loop().create_task(self._run(turn))
        turn._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return turn

    async def run_turn(self, request: TurnRequest) -> list[StreamEvent]:
        turn = self.start_turn(request)
        return [event async for event in turn.events()]

    async def drain(self) -> None:
        """Wait for every background turn, including detached ones."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _persist(self, label: str, write: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await write()
        except Exception:
            _LOGGER.warning("Failed to persist %s; continuing without it.", label, exc_info=True)
            return None

    async def _open_session(self, turn: Turn) -> str:
        request = turn.request
        if request.session_id:
            return request.session_id
        session = await self._persist(
            "chat session",
            lambda: self.conversations.create_session(user_id=request.user_id, persona_id=request.persona_id),
        )
        if session and session.get("session_id"):
            return str(session["session_id"])
        # Keep the turn addressable even when the session row could not be written.
        return uuid4().hex

    async def _load_history(self, session_id: str) -> list[ChatMessage]:
        if self.history_limit <= 0:
            return []
        try:
            rows = await self.conversations.recent_messages(session_id, limit=self.history_limit)
        except Exception:
            _LOGGER.warning("Could not load history for session %s.", session_id, exc_info=True)
            return []
        return [
            {"role": str(row["role"]), "content": str(row["content"])}
            for row in rows
            if row.get("role") in {USER, ASSISTANT} and row.get("content")
        ]

    async def _system_prompt(self, persona_id: str) -> str:
        if self.system_prompt_for is None:
            return ""
        try:
            return str(await run_blocking(self.system_prompt_for, persona_id) or "")
        except Exception:
            _LOGGER.warning("Could not resolve system prompt for persona %s.", persona_id, exc_info=True)
            return ""

    async def _build_messages(self, turn: Turn, history: list[ChatMessage]) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        prompt = await self._system_prompt(turn.request.persona_id)
        if prompt:
            messages.append({"role": "system", "content": prompt})
        messages.extend(history)
        messages.append({"role": USER, "content": turn.request.text})
        return messages

    async def _consume(self, turn: Turn, messages: list[ChatMessage], parts: list[str]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeouts.total_seconds
        options = replace(self.options, persona_id=turn.request.persona_id)
        iterator = self.engine.stream(messages, options).__aiter__()
        received_any = False
        try:
            while True:
                budget = self.timeouts.idle_seconds if received_any else self.timeouts.first_token_seconds
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise GenerationTimeout("Generation exceeded the total time budget.")
                try:
                    fragment = await asyncio.wait_for(iterator.__anext__(), timeout=min(budget, remaining))
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    phase = "next fragment" if received_any else "first fragment"
                    raise GenerationTimeout(f"Timed out waiting for the {phase}.") from exc
                received_any = True
                if not fragment:
                    continue
                parts.append(fragment)
                turn._emit(ContentDeltaEvent(session_id=turn.session_id, content=fragment))
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    _LOGGER.debug("Engine stream did not close cleanly.", exc_info=True)

    async def _recommend(self, turn: Turn) -> None:
        text = turn.request.text
        if self.recommender is None or not self.recommendations_enabled:
            return
        if not self.recommender.should_recommend(text):
            return

        turn.state = TurnState.RECOMMENDING
        try:
            result = await self.recommender.recommend(text)
        except Exception:
            _LOGGER.warning("Recommendation failed for session %s; completing without products.", turn.session_id, exc_info=True)
            return
        if not result.has_recommendations or not result.products:
            return

        turn.recommendation = result
        turn._emit(
            ProductsEvent(
                session_id=turn.session_id,
                products=tuple(product.to_public() for product in result.products),
                summary_text=result.summary_text,
                search_query=result.search_query,
            )
        )
        await self._persist(
            "recommendation message",
            lambda: self.conversations.create_message(
                session_id=turn.session_id,
                role=ASSISTANT,
                content=result.summary_text,
                persona_id=turn.request.persona_id,
                product_ids=result.product_ids,
            ),
        )

    async def _drive(self, turn: Turn) -> None:
        request = turn.request
        turn.session_id = await self._open_session(turn)
        history = await self._load_history(turn.session_id)
        await self._persist(
            "user message",
            lambda: self.conversations.create_message(
                session_id=turn.session_id,
                role=USER,
                content=request.text,
                persona_id=request.persona_id,
            ),
        )
        turn.state = TurnState.STARTED
        turn._emit(StartEvent(session_id=turn.session_id))

        messages = await self._build_messages(turn, history)
        turn.state = TurnState.STREAMING
        parts: list[str] = []
        try:
            await self._consume(turn, messages, parts)
        except Exception as exc:
            turn.state = TurnState.ERRORED
            turn.error = safe_error_message(exc)
            _LOGGER.warning("Generation failed for session %s: %s", turn.session_id, exc)
            turn._emit(ErrorEvent(session_id=turn.session_id, error=turn.error))
            return

        await self._recommend(turn)

        full_text = "".join(parts)
        await self._persist(
            "assistant message",
            lambda: self.conversations.create_message(
                session_id=turn.session_id,
                role=ASSISTANT,
                content=full_text,
                persona_id=request.persona_id,
            ),
        )
        turn.final_text = full_text
        turn.state = TurnState.COMPLETED
        turn._emit(CompleteEvent(session_id=turn.session_id, content=full_text))

    async def _run(self, turn: Turn) -> None:
        try:
            await self._drive(turn)
        except Exception:
            _LOGGER.exception("Turn in session %s failed unexpectedly.", turn.session_id)
            if turn.state is TurnState.IDLE:
                turn._emit(StartEvent(session_id=turn.session_id))
            if turn.state not in {TurnState.COMPLETED, TurnState.ERRORED}:
                turn.state = TurnState.ERRORED
                turn.error = GENERIC_ERROR_MESSAGE
                turn._emit(ErrorEvent(session_id=turn.session_id, error=turn.error))
        finally:
            turn._emit(EndEvent(session_id=turn.session_id))
            turn.state = TurnState.ENDED
            turn._close()
