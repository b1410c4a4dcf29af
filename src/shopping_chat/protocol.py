"""Typed frames of the per-turn streaming protocol and their wire encodings."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from typing import Any, Iterable, Union


START = "start"
CONTENT_DELTA = "content-delta"
PRODUCTS = "products"
COMPLETE = "complete"
ERROR = "error"
END = "end"

TERMINAL_TYPES = frozenset({COMPLETE, ERROR})


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class StartEvent:
    session_id: str
    timestamp: str = field(default_factory=_timestamp)
    type: str = field(default=START, init=False)

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ContentDeltaEvent:
    session_id: str
    content: str
    timestamp: str = field(default_factory=_timestamp)
    type: str = field(default=CONTENT_DELTA, init=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "content": self.content,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ProductsEvent:
    session_id: str
    products: tuple[dict[str, Any], ...]
    summary_text: str
    search_query: str
    timestamp: str = field(default_factory=_timestamp)
    type: str = field(default=PRODUCTS, init=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "products": list(self.products),
            "summaryText": self.summary_text,
            "searchQuery": self.search_query,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class CompleteEvent:
    session_id: str
    content: str
    timestamp: str = field(default_factory=_timestamp)
    type: str = field(default=COMPLETE, init=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "content": self.content,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ErrorEvent:
    session_id: str
    error: str
    timestamp: str = field(default_factory=_timestamp)
    type: str = field(default=ERROR, init=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "error": self.error,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class EndEvent:
    session_id: str
    timestamp: str = field(default_factory=_timestamp)
    type: str = field(default=END, init=False)

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, "timestamp": self.timestamp}


StreamEvent = Union[StartEvent, ContentDeltaEvent, ProductsEvent, CompleteEvent, ErrorEvent, EndEvent]


def encode_json(event: StreamEvent) -> str:
    return json.dumps(event.to_payload(), ensure_ascii=False)


def encode_sse(event: StreamEvent) -> str:
    return f"data: {encode_json(event)}\n\n"


def validate_sequence(events: Iterable[StreamEvent | dict[str, Any]]) -> None:
    """Raise ``ValueError`` unless the frames form one well-formed turn.

    Accepts frame objects or decoded wire payloads.
    """
    types = [event["type"] if isinstance(event, dict) else event.type for event in events]
    if not types or types[0] != START:
        raise ValueError("A turn must begin with exactly one start frame.")
    if types[-1] != END:
        raise ValueError("A turn must finish with an end frame.")
    if types.count(START) != 1 or types.count(END) != 1:
        raise ValueError("start and end frames must each appear exactly once.")
    if types.count(PRODUCTS) > 1:
        raise ValueError("At most one products frame is allowed per turn.")

    terminal_positions = [i for i, value in enumerate(types) if value in TERMINAL_TYPES]
    if len(terminal_positions) != 1:
        raise ValueError("Exactly one complete or error frame is required.")

    terminal_at = terminal_positions[0]
    for index, value in enumerate(types[1:-1], start=1):
        if index == terminal_at:
            continue
        if value == CONTENT_DELTA and index > terminal_at:
            raise ValueError("content-delta frames must precede the complete/error frame.")
        if value not in {CONTENT_DELTA, PRODUCTS}:
            raise ValueError(f"Unexpected frame type inside a turn: {value}")
