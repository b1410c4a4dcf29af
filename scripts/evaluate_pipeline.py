#!/usr/bin/env python3
"""Runs sample queries through intent extraction, recommendations and a full chat turn, reporting latency."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import statistics
import sys
import time

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dotenv import load_dotenv
from shopping_chat.intent import extract_intent
from shopping_chat.protocol import validate_sequence
from shopping_chat.query_plan import synthesize
from shopping_chat.service import ShoppingChatService


DEFAULT_QUERIES = [
    "红色运动鞋，500以下",
    "推荐一款华为手机",
    "黑色连衣裙 200到500",
    "想买个Gucci包包",
    "red sneakers under 600",
    "香奈儿口红",
    "笔记本电脑 5k以上",
    "今天天气怎么样",
]


async def evaluate(service: ShoppingChatService, queries: list[str], *, run_turns: bool) -> dict:
    results = []
    recommend_latency = []
    turn_latency = []

    for query in queries:
        intent = extract_intent(query)
        attempts = synthesize(intent, limit=service.cfg.max_recommendations)

        start = time.perf_counter()
        recommendation = await service.recommender.recommend(query)
        recommend_ms = (time.perf_counter() - start) * 1000.0
        recommend_latency.append(recommend_ms)

        row = {
            "query": query,
            "intent": intent.to_dict(),
            "attempts": [attempt.kind for attempt in attempts],
            "has_recommendations": recommendation.has_recommendations,
            "product_ids": recommendation.product_ids,
            "recommend_latency_ms": round(recommend_ms, 2),
        }

        if run_turns:
            start = time.perf_counter()
            turn = await service.start_turn(message=query)
            frames = [event async for event in turn.events()]
            turn_ms = (time.perf_counter() - start) * 1000.0
            turn_latency.append(turn_ms)
            try:
                validate_sequence(frames)
                sequence_ok = True
            except ValueError:
                sequence_ok = False
            row.update(
                {
                    "turn_latency_ms": round(turn_ms, 2),
                    "frames": [frame.type for frame in frames],
                    "sequence_ok": sequence_ok,
                }
            )

        results.append(row)

    summary = {
        "queries": len(queries),
        "with_intent": sum(1 for row in results if row["intent"]["hasIntent"]),
        "with_products": sum(1 for row in results if row["product_ids"]),
        "recommend_latency_ms_avg": round(statistics.mean(recommend_latency), 2) if recommend_latency else 0.0,
    }
    if run_turns:
        summary["turn_latency_ms_avg"] = round(statistics.mean(turn_latency), 2) if turn_latency else 0.0
        summary["sequences_ok"] = sum(1 for row in results if row.get("sequence_ok"))

    return {
        "summary": summary,
        "results": results,
    }


def main() -> int:
    load_dotenv(ROOT_DIR / ".env")

    parser = argparse.ArgumentParser(description="Evaluate intent extraction, recommendations and streamed turns.")
    parser.add_argument(
        "--output",
        type=Path,
        default=ROOT_DIR / "docs" / "eval_last_run.json",
        help="Where to write JSON evaluation results.",
    )
    parser.add_argument(
        "--query",
        action="append",
        default=[],
        help="Custom query (can be passed multiple times).",
    )
    parser.add_argument(
        "--skip-turns",
        action="store_true",
        help="Only evaluate intent extraction and recommendations.",
    )
    args = parser.parse_args()

    queries = args.query if args.query else DEFAULT_QUERIES
    service = ShoppingChatService(root_dir=ROOT_DIR)

    payload = asyncio.run(evaluate(service, queries, run_turns=not args.skip_turns))
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    summary = payload["summary"]
    print("Pipeline Evaluation")
    print(f"queries: {summary['queries']}")
    print(f"with intent: {summary['with_intent']}  with products: {summary['with_products']}")
    print(f"recommend latency avg: {summary['recommend_latency_ms_avg']} ms")
    if "turn_latency_ms_avg" in summary:
        print(f"turn latency avg: {summary['turn_latency_ms_avg']} ms")
        print(f"well-formed turns: {summary['sequences_ok']}/{summary['queries']}")
    print(f"saved: {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
