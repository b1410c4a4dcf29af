#!/usr/bin/env python3
"""Loads a JSON product catalog into the shopping chat SQLite database."""

from __future__ import annotations

import argparse
from dataclasses import replace
import os
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dotenv import load_dotenv
from shopping_chat.generation import CannedReplyEngine
from shopping_chat.service import ShoppingChatService
from shopping_chat.settings import ServiceConfig


def main() -> None:
    load_dotenv(ROOT_DIR / ".env")

    parser = argparse.ArgumentParser(description="Seed the product catalog used for chat recommendations.")
    parser.add_argument(
        "--catalog",
        default=str(ROOT_DIR / "data" / "sample_catalog.json"),
        help="Path to a JSON file with a products list.",
    )
    parser.add_argument(
        "--db",
        default="",
        help="SQLite database path. Defaults to SHOP_DB_PATH or data/shopping_chat.db.",
    )
    args = parser.parse_args()

    cfg = ServiceConfig.from_env(ROOT_DIR)
    if args.db:
        cfg = replace(cfg, db_path=Path(os.path.expanduser(args.db)).resolve())
    catalog_path = Path(os.path.expanduser(args.catalog)).resolve()

    # Seeding never talks to the model endpoint.
    service = ShoppingChatService(root_dir=ROOT_DIR, config=cfg, engine=CannedReplyEngine())
    count = service.seed_products_from_file(catalog_path)
    stats = service.stats()
    print(f"Upserted {count} products into {cfg.db_path}")
    print(f"products: {stats['product_count']}  personas: {stats['persona_count']}")


if __name__ == "__main__":
    main()
