"""Environment-driven configuration for the shopping chat service."""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
from pathlib import Path
from typing import Any


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except Exception:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except Exception:
        return default
    return value if value >= 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


def load_json_overrides(env_name: str) -> dict[str, Any]:
    """Read an optional JSON object from the file named by ``env_name``."""
    config_path = os.getenv(env_name, "").strip()
    if not config_path:
        return {}

    path = Path(config_path)
    if not path.exists() or not path.is_file():
        return {}

    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}

    if not isinstance(parsed, dict):
        return {}
    return parsed


@dataclass(frozen=True)
class ServiceConfig:
    db_path: Path
    default_user_id: str
    default_persona_id: str
    max_recommendations: int
    history_turns: int
    first_token_timeout_seconds: float
    idle_timeout_seconds: float
    total_timeout_seconds: float
    recommendations_enabled: bool

    @classmethod
    def from_env(cls, root_dir: Path) -> "ServiceConfig":
        raw_db_path = os.getenv("SHOP_DB_PATH", "").strip()
        db_path = Path(raw_db_path) if raw_db_path else root_dir / "data" / "shopping_chat.db"
        return cls(
            db_path=db_path,
            default_user_id=_env_str("SHOP_DEFAULT_USER_ID", "1"),
            default_persona_id=_env_str("SHOP_DEFAULT_PERSONA", "friendly"),
            max_recommendations=max(1, _env_int("SHOP_MAX_RECOMMENDATIONS", 6)),
            history_turns=_env_int("SHOP_HISTORY_MESSAGES", 10),
            first_token_timeout_seconds=_env_float("SHOP_FIRST_TOKEN_TIMEOUT_SECONDS", 30.0),
            idle_timeout_seconds=_env_float("SHOP_IDLE_TIMEOUT_SECONDS", 30.0),
            total_timeout_seconds=_env_float("SHOP_TOTAL_TIMEOUT_SECONDS", 120.0),
            recommendations_enabled=_env_bool("SHOP_RECOMMENDATIONS_ENABLED", True),
        )
