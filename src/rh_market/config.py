"""Configuration helpers for the marketplace."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Settings:
    """Runtime settings loaded from the environment."""

    database_path: str = "data/market.db"
    webhook_url: Optional[str] = None
    frontend_url: str = "http://localhost:5173"
    item_defs_path: Optional[str] = None
    transaction_retries: int = 3


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise RuntimeError(f"{name} must be at least 1")
    return value


def load_settings() -> Settings:
    """Load settings from environment variables.

    The function will read a local `.env` file when present.
    """

    load_dotenv()
    return Settings(
        database_path=os.getenv("MARKET_DB_PATH", "data/market.db"),
        webhook_url=os.getenv("DISCORD_WEBHOOK_URL") or None,
        frontend_url=os.getenv("MARKET_FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        item_defs_path=os.getenv("MARKET_ITEM_DEFS") or None,
        transaction_retries=_int_from_env("MARKET_TRANSACTION_RETRIES", 3),
    )
