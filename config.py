# config.py
"""
FAIRPLAY — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from decimal import Decimal
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".fairplay.env",
        env_prefix="",            # read raw names (e.g., DB_PATH)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    # =========================
    # CORS (optional)
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # Admin
    # =========================
    ADMIN_TOKEN: Optional[str] = None

    # =========================
    # Economics (amounts in base units)
    # =========================
    EDGE_BPS: int = 100                 # house edge for coin / dice payouts
    CRASH_EDGE_BPS: int = 100           # house edge baked into crash points
    CRASH_MAX_MULTIPLIER: Optional[Decimal] = None
    MIN_STAKE: int = 1
    MAX_STAKE: int = 1_000_000_000
    STARTING_BALANCE: int = 0           # demo credit for unseen contexts

    @field_validator("EDGE_BPS", "CRASH_EDGE_BPS")
    @classmethod
    def _check_bps(cls, v: int) -> int:
        if not 0 <= int(v) < 10_000:
            raise ValueError("edge must be in [0, 10000) basis points")
        return int(v)

    # =========================
    # Game Logic
    # =========================
    DICE_LOW: int = 1
    DICE_HIGH: int = 6
    SLOT_REELS: List[str] = [
        "CHERRY,LEMON,BELL,CHERRY,STAR,LEMON,CHERRY,SEVEN,BELL,LEMON",
        "CHERRY,LEMON,BELL,STAR,CHERRY,LEMON,SEVEN,BELL,CHERRY,LEMON",
        "LEMON,CHERRY,BELL,CHERRY,STAR,LEMON,BELL,CHERRY,SEVEN,LEMON",
    ]
    HISTORY_LIMIT: int = 100
    SEED_ROTATE_EVERY: int = 100        # reveal + recommit after this many nonces; 0 = never

    # =========================
    # Rounds (continuous coin-flip / crash)
    # =========================
    ROUNDS_ENABLED: bool = True
    ROUND_GAMES: List[str] = ["coin", "crash"]
    ROUND_BETTING_SECONDS: float = 10.0
    ROUND_COOLDOWN_SECONDS: float = 3.0
    ROUND_MIN_BETS: int = 0             # 0 = wait for the full countdown

    # =========================
    # Database
    # =========================
    DB_PATH: str = "/data/fairplay.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def house_edge(self) -> Decimal:
        """House edge as a fraction (EDGE_BPS / 10000)."""
        return Decimal(self.EDGE_BPS) / Decimal(10_000)

    @property
    def crash_edge(self) -> Decimal:
        return Decimal(self.CRASH_EDGE_BPS) / Decimal(10_000)

# Instantiate global settings (values resolved from environment)
settings = Settings()
