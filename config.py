"""
Matchday — Config
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
        env_file=".matchday.env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
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

    @field_validator("LOG_LEVEL")
    @classmethod
    def _norm_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    # =========================
    # CORS
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # Auth
    # =========================
    # Cron / worker callers send this as Bearer token or x-api-key
    WORKER_API_KEY: Optional[str] = None
    ADMIN_TOKEN: Optional[str] = None

    # =========================
    # Scoreboard (ESPN public JSON)
    # =========================
    SCOREBOARD_BASE_URL: str = "https://site.api.espn.com/apis/site/v2/sports"
    SCOREBOARD_TIMEOUT: float = 10.0

    # =========================
    # RPC / Treasury
    # =========================
    RPC_URL: str = "https://rpc.testnet.carv.io/rpc"
    TREASURY_PUBKEY: str = ""
    # base58 secret (64b or 32b seed) or a JSON byte array; MUST be set in env for payouts
    TREASURY_SECRET: Optional[str] = None
    PAYOUTS_ENABLED: bool = False

    # =========================
    # Token / Economics
    # =========================
    TOKEN_SYMBOL: str = "CARV"
    TOKEN_MINT: str = "D7WVEw9Pkf4dfCCE3fwGikRCCTvm9ipqTYPHRENLiw3s"
    TOKEN_DECIMALS: int = 9
    ENTRY_FEE: Decimal = Decimal("1")       # whole tokens per purchase
    WINNER_SHARE_BPS: int = 8000            # 80% of the pool goes to the winner

    # =========================
    # Scheduling
    # =========================
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: float = 30.0
    SELECTION_STALE_HOURS: int = 48

    # =========================
    # Database
    # =========================
    DB_PATH: str = "data/matchday.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def entry_fee_base(self) -> int:
        """Entry fee in token base units."""
        return int(self.ENTRY_FEE * (10 ** int(self.TOKEN_DECIMALS)))

# Instantiate global settings (values resolved from environment)
settings = Settings()
