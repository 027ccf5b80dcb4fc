from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class GameVariant(str, Enum):
    CONCEALMENT_GRID = "concealment_grid"
    WHEEL = "wheel"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    ledger_base_url: AnyHttpUrl = "http://mock-ledger:8001"
    account_id: str = "player-1"
    identity_token: Optional[str] = None
    hmac_secret: str = "change_secret"
    bearer_token: Optional[str] = None
    db_url: str = "sqlite:///./wagers.db"
    log_level: str = "INFO"
    request_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    handle_ttl_seconds: int = 300
    scale_factor: int = 10**8
    min_stake: int = 10_000_000
    max_stake: int = 100_000_000_000
    already_scaled_threshold: int = 100_000_000
    reserve_fee: int = 1_000
    balance_refresh_seconds: float = 30.0
    remote_authoritative_variants: list[GameVariant] = []
    multiplier_ceiling: float = 1_000_000.0
    wager_history_size: int = 100
    currency_symbol: str = "APTC"

settings = Settings()


class WagerStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RESOLVED = "resolved"


class LegKind(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class LegStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TerminalState(str, Enum):
    WON = "won"
    LOST = "lost"
    CASHED_OUT = "cashed_out"


class Mode(str, Enum):
    LIVE = "live"
    DEMO = "demo"


class IdentityKind(str, Enum):
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class Capability(str, Enum):
    AUTHENTICATED = "authenticated"
    READ_ONLY = "read_only"


class Purpose(str, Enum):
    LEDGER = "ledger"
    GAME = "game"

remote_status_map = {
    "active": None,
    "won": TerminalState.WON,
    "lost": TerminalState.LOST,
    "cashed_out": TerminalState.CASHED_OUT,
}
