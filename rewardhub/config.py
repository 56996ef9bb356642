from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    db_url: str = "sqlite:///./rewards.db"
    rpc_url: AnyHttpUrl = "http://127.0.0.1:8545"
    game_coin_contract_address: str = "0x0000000000000000000000000000000000000000"
    signer_private_key: Optional[str] = None
    start_block: int = 0
    coin_decimals: int = 18
    reward_schedule: dict[str, int] = {"PvP": 10, "Bot": 5}
    fee_multiplier_percent: int = 120
    receipt_timeout_seconds: float = 120.0
    event_name: str = "MatchWin"
    event_poll_seconds: float = 2.0
    subscription_backoff_seconds: float = 5.0
    retry_interval_seconds: float = 300.0
    retry_max_batch: int = 10
    retry_max_age_hours: int = 24
    retry_max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    balance_update_attempts: int = 5
    repair_grace_seconds: int = 60
    resubmit_grace_seconds: int = 600
    notify_webhook_url: Optional[AnyHttpUrl] = None
    bearer_token: Optional[str] = None
    run_event_listener: bool = True
    run_retry_supervisor: bool = True

settings = Settings()

class MatchType(str, Enum):
    PVP = "PvP"
    BOT = "Bot"

class PendingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

class RewardState(str, Enum):
    PENDING_UNCOMMITTED = "pending_uncommitted"
    PENDING_SUBMITTED = "pending_submitted"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"

class AttemptStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"

class AttemptKind(str, Enum):
    SETTLEMENT = "settlement"
    SUBMISSION = "submission"
    RECONCILIATION = "reconciliation"

OPEN_ATTEMPT_STATUSES = (AttemptStatus.PENDING.value, AttemptStatus.RETRYING.value)

ledger_method_map = {
    MatchType.PVP: "rewardPvPWin",
    MatchType.BOT: "rewardBotWin",
}
