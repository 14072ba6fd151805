from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # external blockchain API
    external_api_base_url: AnyHttpUrl = "http://mock-chain:8003"
    external_api_key: str = ""
    external_api_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    request_timeout_seconds: float = 120.0

    # cold-start warm-up
    health_path: str = "/"
    health_timeout_seconds: float = 90.0
    health_ttl_seconds: float = 300.0
    warmup_attempts: int = 4
    warmup_cooldown_seconds: float = 20.0
    warmup_retry_delay_seconds: float = 5.0

    # retry schedules
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0
    rate_limit_max_retries: int = 5
    rate_limit_backoff_seconds: float = 2.0
    rate_limit_max_delay_seconds: float = 32.0
    rate_limit_jitter_seconds: float = 1.0

    # temporization between transfers
    transfer_delay_min_seconds: float = 20.0
    transfer_delay_max_seconds: float = 45.0
    trade_delay_min_seconds: float = 1.0
    trade_delay_max_seconds: float = 3.0

    # balance confirmation
    confirmation_attempts: int = 6
    confirmation_base_delay_seconds: float = 2.0
    confirmation_jitter_seconds: float = 0.5
    confirmation_tolerance_sol: float = 0.00001

    # distribution
    distribution_min_sol: float = 0.2
    distribution_max_sol: float = 0.3
    distribution_total_sol: float = 0.99
    intermediate_funding_sol: float = 1.0

    # trading fees, all in SOL
    min_transfer_sol: float = 0.0001
    min_buy_amount_sol: float = 0.001
    max_buy_amount_sol: float = 0.25
    buy_fee_reserve_sol: float = 0.003
    sell_fee_reserve_sol: float = 0.003
    safety_buffer_sol: float = 0.002
    rent_exemption_sol: float = 0.00203928
    transaction_fee_sol: float = 0.000005
    default_priority_fee_sol: float = 0.000005

    log_level: str = "INFO"
    ledger_db_url: str = "sqlite:///./fanout.db"
    notification_webhook_url: Optional[AnyHttpUrl] = None

settings = Settings()

LAMPORTS_PER_SOL = 1_000_000_000

class WalletRole(str, Enum):
    DISTRIBUTOR = "distributor"
    INTERMEDIATE = "intermediate"
    TERMINAL = "terminal"

class FailureClass(str, Enum):
    RATE_LIMITED = "rate_limited"
    ROUTER_THROTTLED = "router_throttled"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    NETWORK_ERROR = "network_error"
    OK = "ok"

parent_role_map = {
    WalletRole.INTERMEDIATE: WalletRole.DISTRIBUTOR,
    WalletRole.TERMINAL: WalletRole.INTERMEDIATE,
}
