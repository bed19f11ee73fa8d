from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Brew Loyalty API"
    database_url: str = "sqlite:///brew_loyalty.db"
    log_level: str = "INFO"

    # Chain ledger
    rpc_url: Optional[str] = None
    loyalty_address: Optional[str] = None
    signer_private_key: Optional[SecretStr] = None
    receipt_timeout_seconds: float = 120.0

    # Accrual
    reward_threshold: int = 8
    accrual_max_retries: int = 5

    # Reconciliation polling
    poll_max_attempts: int = 5
    poll_base_delay_seconds: float = 1.0
    poll_final_delay_seconds: float = 2.0
    poll_initial_delay_seconds: float = 1.5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOYALTY_",
        extra="ignore",
    )

    @property
    def chain_configured(self) -> bool:
        return bool(self.rpc_url and self.loyalty_address)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
