"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.
"""

from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Relayer settings with environment-based configuration."""

    # Application
    environment: str = "development"

    # Ledger node
    node_ws_url: str = "ws://127.0.0.1:9944"
    ss58_format: int = 42
    type_registry_preset: Optional[str] = None

    # Market contract
    market_contract_address: str = ""
    market_metadata_file: str = "./market_metadata.json"
    contract_gas_limit: int = 1_000_000_000_000
    quote_id: int = 2  # KSM

    # Custodial account
    admin_seed: str = ""
    admin_address: str = ""

    # Extrinsic matching
    quote_transfer_module: str = "Balances"
    nft_transfer_module: str = "Nft"

    # Fees (smallest quote unit)
    withdraw_fee_rate: Decimal = Decimal("0.02")
    withdraw_min_fee: Decimal = Decimal("10000000000")
    quote_payout_enabled: bool = False

    # Persisted state
    state_dir: Path = Path(".")
    block_cursor_file: str = "block.json"
    withdrawal_cursor_file: str = "withdrawal_id.json"
    queued_deposits_file: str = "quoteDeposits.json"
    quote_withdrawals_file: str = "quoteWithdrawals.json"
    operations_log_prefix: str = "operations_log"
    start_block: int = 0

    # Run loop
    retry_delay_seconds: float = 1.0
    max_scan_retries: int = 0  # 0 = retry until the scan phase completes
    tx_timeout_seconds: Optional[float] = 300.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # json or console
    log_file: Optional[str] = None

    @validator("environment")
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @validator("withdraw_fee_rate")
    def validate_fee_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 1:
            raise ValueError("Fee rate must be in [0, 1)")
        return v

    @validator("ss58_format")
    def validate_ss58_format(cls, v: int) -> int:
        if not 0 <= v < 16384:
            raise ValueError("SS58 format must be in [0, 16384)")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()


class StateConfig:
    """Locations of the relayer's persisted state."""

    @staticmethod
    def path_for(file_name: str, base: Optional[Path] = None) -> Path:
        """Resolve a state file name against the state directory."""
        return Path(base or settings.state_dir) / file_name
