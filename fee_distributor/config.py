"""
Configuration settings for the fee distributor.

Uses Pydantic Settings to load environment variables (and `.env`) once at
startup. Components never read settings themselves: the builder methods below
turn the flat environment into the explicit config structs each component
receives.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fee_distributor.domain.models import RetryPolicy
from fee_distributor.infrastructure.jupiter import DEFAULT_JUPITER_API_URL
from fee_distributor.infrastructure.solana_rpc import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from fee_distributor.orchestrator import CycleConfig
from fee_distributor.pipeline.balance import BalanceBand
from fee_distributor.pipeline.disbursement import DisbursementConfig
from fee_distributor.pipeline.swap import NATIVE_MINT, SwapConfig
from fee_distributor.supervisor import SupervisorConfig

WBTC_MINT = "3NZ9JMVBmGAqocybic2c7LQCJScmgsAZ6vQqTDzcqmJh"


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    # Ledger
    solana_rpc_url: str = Field("https://api.mainnet-beta.solana.com", alias="SOLANA_RPC_URL")
    solana_rpc_fallback_urls: str = Field("", alias="SOLANA_RPC_FALLBACK_URLS")
    request_timeout_seconds: float = Field(30.0, gt=0, alias="REQUEST_TIMEOUT_SECONDS")

    # Keys and addresses
    wallet_private_key: str = Field("", alias="WALLET_PRIVATE_KEY", repr=False)
    fee_collector_private_key: str = Field("", alias="FEE_COLLECTOR_PRIVATE_KEY", repr=False)
    token_mint: str = Field("", alias="TOKEN_MINT")
    fee_collector_address: str = Field("", alias="FEE_COLLECTOR_ADDRESS")
    excluded_addresses: str = Field("", alias="EXCLUDED_ADDRESSES")
    token_program_id: str = Field(TOKEN_2022_PROGRAM_ID, alias="TOKEN_PROGRAM_ID")

    # Conversion
    reward_mint: str = Field(WBTC_MINT, alias="REWARD_MINT")
    reward_token_program_id: str = Field(TOKEN_PROGRAM_ID, alias="REWARD_TOKEN_PROGRAM_ID")
    intermediate_mint: str = Field(NATIVE_MINT, alias="INTERMEDIATE_MINT")
    intermediate_token_program_id: str = Field(TOKEN_PROGRAM_ID, alias="INTERMEDIATE_TOKEN_PROGRAM_ID")
    jupiter_api_url: str = Field(DEFAULT_JUPITER_API_URL, alias="JUPITER_API_URL")
    slippage_bps: int = Field(50, ge=0, le=10_000, alias="SLIPPAGE_BPS")
    max_slippage_bps: int = Field(100, ge=0, le=10_000, alias="MAX_SLIPPAGE_BPS")
    max_price_impact_pct: float = Field(5.0, ge=0, alias="MAX_PRICE_IMPACT_PCT")

    # Harvest
    reward_share_bps: int = Field(5_000, ge=0, le=10_000, alias="REWARD_SHARE_BPS")
    minimum_fee_amount: int = Field(1_000_000, ge=0, alias="MINIMUM_FEE_AMOUNT")

    # Balance band (lamports)
    min_balance_lamports: int = Field(100_000_000, ge=0, alias="MIN_BALANCE_LAMPORTS")
    target_balance_lamports: int = Field(500_000_000, ge=0, alias="TARGET_BALANCE_LAMPORTS")
    operator_min_balance_lamports: int = Field(100_000_000, ge=0, alias="OPERATOR_MIN_BALANCE_LAMPORTS")
    large_transfer_lamports: int = Field(1_000_000_000, ge=0, alias="LARGE_TRANSFER_LAMPORTS")
    sweep_excess: bool = Field(False, alias="SWEEP_EXCESS")

    # Disbursement
    batch_size: int = Field(5, ge=1, alias="BATCH_SIZE")
    large_transfer_tokens: int = Field(1_000, ge=0, alias="LARGE_TRANSFER_TOKENS")

    # Retry
    max_retries: int = Field(3, ge=1, alias="MAX_RETRIES")
    base_delay_seconds: float = Field(1.0, ge=0, alias="BASE_DELAY_SECONDS")
    backoff_factor: float = Field(2.0, ge=1, alias="BACKOFF_FACTOR")

    # Scheduling
    distribution_interval_minutes: float = Field(30.0, ge=0, alias="DISTRIBUTION_INTERVAL_MINUTES")
    balance_check_interval_minutes: float = Field(30.0, ge=0, alias="BALANCE_CHECK_INTERVAL_MINUTES")
    retry_delay_minutes: float = Field(15.0, ge=0, alias="RETRY_DELAY_MINUTES")
    cycle_max_retries: int = Field(3, ge=0, alias="CYCLE_MAX_RETRIES")
    run_on_start: bool = Field(True, alias="RUN_ON_START")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")
    results_dir: Path = Field(Path("results"), alias="RESULTS_DIR")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def rpc_endpoints(self) -> List[str]:
        """Primary RPC URL followed by the fallbacks, in priority order, without duplicates."""
        urls = [self.solana_rpc_url, *_split_csv(self.solana_rpc_fallback_urls)]
        return list(dict.fromkeys(u for u in urls if u))

    @property
    def excluded(self) -> List[str]:
        return _split_csv(self.excluded_addresses)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay_seconds,
            backoff_factor=self.backoff_factor,
            timeout=self.request_timeout_seconds,
        )

    def balance_band(self) -> BalanceBand:
        return BalanceBand(
            min_balance=self.min_balance_lamports,
            target_balance=self.target_balance_lamports,
            operator_min_balance=self.operator_min_balance_lamports,
            large_transfer_threshold=self.large_transfer_lamports,
            sweep_excess=self.sweep_excess,
        )

    def swap_config(self) -> SwapConfig:
        return SwapConfig(
            fee_mint=self.token_mint,
            intermediate_mint=self.intermediate_mint,
            reward_mint=self.reward_mint,
            slippage_bps=self.slippage_bps,
            max_slippage_bps=self.max_slippage_bps,
            max_price_impact_pct=self.max_price_impact_pct,
            intermediate_token_program=self.intermediate_token_program_id,
        )

    def disbursement_config(self) -> DisbursementConfig:
        return DisbursementConfig(
            reward_mint=self.reward_mint,
            reward_token_program=self.reward_token_program_id,
            batch_size=self.batch_size,
            large_transfer_tokens=self.large_transfer_tokens,
        )

    def supervisor_config(self) -> SupervisorConfig:
        return SupervisorConfig(
            interval_minutes=self.distribution_interval_minutes,
            balance_check_interval_minutes=self.balance_check_interval_minutes,
            retry_delay_minutes=self.retry_delay_minutes,
            max_retries=self.cycle_max_retries,
            run_on_start=self.run_on_start,
        )

    def cycle_config(self) -> CycleConfig:
        return CycleConfig(
            fee_token_program=self.token_program_id,
            reward_share_bps=self.reward_share_bps,
            minimum_fee_amount=self.minimum_fee_amount,
            results_dir=self.results_dir,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
