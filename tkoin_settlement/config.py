"""Tkoin settlement core — Application configuration via environment variables."""

from __future__ import annotations

from decimal import Decimal

from pydantic_settings import BaseSettings

from tkoin_settlement.domain.schema import (
    AgentTier,
    BurnSafetyLimits,
    SlashingPenalties,
    StakingParams,
    TierLimits,
    TierSchedule,
)
from tkoin_settlement.domain.units import tokens_to_base_units


class TkoinSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (settlement ledger) ─────────────────────────
    postgres_user: str = "tkoin"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "tkoin_settlement"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Token / Solana ─────────────────────────────────────────
    token_decimals: int = 9
    tkoin_mint_address: str = ""
    treasury_wallet: str = ""
    solana_rpc_url: str = "https://api.devnet.solana.com"
    solana_rpc_timeout_seconds: float = 15.0

    # ── Agent tiers (thresholds in TKOIN, limits in USD) ───────
    verified_tier_threshold_tokens: int = 10_000
    premium_tier_threshold_tokens: int = 50_000
    basic_daily_limit: int = 1_000
    basic_monthly_limit: int = 10_000
    verified_daily_limit: int = 10_000
    verified_monthly_limit: int = 100_000
    premium_daily_limit: int = 50_000
    premium_monthly_limit: int = 500_000

    # ── Staking ────────────────────────────────────────────────
    min_stake_tokens: int = 1_000
    lockup_period_days: int = 30
    early_withdrawal_penalty_percent: Decimal = Decimal("10")

    # ── Slashing (percent of current stake) ────────────────────
    slash_minor_percent: Decimal = Decimal("10")
    slash_major_percent: Decimal = Decimal("25")
    slash_critical_percent: Decimal = Decimal("50")

    # ── Burn safety bounds ─────────────────────────────────────
    burn_enabled: bool = False
    burn_rate_percent: Decimal = Decimal("1.00")
    burn_min_tokens: int = 1
    burn_max_tokens: int = 100_000
    burn_max_treasury_percent: Decimal = Decimal("5.00")
    burn_max_supply_percent: Decimal = Decimal("2.00")
    burn_cooldown_hours: int = 24

    # ── P2P orders ─────────────────────────────────────────────
    order_ttl_minutes: int = 30
    order_sweep_interval_seconds: int = 60

    # ── Webhooks ───────────────────────────────────────────────
    webhook_freshness_window_seconds: int = 300
    nonce_retention_seconds: int = 300
    nonce_cleanup_interval_seconds: int = 300
    webhook_verification_timeout_seconds: float = 30.0
    webhook_settlement_timeout_seconds: float = 60.0
    webhook_max_attempts: int = 3
    webhook_retry_base_delay_seconds: float = 1.0
    webhook_retry_max_delay_seconds: float = 60.0
    # Total delivery attempts per settlement before automatic retries stop
    settlement_notification_max_attempts: int = 9

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    # ── Policy objects ─────────────────────────────────────────

    @property
    def tier_schedule(self) -> TierSchedule:
        return TierSchedule(
            verified_threshold=tokens_to_base_units(
                self.verified_tier_threshold_tokens, self.token_decimals
            ),
            premium_threshold=tokens_to_base_units(
                self.premium_tier_threshold_tokens, self.token_decimals
            ),
            limits={
                AgentTier.BASIC: TierLimits(
                    daily_limit=self.basic_daily_limit,
                    monthly_limit=self.basic_monthly_limit,
                ),
                AgentTier.VERIFIED: TierLimits(
                    daily_limit=self.verified_daily_limit,
                    monthly_limit=self.verified_monthly_limit,
                ),
                AgentTier.PREMIUM: TierLimits(
                    daily_limit=self.premium_daily_limit,
                    monthly_limit=self.premium_monthly_limit,
                ),
            },
        )

    @property
    def staking_params(self) -> StakingParams:
        return StakingParams(
            min_stake=tokens_to_base_units(self.min_stake_tokens, self.token_decimals),
            lockup_period_days=self.lockup_period_days,
            early_withdrawal_penalty_percent=self.early_withdrawal_penalty_percent,
        )

    @property
    def slashing_penalties(self) -> SlashingPenalties:
        return SlashingPenalties(
            minor=self.slash_minor_percent,
            major=self.slash_major_percent,
            critical=self.slash_critical_percent,
        )

    @property
    def burn_limits(self) -> BurnSafetyLimits:
        return BurnSafetyLimits(
            enabled=self.burn_enabled,
            burn_rate_percent=self.burn_rate_percent,
            min_burn_amount=tokens_to_base_units(self.burn_min_tokens, self.token_decimals),
            max_burn_amount=tokens_to_base_units(self.burn_max_tokens, self.token_decimals),
            max_treasury_burn_percent=self.burn_max_treasury_percent,
            max_supply_burn_percent=self.burn_max_supply_percent,
            cooldown_hours=self.burn_cooldown_hours,
        )


settings = TkoinSettings()
