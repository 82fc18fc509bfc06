"""
Points ledger configuration.

All settings can be overridden via environment variables or a .env file.
Services take an explicit Settings instance; get_settings() is the cached
process-wide default.
"""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=True,
    )

    # ==========================================================================
    # General
    # ==========================================================================
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # Approval workflow
    # ==========================================================================
    APPROVAL_THRESHOLD_POINTS: int = 50        # abs(points) above this goes to the queue
    APPROVAL_HIGH_PRIORITY_POINTS: int = 100   # bands split the range above the threshold
    APPROVAL_MEDIUM_PRIORITY_POINTS: int = 75

    # ==========================================================================
    # Ranking
    # ==========================================================================
    LEVEL_SIZE_POINTS: int = 100
    AGGREGATE_MAX_RETRIES: int = 3
    HISTORY_PAGE_SIZE: int = 20

    # ==========================================================================
    # Referrals
    # ==========================================================================
    REFERRAL_BASE_POINTS: int = 100            # used when no campaign covers the referral
    REFERRAL_BASE_COINS: int = 10
    REFERRAL_RETENTION_DAYS: int = 90

    # ==========================================================================
    # Rewards catalog
    # ==========================================================================
    REWARD_MAX_COIN_COST: int = 10000


@lru_cache()
def get_settings() -> Settings:
    return Settings()
