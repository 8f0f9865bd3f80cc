from __future__ import annotations

from functools import lru_cache
from typing import Optional

import pytz
from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .stats import SANITY_CEILING

load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    telegram_token: Optional[str] = Field(None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(None, alias="TELEGRAM_CHAT_ID")
    tp_token: str = Field("", alias="TP_TOKEN")
    tp_marker: str = Field("", alias="TP_MARKER")

    db_path: str = Field("farewatch.db", alias="FAREWATCH_DB")
    log_file: str = Field("farewatch.log", alias="LOG_FILE")

    # Monitoring cycle
    check_interval_minutes: int = Field(30, alias="MONITORING_INTERVAL")
    initial_delay_s: float = Field(60.0, alias="INITIAL_DELAY_S")
    date_pair_delay_s: float = Field(2.0, alias="DATE_PAIR_DELAY_S")
    watch_delay_s: float = Field(5.0, alias="WATCH_DELAY_S")
    search_timeout_s: float = Field(30.0, alias="SEARCH_TIMEOUT_S")
    lease_ttl_s: float = Field(900.0, alias="LEASE_TTL_S")

    # Date sampling
    live_max_samples: int = Field(5, alias="LIVE_MAX_SAMPLES")
    preview_max_samples: int = Field(3, alias="PREVIEW_MAX_SAMPLES")
    max_date_pairs: int = Field(12, alias="MAX_DATE_PAIRS")

    # Alert throttling
    dedup_soft_cap: int = Field(100, alias="DEDUP_SOFT_CAP")
    dedup_hard_cap: int = Field(1000, alias="DEDUP_HARD_CAP")
    dedup_max_age_h: float = Field(24.0, alias="DEDUP_MAX_AGE_H")
    sanity_ceiling: float = Field(10000.0, alias="PRICE_SANITY_CEILING")
    default_cooldown_minutes: int = Field(60, alias="DEFAULT_COOLDOWN_MINUTES")
    default_daily_alert_cap: int = Field(20, alias="DEFAULT_DAILY_ALERT_CAP")
    default_watch_limit: int = Field(2, alias="DEFAULT_WATCH_LIMIT")

    # Daily report
    report_timezone: str = Field("Europe/Berlin", alias="REPORT_TIMEZONE")
    report_hour: int = Field(9, alias="REPORT_HOUR")

    @field_validator(
        "check_interval_minutes",
        "live_max_samples",
        "preview_max_samples",
        "max_date_pairs",
        "dedup_soft_cap",
        "dedup_hard_cap",
        "default_cooldown_minutes",
        "default_daily_alert_cap",
        "default_watch_limit",
    )
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("value must be greater than 0")
        return v

    @field_validator(
        "date_pair_delay_s", "watch_delay_s", "initial_delay_s", "dedup_max_age_h"
    )
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator("search_timeout_s", "sanity_ceiling", "lease_ttl_s")
    @classmethod
    def _positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("value must be greater than 0")
        return v

    @field_validator("sanity_ceiling")
    @classmethod
    def _within_schema_ceiling(cls, v: float) -> float:
        # the watches table rejects prices at or above SANITY_CEILING
        if v > SANITY_CEILING:
            raise ValueError(
                f"PRICE_SANITY_CEILING cannot exceed {SANITY_CEILING:.0f}"
            )
        return v

    @field_validator("report_timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError as exc:
            raise ValueError(f"unknown timezone {v!r}") from exc
        return v

    @field_validator("report_hour")
    @classmethod
    def _hour_of_day(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("REPORT_HOUR must be between 0 and 23")
        return v

    @field_validator("telegram_token", "telegram_chat_id", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def _caps_ordered(self) -> "Settings":
        if self.dedup_hard_cap <= self.dedup_soft_cap:
            raise ValueError("DEDUP_HARD_CAP must be greater than DEDUP_SOFT_CAP")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Return application settings loaded from the environment."""
    return Settings()  # type: ignore[call-arg]


__all__ = ["Settings", "get_settings"]
