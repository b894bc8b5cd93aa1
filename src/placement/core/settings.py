from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from placement.core.clock import validate_timezone


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    dsn: str = Field(default="sqlite:///placement.db")
    echo: bool = Field(default=False)
    busy_timeout_seconds: float = Field(default=30.0, ge=0.1, le=300.0)


class ScoringWeights(BaseModel):
    """Relative weights of the suggestion scoring factors.

    Weights are calibrated against placement-outcome data outside this service;
    only their ratios matter because the weighted sum is normalized.
    """

    headroom: float = Field(default=0.30, ge=0.0)
    success: float = Field(default=0.35, ge=0.0)
    preference: float = Field(default=0.20, ge=0.0)
    recency: float = Field(default=0.15, ge=0.0)

    @model_validator(mode="after")
    def _require_positive_total(self) -> "ScoringWeights":
        if self.total <= 0:
            raise ValueError("SCORING_WEIGHTS_INVALID: at least one weight must be positive")
        return self

    @property
    def total(self) -> float:
        return self.headroom + self.success + self.preference + self.recency

    def as_dict(self) -> dict[str, float]:
        return {
            "headroom": self.headroom,
            "success": self.success,
            "preference": self.preference,
            "recency": self.recency,
        }


class RankingConfig(BaseModel):
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    recency_horizon_days: int = Field(default=30, ge=1, le=3650)
    max_reasoning: int = Field(default=3, ge=0, le=3)


class LedgerRetryConfig(BaseModel):
    """Optimistic-concurrency retry budget for ledger writes."""

    attempts: int = Field(default=5, ge=1, le=20)
    backoff_base_seconds: float = Field(default=0.01, ge=0.0, le=5.0)
    backoff_cap_seconds: float = Field(default=0.2, ge=0.0, le=30.0)


class OutboxConfig(BaseModel):
    base_seconds: float = Field(default=1.0, gt=0.0)
    cap_seconds: float = Field(default=300.0, gt=0.0)
    max_retries: int = Field(default=12, ge=0)
    batch_size: int = Field(default=50, ge=1, le=1000)


class EngineSettings(BaseSettings):
    """Placement engine settings, loaded from ``PLACEMENT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLACEMENT_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    service_name: str = Field(default="placement-engine")
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    ledger: LedgerRetryConfig = Field(default_factory=LedgerRetryConfig)
    outbox: OutboxConfig = Field(default_factory=OutboxConfig)
    timezone: str = Field(default="UTC")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    @field_validator("timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: object) -> str:
        text = str(value or "").strip()
        validate_timezone(text)
        return text

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> str:
        text = str(value or "INFO").strip().upper()
        if text not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"CONFIG_LOG_LEVEL_INVALID: {text}")
        return text


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return EngineSettings()


__all__ = [
    "DatabaseConfig",
    "EngineSettings",
    "LedgerRetryConfig",
    "OutboxConfig",
    "RankingConfig",
    "ScoringWeights",
    "get_settings",
]
