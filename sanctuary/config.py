from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

RematchPolicy = Literal["always", "never_if_decided", "always_with_audit_log"]
RateLimitBackend = Literal["memory", "redis"]


def _env(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


def _default_database_path() -> Path:
    override = os.getenv("SANCTUARY_DATABASE_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent / "data" / "sanctuary.db"


class Settings(BaseModel):
    model_config = ConfigDict(validate_default=True)

    database_path: Path = Field(default_factory=_default_database_path)

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL", ""))
    llm_timeout_seconds: float = Field(
        default_factory=lambda: float(_env("SANCTUARY_LLM_TIMEOUT_SECONDS", "120"))
    )
    structuring_max_tokens: int = 4096
    single_match_max_tokens: int = 4096
    batch_match_max_tokens: int = 8192

    # Matching pipeline
    batch_size: int = Field(default_factory=lambda: int(_env("SANCTUARY_BATCH_SIZE", "10")), ge=1)
    min_score_threshold: float = 40
    top_matches_to_return: int = 5
    rematch_policy: RematchPolicy = Field(
        default_factory=lambda: _env("SANCTUARY_REMATCH_POLICY", "always")  # type: ignore[return-value]
    )

    # Weight adjustment
    feedback_window_days: int = 90
    feedback_sample_limit: int = 100
    min_feedback_for_adjustment: int = 10
    max_weight_adjustment: float = 0.05

    # Rate limiting
    rate_limit_backend: RateLimitBackend = Field(
        default_factory=lambda: _env("SANCTUARY_RATE_LIMIT_BACKEND", "memory")  # type: ignore[return-value]
    )
    redis_url: str = Field(default_factory=lambda: _env("REDIS_URL", "redis://localhost:6379"))
    api_rate_limit: int = 100
    api_rate_window_seconds: int = 15 * 60
    submit_rate_limit: int = 10
    submit_rate_window_seconds: int = 60 * 60
    rate_limit_sweep_seconds: int = 60

    host: str = Field(default_factory=lambda: _env("SANCTUARY_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: int(_env("SANCTUARY_PORT", "8001")))

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
