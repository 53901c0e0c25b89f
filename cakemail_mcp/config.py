"""Configuration models for the Cakemail client.

Unknown keys are ignored everywhere so that configuration files written for
newer versions (or carrying comments-as-keys) still load.
"""

from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_BASE_URL = "https://api.cakemail.dev"


class RetryConfig(BaseModel):
    """Retry policy. Delays are in seconds."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    jitter: bool = True
    retryable_status_codes: frozenset[int] = frozenset({429, 500, 502, 503, 504})
    retryable_errors: frozenset[str] = frozenset(
        {"ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT"}
    )


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = True
    max_requests_per_second: float = Field(default=10.0, gt=0)
    burst_limit: int = Field(default=20, ge=1)
    # Honour Retry-After on 429 responses instead of the computed backoff
    respect_server_limits: bool = True


class CircuitBreakerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = False
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=60.0, ge=0)


class CakemailConfig(BaseModel):
    """Everything a CakemailClient needs. Either username/password or api_key is required."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    debug: bool = False
    timeout: float = Field(default=30.0, gt=0)
    max_concurrent_requests: int = Field(default=10, ge=1)
    token_refresh_margin: float = Field(default=300.0, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    @model_validator(mode="after")
    def _check_credentials(self) -> "CakemailConfig":
        if self.api_key:
            return self
        if not self.username or not self.password:
            raise ValueError("Cakemail username and password (or an api_key) are required.")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "CakemailConfig":
        """Build a configuration from CAKEMAIL_* environment variables (and a .env file)."""
        load_dotenv(override=True)
        values: dict[str, Any] = {
            "username": os.getenv("CAKEMAIL_USERNAME"),
            "password": os.getenv("CAKEMAIL_PASSWORD"),
            "api_key": os.getenv("CAKEMAIL_API_KEY"),
            "base_url": os.getenv("CAKEMAIL_BASE_URL", DEFAULT_BASE_URL),
            "debug": os.getenv("CAKEMAIL_DEBUG", "false").lower() == "true",
            "timeout": float(os.getenv("CAKEMAIL_TIMEOUT_SECONDS", "30")),
        }
        max_concurrent = os.getenv("CAKEMAIL_MAX_CONCURRENT_REQUESTS")
        if max_concurrent:
            values["max_concurrent_requests"] = int(max_concurrent)
        if os.getenv("CAKEMAIL_CIRCUIT_BREAKER_ENABLED", "false").lower() == "true":
            values["circuit_breaker"] = CircuitBreakerConfig(enabled=True)
        values.update(overrides)
        return cls.model_validate({key: value for key, value in values.items() if value is not None})
