"""
Configuration management for the IG client.

Loads settings from environment variables with validation.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IGSettings(BaseSettings):
    """
    IG client settings.

    Loads from environment variables with IG_ prefix.
    """
    model_config = SettingsConfigDict(
        env_prefix="IG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Credentials
    username: str = Field(default="", description="Account username")
    password: str = Field(default="", description="Account password")
    api_key: str = Field(default="", description="Application API key")
    account_id: Optional[str] = Field(None, description="Preferred trading account")

    # API
    rest_base_url: str = Field(
        default="https://demo-api.ig.com/gateway/deal",
        description="REST API base URL"
    )
    api_version: Optional[int] = Field(
        None,
        description="Session protocol (2=CST, 3=OAuth). Defaults to 3 when unset"
    )
    user_agent: str = Field(default="ig-client-python/0.3.0", description="HTTP User-Agent")

    # Timeouts
    request_timeout: float = Field(default=30.0, ge=1.0, description="Request timeout (seconds)")
    connect_timeout: float = Field(default=10.0, ge=1.0, description="Connection timeout (seconds)")

    # Rate limiting (token bucket)
    enable_rate_limiting: bool = Field(default=True, description="Enable rate limiting")
    rate_limit_max_requests: int = Field(default=29, ge=1, description="Requests per period")
    rate_limit_period_seconds: float = Field(default=60.0, gt=0, description="Quota period (seconds)")
    rate_limit_burst_size: int = Field(default=20, ge=1, description="Bucket capacity")
    rate_limit_poll_interval: float = Field(default=0.01, gt=0, le=1.0,
                                            description="Admission poll interval (seconds)")

    # Retries on remote rate limiting
    max_retry_count: Optional[int] = Field(None, ge=1, description="Max attempts (None = unbounded)")
    retry_delay_secs: float = Field(default=10.0, ge=0, description="Delay between rate-limit retries")

    # Session renewal
    refresh_margin_seconds: float = Field(default=10.0, ge=0,
                                          description="Renew credentials this close to expiry")
    relogin_margin_seconds: float = Field(default=1800.0, ge=0,
                                          description="relogin() threshold (seconds)")

    # Market hierarchy
    max_crawl_depth: int = Field(default=5, ge=0, le=20, description="Navigation crawl depth")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_requests: bool = Field(default=False, description="Log all HTTP requests")

    # Metrics
    enable_metrics: bool = Field(default=False, description="Enable Prometheus metrics")
    metrics_port: int = Field(default=9090, ge=1024, le=65535, description="Metrics server port")

    # Connection pooling
    pool_connections: int = Field(default=10, ge=1, le=200, description="HTTP connection pool size")
    pool_maxsize: int = Field(default=20, ge=1, le=500, description="Max connections per pool")

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: Optional[int]) -> Optional[int]:
        """Only protocol versions 2 and 3 exist."""
        if v is not None and v not in (2, 3):
            raise ValueError(f"api_version must be 2 or 3, got {v}")
        return v

    def __repr__(self) -> str:
        """Safe repr without sensitive data."""
        return (
            f"IGSettings("
            f"rest_base_url={self.rest_base_url}, "
            f"api_version={self.api_version}, "
            f"rate_limiting={self.enable_rate_limiting}"
            ")"
        )


# Remote error codes, matched against response bodies
CREDENTIALS_EXPIRED_CODES = (
    "oauth-token-invalid",
    "client-token-invalid",
)

RATE_LIMIT_CODES = (
    "exceeded-api-key-allowance",
    "exceeded-account-allowance",
    "exceeded-account-trading-allowance",
    "exceeded-account-historical-data-allowance",
)


def get_settings() -> IGSettings:
    """
    Get IG client settings.

    Returns:
        Validated settings instance
    """
    return IGSettings()
