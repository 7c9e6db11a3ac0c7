import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from fetchguard.services.cache import CacheConfig, ResourceType
from fetchguard.services.circuit_breaker import CircuitBreakerConfig
from fetchguard.services.retry import RetryConfig

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Retry Configuration (delays in milliseconds)
    max_retries: int = Field(default=3, ge=0, alias="FETCHGUARD_MAX_RETRIES")
    base_delay_ms: int = Field(default=1000, ge=0, alias="FETCHGUARD_BASE_DELAY")
    max_delay_ms: int = Field(default=30000, ge=0, alias="FETCHGUARD_MAX_DELAY")
    exponential_base: float = Field(default=2.0, gt=1, alias="FETCHGUARD_EXP_BASE")
    jitter_factor: float = Field(
        default=0.1, ge=0, le=1, alias="FETCHGUARD_JITTER_FACTOR"
    )

    # Cache Configuration (TTLs in milliseconds)
    cache_enabled: bool = Field(default=True, alias="FETCHGUARD_CACHE_ENABLED")
    cache_max_size: int = Field(default=1000, alias="FETCHGUARD_CACHE_MAX_SIZE")
    cache_ttl_ms: int = Field(default=300000, gt=0, alias="FETCHGUARD_CACHE_TTL")
    cache_data_source_ttl_ms: int = Field(
        default=600000, gt=0, alias="FETCHGUARD_CACHE_DS_TTL"
    )
    cache_database_ttl_ms: int = Field(
        default=600000, gt=0, alias="FETCHGUARD_CACHE_DB_TTL"
    )
    cache_user_ttl_ms: int = Field(
        default=3600000, gt=0, alias="FETCHGUARD_CACHE_USER_TTL"
    )
    cache_page_ttl_ms: int = Field(default=60000, gt=0, alias="FETCHGUARD_CACHE_PAGE_TTL")
    cache_block_ttl_ms: int = Field(
        default=30000, gt=0, alias="FETCHGUARD_CACHE_BLOCK_TTL"
    )

    # Deduplication
    dedup_enabled: bool = Field(default=True, alias="FETCHGUARD_DEDUP_ENABLED")

    # Circuit Breaker Configuration
    circuit_breaker_enabled: bool = Field(
        default=False, alias="FETCHGUARD_CIRCUIT_BREAKER_ENABLED"
    )
    cb_failure_threshold: int = Field(
        default=5, ge=1, alias="FETCHGUARD_CB_FAILURE_THRESHOLD"
    )
    cb_success_threshold: int = Field(
        default=2, ge=1, alias="FETCHGUARD_CB_SUCCESS_THRESHOLD"
    )
    cb_timeout_ms: int = Field(default=60000, ge=0, alias="FETCHGUARD_CB_TIMEOUT")

    # Upstream API Configuration
    api_base_url: str = Field(
        default="https://api.notion.com/v1", alias="FETCHGUARD_API_BASE_URL"
    )
    api_token: str = Field(default="", alias="FETCHGUARD_API_TOKEN")
    api_version: str = Field(default="2022-06-28", alias="FETCHGUARD_API_VERSION")
    request_timeout: float = Field(default=30.0, gt=0, alias="FETCHGUARD_REQUEST_TIMEOUT")

    debug: bool = Field(default=False, alias="FETCHGUARD_DEBUG")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Read settings from environment variables (os.environ by default)."""
        return cls.model_validate(dict(os.environ if environ is None else environ))

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.base_delay_ms,
            max_delay=self.max_delay_ms,
            exponential_base=self.exponential_base,
            jitter_factor=self.jitter_factor,
        )

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            enabled=self.cache_enabled,
            max_size=self.cache_max_size,
            default_ttl=timedelta(milliseconds=self.cache_ttl_ms),
            ttl_by_type={
                ResourceType.DATA_SOURCE: timedelta(
                    milliseconds=self.cache_data_source_ttl_ms
                ),
                ResourceType.DATABASE: timedelta(
                    milliseconds=self.cache_database_ttl_ms
                ),
                ResourceType.USER: timedelta(milliseconds=self.cache_user_ttl_ms),
                ResourceType.PAGE: timedelta(milliseconds=self.cache_page_ttl_ms),
                ResourceType.BLOCK: timedelta(milliseconds=self.cache_block_ttl_ms),
            },
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.cb_failure_threshold,
            success_threshold=self.cb_success_threshold,
            reset_timeout=timedelta(milliseconds=self.cb_timeout_ms),
        )
