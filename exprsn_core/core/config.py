"""
Configuration for the Workflow & Expression core.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CatchUpPolicy(str, Enum):
    """How missed schedule fires are handled on restart."""

    ONE = "one"
    ALL = "all"
    NONE = "none"


class CacheBackendType(str, Enum):
    """Cache backend types."""

    MEMORY = "memory"
    REDIS = "redis"


class ExecutorConfig(BaseSettings):
    """Workflow executor configuration."""

    model_config = SettingsConfigDict(env_prefix="EXPRSN_EXECUTOR_")

    # Timeouts
    default_step_timeout_ms: Optional[int] = Field(
        default=None, description="Step timeout when a step declares none"
    )
    max_execution_time_ms: int = Field(default=300000, description="Execution wall-clock limit")

    # Limits
    max_steps_per_execution: int = Field(default=1000, description="Max step visits per execution")
    max_backoff_ms: int = Field(default=60000, description="Cap for exponential retry backoff")
    max_parallel_branches: int = Field(default=10, description="Max concurrent branches")


class SchedulerConfig(BaseSettings):
    """Scheduler configuration."""

    model_config = SettingsConfigDict(env_prefix="EXPRSN_SCHEDULER_")

    check_interval_s: float = Field(default=1.0, description="Due-check loop interval")
    default_timezone: str = Field(default="UTC", description="Time zone when none is given")
    catch_up: CatchUpPolicy = Field(default=CatchUpPolicy.ONE, description="Missed fire policy")
    max_catch_up: int = Field(default=100, description="Upper bound for strict catch-up")


class ParameterConfig(BaseSettings):
    """Parameter store configuration."""

    model_config = SettingsConfigDict(env_prefix="EXPRSN_PARAMETERS_")

    default_cache_ttl_s: int = Field(default=3600, description="Parameter cache TTL")
    default_history_limit: int = Field(default=10, description="History entries kept")


class CollaborationConfig(BaseSettings):
    """Collaboration session configuration."""

    model_config = SettingsConfigDict(env_prefix="EXPRSN_COLLABORATION_")

    max_changes: int = Field(default=100, description="Change log capacity per session")
    default_lock_ttl_ms: int = Field(default=30000, description="Lock TTL when none is given")
    session_max_age_s: int = Field(default=3600, description="Age before empty sessions are reaped")
    reaper_interval_s: float = Field(default=300.0, description="Stale session reaper interval")


class StreamingConfig(BaseSettings):
    """Default stream configuration."""

    model_config = SettingsConfigDict(env_prefix="EXPRSN_STREAMING_")

    refresh_interval_ms: int = Field(default=5000, description="Refresh timer interval")
    prefetch_enabled: bool = Field(default=True, description="Prefetch pages ahead")
    prefetch_ahead: int = Field(default=2, description="Pages to prefetch")
    cache_enabled: bool = Field(default=True, description="Cache fetched pages")
    cache_ttl_s: int = Field(default=60, description="Page cache TTL")
    page_size: int = Field(default=50, description="Rows per page")
    max_retries: int = Field(default=3, description="Provider retries")
    retry_delay_ms: int = Field(default=1000, description="Base retry delay")


class CacheConfig(BaseSettings):
    """Cache backend configuration."""

    model_config = SettingsConfigDict(env_prefix="EXPRSN_CACHE_")

    backend: CacheBackendType = Field(default=CacheBackendType.MEMORY, description="Cache backend")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    key_prefix: str = Field(default="exprsn", description="Key namespace")


class Settings(BaseSettings):
    """Main settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXPRSN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(default="exprsn-core", description="Service name")
    environment: str = Field(default="development", description="Deployment environment")
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="pretty", description="Log format (json, pretty)")

    # Sub-configurations
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    parameters: ParameterConfig = Field(default_factory=ParameterConfig)
    collaboration: CollaborationConfig = Field(default_factory=CollaborationConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
