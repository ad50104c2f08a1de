"""Type-safe Pydantic models for configuration."""

from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", description="Logging level")
    file: str = Field(default="logs/telemetry.log", description="Log file path")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format",
    )
    console_export: bool = Field(default=True, description="Enable console output")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class CollectorConfig(BaseModel):
    """Configuration for the metrics sampler."""
    device_id: str = Field(default="local-device", description="Identifier attached to every sample")
    tick_interval: float = Field(default=1.0, description="Seconds between two samples")
    disk_path: str = Field(default="/", description="Mount point used for disk usage")
    metric_precision: int = Field(default=2, description="Decimal precision for metrics")
    max_network_rate: float = Field(default=1000.0, description="Upper clamp for MB/s rates")
    flush_on_anomaly: bool = Field(default=True, description="Force a flush when a spike is detected")
    simulate: bool = Field(default=False, description="Use the deterministic simulated collector")

    @field_validator("tick_interval", "max_network_rate")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("value must be greater than 0")
        return v

    @field_validator("metric_precision")
    @classmethod
    def validate_precision(cls, v: int) -> int:
        if v < 0:
            raise ValueError("metric_precision cannot be negative")
        return v


class BatchBufferConfig(BaseModel):
    """Thresholds of the in-memory batch buffer."""
    max_batch_size: int = Field(default=300, description="Samples per batch before a size flush")
    max_batch_age: float = Field(default=300.0, description="Seconds before a time flush")
    max_buffer_samples: int = Field(default=3600, description="Hard ceiling, oldest samples evicted past it")

    @field_validator("max_batch_size", "max_buffer_samples")
    @classmethod
    def validate_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("size must be at least 1")
        return v

    @field_validator("max_batch_age")
    @classmethod
    def validate_age(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("max_batch_age must be greater than 0")
        return v

    @model_validator(mode="after")
    def validate_ceiling(self) -> "BatchBufferConfig":
        if self.max_buffer_samples < self.max_batch_size:
            raise ValueError("max_buffer_samples must be >= max_batch_size")
        return self


class PersistenceConfig(BaseModel):
    """Configuration for the remote store client and the quarantine."""
    api_endpoint: str = Field(default="http://localhost:5000", description="Base URL of the remote store")
    timeout: float = Field(default=10.0, description="HTTP request timeout")
    quarantine: str = Field(default="redis", description="Quarantine backend: redis or memory")
    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_db: int = Field(default=0, description="Redis database number")
    redis_password: Optional[str] = Field(default=None, description="Redis password")

    @field_validator("redis_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("redis_port must be between 1 and 65535")
        return v

    @field_validator("quarantine")
    @classmethod
    def validate_quarantine(cls, v: str) -> str:
        if v.lower() not in ("redis", "memory"):
            raise ValueError(f"Unknown quarantine backend: {v}")
        return v.lower()


class SchedulerConfig(BaseModel):
    """Retry and lifecycle settings of the pipeline scheduler."""
    retry_base: float = Field(default=1.0, description="Base backoff delay in seconds")
    retry_cap: float = Field(default=30.0, description="Maximum backoff delay in seconds")
    retry_jitter: float = Field(default=0.2, description="Relative jitter applied to each delay")
    max_retry_attempts: int = Field(default=0, description="0 means retry forever")
    connectivity_grace_period: float = Field(default=60.0, description="Seconds of failures before pausing")
    shutdown_timeout: float = Field(default=10.0, description="Seconds granted to the final flush")
    realtime_window: int = Field(default=60, description="Samples kept for live charts")

    @field_validator("retry_base", "retry_cap", "shutdown_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("value must be greater than 0")
        return v

    @field_validator("retry_jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("retry_jitter must be in [0, 1)")
        return v

    @field_validator("max_retry_attempts", "realtime_window")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value cannot be negative")
        return v

    @field_validator("connectivity_grace_period")
    @classmethod
    def validate_grace(cls, v: float) -> float:
        if v < 0:
            raise ValueError("connectivity_grace_period cannot be negative")
        return v


class IdentityConfig(BaseModel):
    """Static identity used by headless runs."""
    user_id: Optional[str] = Field(default=None, description="User the samples belong to")
    access_token: Optional[str] = Field(default=None, description="Bearer token for the remote store")


class ServerConfig(BaseModel):
    """Remote store settings."""
    database_url: str = Field(default="sqlite:///telemetry.db", description="SQLAlchemy database URL")
    api_tokens: Dict[str, str] = Field(default_factory=dict, description="Bearer token to user_id")


class AppConfig(BaseModel):
    """Root configuration model containing all sections."""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    batch_buffer: BatchBufferConfig = Field(default_factory=BatchBufferConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
