from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# 4-byte length + 4-byte CRC32
FRAME_HEADER_SIZE = 8

STORAGE_BACKENDS = ("memory", "distributed")
LOG_FORMATS = ("text", "structured", "json")


def _parse_peer_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    # Accept "10.0.0.1,10.0.0.2" as well as whitespace separated hosts.
    parts = [p.strip() for p in raw.replace(",", " ").split()]
    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if part and part not in seen:
            seen.add(part)
            result.append(part)
    return result


class BucketConfig(BaseModel):
    """Capacity and refill rate for a single bucket key."""

    capacity: int = Field(gt=0, strict=True)
    refill_rate: float = Field(gt=0, allow_inf_nan=False)


class Settings(BaseSettings):
    """Token bucket settings loaded from environment variables.

    All settings can be configured via ``TOKENBUCKET_*`` environment variables
    or a .env file.
    """

    # Bucket defaults
    default_capacity: int = 10
    default_refill_rate: float = 1.0  # Tokens per second
    auto_provision_keys: bool = True  # Create unknown keys with the defaults
    bucket_overrides: dict[str, BucketConfig] = {}

    # Backend selection for RateLimiter
    storage_backend: str = "memory"  # memory | distributed

    # Distributed server
    server_host: str = "127.0.0.1"
    server_port: int = 7420
    # Use NoDecode so a bare "10.0.0.1,10.0.0.2" does not go through JSON parsing.
    allowed_peers: Annotated[list[str], NoDecode] = []  # Empty allows any peer

    # Distributed client
    client_host: str = "127.0.0.1"
    client_port: int = 7420
    connect_timeout: float = 1.0  # Seconds to establish a connection
    request_timeout: float = 1.0  # Seconds to wait for a response, per attempt

    # Retry policy (client)
    retry_count: int = 3  # Retries after the first attempt
    retry_base_delay: float = 0.05
    retry_max_delay: float = 1.0
    retry_exponential_base: float = 2.0

    # Wire protocol
    max_frame_size: int = 128 * 1024  # Header included; fits a maximum-length key

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("allowed_peers", mode="before")
    @classmethod
    def decode_allowed_peers(cls, v: Any) -> list[str]:
        return _parse_peer_list(v)

    @field_validator("default_capacity")
    @classmethod
    def validate_capacity_positive(cls, v: int) -> int:
        """Validate bucket capacity is positive."""
        if v < 1:
            raise ValueError("default_capacity must be at least 1")
        return v

    @field_validator("default_refill_rate")
    @classmethod
    def validate_refill_rate_positive(cls, v: float) -> float:
        """Validate refill rate is positive."""
        if not 0 < v < float("inf"):
            raise ValueError("default_refill_rate must be positive and finite")
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in STORAGE_BACKENDS:
            raise ValueError(f"storage_backend must be one of {STORAGE_BACKENDS}")
        return v

    @field_validator("server_port", "client_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return v

    @field_validator("connect_timeout", "request_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("retry_count")
    @classmethod
    def validate_retry_count(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry_count must not be negative")
        return v

    @field_validator("retry_base_delay", "retry_max_delay")
    @classmethod
    def validate_delay_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry delays must not be negative")
        return v

    @field_validator("retry_exponential_base")
    @classmethod
    def validate_exponential_base(cls, v: float) -> float:
        if v < 1:
            raise ValueError("retry_exponential_base must be at least 1")
        return v

    @field_validator("max_frame_size")
    @classmethod
    def validate_max_frame_size(cls, v: int) -> int:
        """Validate the frame limit can hold at least a frame header."""
        if v < FRAME_HEADER_SIZE:
            raise ValueError(
                f"max_frame_size must be at least {FRAME_HEADER_SIZE} bytes"
            )
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {LOG_FORMATS}")
        return v

    model_config = SettingsConfigDict(
        env_prefix="TOKENBUCKET_", env_file=".env", extra="ignore"
    )


# Global settings instance
settings = Settings()
