"""Configuration management for workstate.

Uses Pydantic Settings for type-safe, environment-based configuration.
"""

from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from platformdirs import user_data_dir
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Load environment variables from .env file
load_dotenv(override=False)

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS = ("text", "json")
VALID_STORAGE_BACKENDS = ("file", "redis", "memory")
VALID_PLATFORMS = ("desktop", "web")


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # App configuration
    app_name: str = Field("workstate", alias="WORKSTATE_APP_NAME")
    environment: str = Field("development", alias="WORKSTATE_ENVIRONMENT")

    # Platform selection: "desktop" persists through an async native store
    # with write coalescing, "web" through synchronous local storage only.
    platform: str = Field("desktop", alias="WORKSTATE_PLATFORM")

    # Native store configuration
    storage_backend: str = Field("file", alias="WORKSTATE_STORAGE_BACKEND")
    data_dir: str | None = Field(None, alias="WORKSTATE_DATA_DIR")

    # Redis configuration (only used when storage_backend == "redis")
    redis_url: str | None = Field(None, alias="WORKSTATE_REDIS_URL")
    redis_connection_timeout: int = Field(5, alias="WORKSTATE_REDIS_CONNECTION_TIMEOUT")
    redis_socket_timeout: int = Field(5, alias="WORKSTATE_REDIS_SOCKET_TIMEOUT")
    redis_key_prefix: str = Field("workstate:store:", alias="WORKSTATE_REDIS_KEY_PREFIX")

    # Persistence tuning
    write_throttle_ms: int = Field(250, alias="WORKSTATE_WRITE_THROTTLE_MS")
    hot_cache_max_entries: int = Field(1000, alias="WORKSTATE_HOT_CACHE_MAX_ENTRIES")

    # Well-known store names
    global_store_name: str = Field("workstate.global.dat", alias="WORKSTATE_GLOBAL_STORE")
    legacy_store_name: str = Field("default.dat", alias="WORKSTATE_LEGACY_STORE")
    prefetch_stores: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["default.dat", "workstate.global.dat"],
        alias="WORKSTATE_PREFETCH_STORES",
    )

    # Synchronous local storage file (web platform)
    local_storage_file: str = Field("local_storage.json", alias="WORKSTATE_LOCAL_STORAGE_FILE")

    # Logging configuration
    log_level: str = Field("INFO", alias="WORKSTATE_LOG_LEVEL")
    log_format: str = Field("text", alias="WORKSTATE_LOG_FORMAT")  # text or json
    log_dir: str | None = Field(None, alias="WORKSTATE_LOG_DIR")

    @property
    def redis_enabled(self) -> bool:
        """Whether Redis should be used for native stores."""
        return self.storage_backend == "redis" and bool(self.redis_url)

    @property
    def resolved_data_dir(self) -> Path:
        """Directory holding file-backed stores and local storage."""
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return Path(user_data_dir(appname=self.app_name))

    @property
    def local_storage_path(self) -> Path:
        return self.resolved_data_dir / self.local_storage_file

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = str(v).strip().upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"Log level must be one of {', '.join(VALID_LOG_LEVELS)}")
        return level

    @field_validator("log_format", mode="before")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = str(v).strip().lower()
        if fmt not in VALID_LOG_FORMATS:
            raise ValueError(f"Log format must be one of {', '.join(VALID_LOG_FORMATS)}")
        return fmt

    @field_validator("storage_backend", mode="before")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        backend = str(v).strip().lower()
        if backend not in VALID_STORAGE_BACKENDS:
            raise ValueError(f"Storage backend must be one of {', '.join(VALID_STORAGE_BACKENDS)}")
        return backend

    @field_validator("platform", mode="before")
    @classmethod
    def validate_platform(cls, v: str) -> str:
        platform = str(v).strip().lower()
        if platform not in VALID_PLATFORMS:
            raise ValueError(f"Platform must be one of {', '.join(VALID_PLATFORMS)}")
        return platform

    @field_validator("write_throttle_ms")
    @classmethod
    def validate_write_throttle(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Write throttle must not be negative")
        return v

    @field_validator("hot_cache_max_entries")
    @classmethod
    def validate_hot_cache_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Hot cache size must be positive")
        return v

    @field_validator("prefetch_stores", mode="before")
    @classmethod
    def validate_prefetch_stores(cls, v: str | list) -> list:
        """Parse store names from comma-separated string or list."""
        if isinstance(v, str):
            if not v.strip():
                return []
            return [name.strip() for name in v.split(",") if name.strip()]
        if isinstance(v, list):
            return [str(name).strip() for name in v if str(name).strip()]
        return []

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
        extra="ignore",  # Ignore extra environment variables instead of forbidding them
    )


def get_settings() -> Settings:
    """Build a fresh settings instance from the environment."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance - will be created when first accessed
settings = None


def get_settings_instance() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global settings  # noqa: PLW0603
    if settings is None:
        settings = get_settings()
    return settings


def reset_settings_instance() -> None:
    """Drop the cached settings (for testing only)."""
    global settings  # noqa: PLW0603
    settings = None
