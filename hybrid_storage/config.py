import logging
import os
import re
from functools import lru_cache
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hybrid_storage.lib.storage.base import StorageMode

logger = logging.getLogger(__name__)

# Load .env early so env vars are available for YAML interpolation
load_dotenv(Path.cwd() / ".env")

# Pattern to match $VAR_NAME environment variable references
ENV_VAR_PATTERN = re.compile(r"\$([A-Z_][A-Z0-9_]*)")

_MODE_ALIASES = {
    "r2-only": StorageMode.REMOTE_ONLY,
    "r2": StorageMode.REMOTE_ONLY,
    "remote": StorageMode.REMOTE_ONLY,
    "local": StorageMode.LOCAL_ONLY,
}

_config_path_override: Path | None = None


def interpolate_env_vars(value):
    """Recursively replace $VAR_NAME with os.environ values."""
    if isinstance(value, str):

        def replace(match):
            var = match.group(1)
            val = os.environ.get(var)
            if val is None:
                raise ValueError(f"Environment variable ${var} not set")
            return val

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]
    return value


def set_config_path(path: Path | str | None) -> None:
    """Override the config file location (used by the CLI ``-f`` option)."""
    global _config_path_override
    _config_path_override = Path(path) if path is not None else None


def get_config_path() -> Path:
    """Resolve the config file: explicit override, then ``app.{env}.yaml``, then ``app.yaml``."""
    if _config_path_override is not None:
        return _config_path_override
    env = os.environ.get("HYBRID_STORAGE_ENV", "").strip()
    if env and env != "production":
        return Path.cwd() / f"app.{env}.yaml"
    return Path.cwd() / "app.yaml"


def load_app_config() -> dict:
    """Load and parse the YAML config with environment variable interpolation."""
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found at {config_path}")

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    return interpolate_env_vars(config)


class R2Config(BaseModel):
    """Cloudflare R2 credentials and client tuning."""

    account_id: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    bucket: str = ""
    endpoint_url: str = ""
    region: str = "auto"
    connect_timeout: float = 5.0
    read_timeout: float = 30.0

    @property
    def missing_fields(self) -> list[str]:
        required = {
            "account_id": self.account_id,
            "access_key_id": self.access_key_id,
            "secret_access_key": self.secret_access_key,
            "bucket": self.bucket,
        }
        return [name for name, value in required.items() if not value or not value.strip()]

    @property
    def is_configured(self) -> bool:
        return not self.missing_fields

    @property
    def resolved_endpoint(self) -> str:
        if self.endpoint_url.strip():
            return self.endpoint_url
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


class LocalStorageConfig(BaseModel):
    """Directories used by the local filesystem backend."""

    avatars_path: str = "./public/avatars"
    uploads_path: str = "./public/userfiles"


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)


class StorageConfig(BaseModel):
    """Hybrid storage configuration."""

    mode: StorageMode = StorageMode.HYBRID
    r2: R2Config = R2Config()
    local: LocalStorageConfig = LocalStorageConfig()
    retry: RetryConfig = RetryConfig()
    availability_check_interval: float = 60.0
    location_cache_ttl: float = 300.0
    location_cache_size: int = Field(default=1000, ge=1)
    max_upload_size: int = 10 * 1024 * 1024
    max_avatar_size: int = 2 * 1024 * 1024
    stream_chunk_size: int = 64 * 1024

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        if isinstance(value, StorageMode):
            return value
        raw = str(value).strip().lower()
        if raw in _MODE_ALIASES:
            return _MODE_ALIASES[raw]
        try:
            return StorageMode(raw)
        except ValueError:
            logger.warning("Invalid storage mode %r, using 'hybrid'", value)
            return StorageMode.HYBRID

    @property
    def remote_enabled(self) -> bool:
        return self.r2.is_configured and self.mode is not StorageMode.LOCAL_ONLY


class LogfireConfig(BaseModel):
    """Pydantic Logfire observability configuration."""

    enabled: bool = False
    service_name: str = "hybrid-storage"
    environment: str = ""
    console: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HYBRID_STORAGE_",
        extra="ignore",
    )

    debug: bool = False
    log_level: str = "INFO"

    # Storage config (loaded from app.yaml)
    storage: StorageConfig = StorageConfig()

    # Observability config (loaded from app.yaml)
    logfire: LogfireConfig = LogfireConfig()


@lru_cache
def get_settings() -> Settings:
    """Load settings from .env and the YAML config file."""
    base_settings = Settings()

    try:
        app_config = load_app_config()
    except FileNotFoundError:
        return base_settings

    updates = {}

    if "debug" in app_config:
        updates["debug"] = bool(app_config["debug"])

    if "log_level" in app_config:
        updates["log_level"] = str(app_config["log_level"])

    if "storage" in app_config:
        updates["storage"] = StorageConfig(**(app_config["storage"] or {}))

    if "logfire" in app_config:
        updates["logfire"] = LogfireConfig(**(app_config["logfire"] or {}))

    if updates:
        return base_settings.model_copy(update=updates)

    return base_settings


def clear_settings_cache() -> None:
    get_settings.cache_clear()
