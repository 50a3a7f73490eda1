"""Configuration management using Pydantic Settings."""

import logging
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class WebDAVSettings(BaseSettings):
    """Configuration for the WebDAV remote store."""

    url: str | None = None
    username: str = ""
    password: str | None = None
    timeout_ms: int = 10_000
    # Snapshot uploads and downloads get a longer budget than metadata calls
    transfer_timeout_ms: int = 15_000
    remote_dir: str = "AndyTab"
    ssl_verify: bool = True

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate WebDAV URL format."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("WebDAV URL must start with http:// or https://")
        return v or None

    @field_validator("timeout_ms", "transfer_timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Timeouts must be positive")
        return v

    @field_validator("remote_dir", mode="before")
    @classmethod
    def strip_remote_dir(cls, v: str) -> str:
        return v.strip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    def get_password(self) -> str | None:
        """
        Get WebDAV password from keyring or config.

        Priority:
        1. System keyring (if username is configured)
        2. Config/environment variable (fallback)

        Returns:
            Password if found, None otherwise
        """
        if self.username:
            try:
                from andytab.utils.credentials import CredentialStore

                password = CredentialStore().get_webdav_password(self.username)
                if password:
                    logger.debug("Using WebDAV password from system keyring")
                    return password
            except Exception as e:
                logger.warning(f"Failed to retrieve password from keyring: {e}")

        if self.password:
            logger.debug("Using WebDAV password from config/environment")
            return self.password

        return None


class SyncSettings(BaseSettings):
    """Configuration for automatic synchronization."""

    enabled: bool = True
    debounce_seconds: float = 3.0
    check_on_startup: bool = True

    @field_validator("debounce_seconds")
    @classmethod
    def validate_debounce(cls, v: float) -> float:
        if v < 0:
            raise ValueError("debounce_seconds cannot be negative")
        return v


class GeneralConfig(BaseSettings):
    """General application configuration."""

    log_level: str = "INFO"
    log_file_name: str = "andytab.log"
    log_file_max_bytes: int = 1_048_576
    log_file_backup_count: int = 3
    # Per-category thresholds for "webdav", "storage" or "sync", e.g. {"webdav": "DEBUG"}
    log_overrides: dict[str, str] = Field(default_factory=dict)
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".andytab"
    )
    # Runtime metadata - not serialized to config file
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand user home directory in data directory path."""
        return Path(v).expanduser().resolve()


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ANDYTAB_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    webdav: WebDAVSettings = Field(default_factory=WebDAVSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Load configuration from a TOML file."""
        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return cls()

        import tomllib

        with open(config_path, "rb") as f:
            config_dict = tomllib.load(f)

        return cls(**config_dict)

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to a TOML file."""
        import tomli_w

        config_path.parent.mkdir(parents=True, exist_ok=True)

        # Convert to dict, handling Path objects and excluding None values
        config_dict = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(config_dict, f)

        logger.info(f"Configuration saved to {config_path}")

    def ensure_data_dir(self) -> None:
        """Ensure data directory exists."""
        self.general.data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Data directory: {self.general.data_dir}")

    @property
    def store_db_path(self) -> Path:
        """Path to the local key-value store database."""
        return self.general.data_dir / "store.db"

    @property
    def offline_cache_path(self) -> Path:
        """Path to the persisted offline mirror."""
        return self.general.data_dir / "offline_cache.json"

    @property
    def default_config_path(self) -> Path:
        """Get default configuration file path."""
        return self.general.data_dir / "config.toml"


# Global configuration instance
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig()
        _config.ensure_data_dir()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
    _config.ensure_data_dir()


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from file or create default."""
    if config_path is None:
        config = AppConfig()
        config_path = config.default_config_path

    if config_path.exists():
        config = AppConfig.load_from_file(config_path)
    else:
        config = AppConfig()

    config.general.config_file = config_path
    set_config(config)
    return config
