"""Configuration management using Pydantic Settings."""

import logging
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["Tasks.ReadWrite", "User.Read", "offline_access"]


class MicrosoftConfig(BaseSettings):
    """Configuration for the Microsoft To Do integration."""

    client_id: str | None = None
    client_secret: str | None = None
    tenant: str = "consumers"
    authority_url: str = "https://login.microsoftonline.com"
    graph_url: str = "https://graph.microsoft.com/v1.0"
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))

    # Base URL of the dashboard; back-links and post-auth redirects point here
    site_url: str = "http://localhost:3000"
    redirect_uri: str | None = None
    # Public base URL Graph can POST change notifications to (None = polling only)
    webhook_base_url: str | None = None
    state_secret: str = "change-me"

    list_name: str = "TodoBridge"
    application_name: str = "TodoBridge"
    time_zone: str = "Europe/Rome"

    request_timeout: float = 30.0
    max_retries: int = 2

    @field_validator("authority_url", "graph_url", "site_url", "redirect_uri", "webhook_base_url", mode="before")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate URL format and drop trailing slashes."""
        if v is None:
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        return v

    @property
    def token_url(self) -> str:
        return f"{self.authority_url}/{self.tenant}/oauth2/v2.0/token"

    @property
    def authorize_url(self) -> str:
        return f"{self.authority_url}/{self.tenant}/oauth2/v2.0/authorize"

    @property
    def effective_redirect_uri(self) -> str:
        """Redirect URI registered with the app, derived from site_url if unset."""
        return self.redirect_uri or f"{self.site_url}/api/integrations/microsoft/callback"

    @property
    def webhook_url(self) -> str | None:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url}/api/integrations/microsoft/webhook"

    @property
    def is_configured(self) -> bool:
        """True when both client credentials are available."""
        return bool(self.client_id and self.get_client_secret())

    def get_client_secret(self) -> str | None:
        """
        Get the OAuth client secret from keyring or config.

        Priority:
        1. System keyring (if client_id is configured)
        2. Config/environment variable (fallback)

        Returns:
            Secret if found, None otherwise
        """
        if self.client_id:
            try:
                from todobridge.utils.credentials import CredentialStore

                cred_store = CredentialStore()
                secret = cred_store.get_client_secret(self.client_id)
                if secret:
                    logger.debug("Using Microsoft client secret from system keyring")
                    return secret
            except Exception as e:
                logger.warning(f"Failed to retrieve client secret from keyring: {e}")

        if self.client_secret:
            logger.debug("Using Microsoft client secret from config/environment")
            return self.client_secret

        return None


class SyncConfig(BaseSettings):
    """Scheduling and batching settings for the sync engine."""

    enabled: bool = True
    poll_interval_minutes: int = 5
    lease_renewal_interval_minutes: int = 720
    # Graph caps To Do subscriptions at 4230 minutes
    lease_duration_minutes: int = 4229
    token_refresh_margin_seconds: int = 300
    initial_sync_limit: int = 200

    @field_validator("lease_duration_minutes")
    @classmethod
    def validate_lease_duration(cls, v: int) -> int:
        if not 1 <= v <= 4230:
            raise ValueError("lease_duration_minutes must be between 1 and 4230")
        return v

    @field_validator("poll_interval_minutes", "lease_renewal_interval_minutes", "initial_sync_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive")
        return v


class GeneralConfig(BaseSettings):
    """General application configuration."""

    log_level: str = "INFO"
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".todobridge"
    )
    log_file_name: str = "todobridge.log"
    log_file_max_bytes: int = 5 * 1024 * 1024
    log_file_backup_count: int = 3
    log_overrides: dict[str, str] = Field(default_factory=dict)
    # Runtime metadata - not serialized to config file (stored in settings DB instead)
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
        env_prefix="TODOBRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    microsoft: MicrosoftConfig = Field(default_factory=MicrosoftConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

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

        config_dict = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(config_dict, f)

        logger.info(f"Configuration saved to {config_path}")

    def ensure_data_dir(self) -> None:
        """Ensure data directory exists."""
        self.general.data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Data directory: {self.general.data_dir}")

    @property
    def credentials_db_path(self) -> Path:
        """Path to the Microsoft credentials database."""
        return self.general.data_dir / "credentials.db"

    @property
    def tasks_db_path(self) -> Path:
        """Path to the task store database."""
        return self.general.data_dir / "tasks.db"

    @property
    def default_config_path(self) -> Path:
        """Get default configuration file path."""
        return self.general.data_dir / "config.toml"


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
    config.ensure_data_dir()
    return config
