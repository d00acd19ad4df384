"""
Configuration management using Pydantic.

Loads configuration from YAML files and environment variables.
"""
from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

from signalstream.exceptions import ConfigurationError


class BrokerConfig(BaseSettings):
    """MetaApi account and terminal settings."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    account_id: Optional[str] = Field(default=None, description="MetaApi account id (METAAPI_ACCOUNT_ID)")
    token: Optional[str] = Field(default=None, description="MetaApi auth token (METAAPI_TOKEN)")
    region_url: Optional[str] = Field(
        default=None,
        description="REST client API base URL; discovered from the account when unset",
    )
    application: str = "MetaApi"
    deploy_if_needed: bool = Field(default=True, description="Deploy the terminal when it is not DEPLOYED")
    sync_timeout_seconds: int = Field(default=300, ge=10, le=1800, description="Initial synchronization timeout")
    rest_timeout_seconds: float = Field(default=10.0, ge=1.0, le=120.0)


class ReconnectConfig(BaseSettings):
    """Backoff and circuit breaker settings for the connection health tracker."""
    model_config = SettingsConfigDict(extra="ignore")

    base_delay_seconds: float = Field(default=5.0, gt=0.0, le=60.0)
    max_delay_seconds: float = Field(default=300.0, gt=0.0, le=3600.0)
    jitter_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    circuit_breaker_threshold: int = Field(default=10, ge=1, le=100)
    stale_event_seconds: int = Field(default=300, ge=30, le=3600, description="No events for this long = stale")
    keeper_interval_seconds: int = Field(default=60, ge=5, le=3600)


class RouterConfig(BaseSettings):
    """Position event router behaviour."""
    model_config = SettingsConfigDict(extra="ignore")

    pending_recheck_seconds: float = Field(default=0.2, ge=0.0, le=5.0, description="Wait before re-reading a PENDING lock")
    close_lookup_attempts: int = Field(default=3, ge=1, le=10)
    close_lookup_delay_seconds: float = Field(default=0.8, ge=0.0, le=10.0)
    close_lookup_window_minutes: int = Field(default=5, ge=1, le=60)
    synthesize_default_levels: bool = Field(
        default=True,
        description="Fill missing SL/TP with default_sl_pips and reward_risk_ratio",
    )
    default_sl_pips: float = Field(default=50.0, gt=0.0, le=1000.0)
    reward_risk_ratio: float = Field(default=2.0, gt=0.0, le=10.0)
    signal_category: str = "vip"
    created_by: str = "system"
    created_by_name: str = "MT5 Auto Signal"


class TelegramConfig(BaseSettings):
    """Telegram channel publishing."""
    model_config = SettingsConfigDict(extra="ignore")

    bot_token: Optional[str] = None
    channel_id: Optional[str] = None
    api_base_url: str = "https://api.telegram.org"
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)
    parse_mode: str = "HTML"

    open_trade_template: Optional[str] = Field(default=None, description="Overrides the built-in open message")
    update_trade_template: Optional[str] = None
    close_trade_template: Optional[str] = None

    send_update_notification: bool = False
    update_notification_style: Literal["reply", "copy"] = "reply"
    update_notification_prefix: str = "🔔 TP/SL Updated"
    send_close_notification: bool = True
    win_gif_url: Optional[str] = None
    loss_gif_url: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token and self.channel_id)


class FeaturesConfig(BaseSettings):
    """Independently toggleable router capabilities."""
    model_config = SettingsConfigDict(extra="ignore")

    signals_enabled: bool = True
    telegram_enabled: bool = True
    archive_enabled: bool = True


class StorageConfig(BaseSettings):
    """Database and audit log settings."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None
    max_logs: int = Field(default=1000, ge=10, le=1_000_000)
    log_cleanup_probability: float = Field(default=0.01, ge=0.0, le=1.0)
    archive_lock_max_age_seconds: int = Field(default=300, ge=10, le=86400)
    signal_lock_max_age_seconds: int = Field(default=300, ge=10, le=86400)
    quota_backoff_seconds: int = Field(default=300, ge=0, le=86400, description="Audit log silence after a quota error")


class MonitoringConfig(BaseSettings):
    """Process logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, v):
        return str(v).strip().lower() if v is not None else "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} and ${VAR:-default}."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        raw_content = yaml_path.read_text()

        pattern = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

        def replace_match(match):
            var_name, default = match.group(1), match.group(2)
            value = os.environ.get(var_name)
            if value is not None:
                return value
            return default if default is not None else ""

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        # Secrets may come straight from the environment without a YAML reference
        env_overrides = {
            ("broker", "account_id"): "METAAPI_ACCOUNT_ID",
            ("broker", "token"): "METAAPI_TOKEN",
            ("broker", "region_url"): "METAAPI_REGION_URL",
            ("telegram", "bot_token"): "TELEGRAM_BOT_TOKEN",
            ("telegram", "channel_id"): "TELEGRAM_CHANNEL_ID",
            ("storage", "database_url"): "DATABASE_URL",
        }
        for (section, key), env_name in env_overrides.items():
            section_dict = config_dict.setdefault(section, {}) or {}
            config_dict[section] = section_dict
            if not section_dict.get(key) and os.getenv(env_name):
                section_dict[key] = os.environ[env_name]

        # Empty strings from unset ${VAR} references mean "not configured"
        for section_dict in config_dict.values():
            if isinstance(section_dict, dict):
                for key, value in list(section_dict.items()):
                    if value == "":
                        section_dict[key] = None

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform cross-field validation checks."""
        if self.reconnect.base_delay_seconds > self.reconnect.max_delay_seconds:
            raise ValueError("reconnect.base_delay_seconds must not exceed reconnect.max_delay_seconds")
        if self.features.telegram_enabled and (self.telegram.bot_token or self.telegram.channel_id):
            if not self.telegram.is_configured:
                raise ValueError("telegram.bot_token and telegram.channel_id must be set together")
        if self.features.archive_enabled and not self.features.signals_enabled:
            raise ValueError("features.archive_enabled requires features.signals_enabled")

    def require_broker_credentials(self) -> tuple[str, str]:
        """Return (account_id, token) or raise ConfigurationError."""
        if not self.broker.enabled:
            raise ConfigurationError("MT5 streaming is disabled in configuration")
        if not self.broker.account_id:
            raise ConfigurationError("broker.account_id is not configured (METAAPI_ACCOUNT_ID)")
        if not self.broker.token:
            raise ConfigurationError("broker.token is not configured (METAAPI_TOKEN)")
        return self.broker.account_id, self.broker.token


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses signalstream/config/config.yaml

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()
    return config
