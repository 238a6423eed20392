"""Configuration for the install monitor.

Settings are read from a YAML file that follows the XDG Base Directory
Specification ($XDG_CONFIG_HOME/store-monitor/config.yaml) and are parsed
into Pydantic models. A missing file yields the defaults.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

logger = structlog.get_logger(__name__)

APP_DIR_NAME = "store-monitor"
DEFAULT_TELEMETRY_ENDPOINT = "https://telemetry.example.invalid/v1/events"


class LogLevel(str, Enum):
    """Log level for diagnostic output."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ProgressConfig(BaseModel):
    """Tuning of the displayed progress ticker."""

    tick_interval_ms: int = Field(default=100, gt=0, description="Ticker period in milliseconds")
    catch_up_threshold: float = Field(
        default=5.0, ge=0, description="Lag (in percent) above which the display catches up fast"
    )
    catch_up_step: float = Field(default=1.0, gt=0, description="Step per tick when far behind")
    crawl_step: float = Field(default=0.2, gt=0, description="Step per tick when slightly behind")
    idle_creep_step: float = Field(
        default=0.05, ge=0, description="Step per tick once caught up with the target"
    )
    creep_ceiling: float = Field(
        default=95.0,
        ge=0,
        lt=100,
        description="Displayed progress never passes this value before a terminal event",
    )

    @property
    def tick_interval(self) -> float:
        """Ticker period in seconds."""
        return self.tick_interval_ms / 1000


class CredentialPolicy(BaseModel):
    """When credentials are requested and how long they are kept."""

    reduce_password_prompts: bool = Field(
        default=False,
        description="Ask for the password up front and cache it for the session",
    )
    session_ttl_seconds: int = Field(
        default=900, gt=0, description="Lifetime of a cached credential in seconds"
    )


class TelemetryConfig(BaseModel):
    """Anonymous outcome reporting. Off unless the user consented."""

    enabled: bool = Field(default=False, description="Whether the user consented to telemetry")
    endpoint: str = Field(default=DEFAULT_TELEMETRY_ENDPOINT, description="Collector URL")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Request timeout in seconds")


class NotificationOptions(BaseModel):
    """Desktop notification settings."""

    enabled: bool = Field(default=True, description="Send desktop notifications")
    on_success: bool = Field(default=True, description="Notify when an operation succeeds")
    on_failure: bool = Field(default=True, description="Notify when an operation fails")


class MonitorConfig(BaseModel):
    """Top-level configuration of the install monitor."""

    log_level: LogLevel = Field(default=LogLevel.WARNING, description="Diagnostic log level")
    log_file: Path | None = Field(default=None, description="Path to diagnostic log file")
    log_capacity: int = Field(
        default=2000, gt=0, description="Session log lines kept; oldest are dropped first"
    )
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    credentials: CredentialPolicy = Field(default_factory=CredentialPolicy)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    notifications: NotificationOptions = Field(default_factory=NotificationOptions)


def get_config_dir() -> Path:
    """Get the configuration directory following the XDG spec.

    Returns:
        Path to the configuration directory (not created).
    """
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_config_home) if xdg_config_home else Path.home() / ".config"
    return base / APP_DIR_NAME


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    return get_config_dir() / "config.yaml"


class YamlConfigLoader:
    """Loads and saves configuration dictionaries as YAML."""

    def load(self, path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file.

        Args:
            path: Path to the configuration file.

        Returns:
            Configuration dictionary (empty for an empty file).

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ConfigError: If the file is not valid YAML or not a mapping.
        """
        if not path.exists():
            logger.debug("config_file_not_found", path=str(path))
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration in {path} must be a mapping")
        return data

    def save(self, config: dict[str, Any], path: Path) -> None:
        """Save configuration to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.dump(config, default_flow_style=False, sort_keys=False))
        logger.info("config_saved", path=str(path))


class ConfigManager:
    """Loads, saves and initializes the monitor configuration."""

    def __init__(self, config_path: Path | None = None) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Optional path to the configuration file.
                        Uses the XDG default if not provided.
        """
        self.config_path = config_path or get_default_config_path()
        self._loader = YamlConfigLoader()
        self._config: MonitorConfig | None = None

    def load(self) -> MonitorConfig:
        """Load configuration from file.

        Returns:
            Loaded configuration, or defaults if the file doesn't exist.

        Raises:
            ConfigError: If the file is invalid.
        """
        try:
            data = self._loader.load(self.config_path)
        except FileNotFoundError:
            logger.info("using_default_config")
            self._config = MonitorConfig()
            return self._config

        try:
            self._config = MonitorConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {self.config_path}: {e}") from e

        return self._config

    def get_config(self) -> MonitorConfig:
        """Get the current configuration, loading it on first use."""
        if self._config is None:
            return self.load()
        return self._config

    def save(self, config: MonitorConfig | None = None) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save. Uses the current one if not provided.
        """
        if config is not None:
            self._config = config
        if self._config is None:
            self._config = MonitorConfig()

        self._loader.save(self._config.model_dump(mode="json"), self.config_path)

    def init_config(self, force: bool = False) -> bool:
        """Write a configuration file with default values.

        Args:
            force: If True, overwrite an existing configuration.

        Returns:
            True if the file was written, False if it already existed.
        """
        if self.config_path.exists() and not force:
            logger.info("config_exists", path=str(self.config_path))
            return False

        self.save(MonitorConfig())
        logger.info("config_initialized", path=str(self.config_path))
        return True
