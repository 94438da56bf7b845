"""Configuration management for the Scrapeboard system."""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class GlobalConfig(BaseModel):
    """Global system configuration."""
    log_level: str = "INFO"
    log_file: Optional[str] = "~/.scrapeboard/logs/scrapeboard.log"

    model_config = ConfigDict(extra="allow")


class FetchConfig(BaseModel):
    """Default settings for fetching plugin targets."""
    timeout: float = 30.0
    user_agent: str = "Scrapeboard/1.0"
    max_content_bytes: int = 10 * 1024 * 1024
    verify_ssl: bool = True

    model_config = ConfigDict(extra="allow")


class SchedulerConfig(BaseModel):
    """Scheduling and retry policy."""
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    max_sleep: float = 60.0

    model_config = ConfigDict(extra="allow")


class WorkersConfig(BaseModel):
    """Worker pool sizing and liveness settings."""
    pool_size: int = 4
    elastic: bool = False
    min_workers: int = 1
    max_workers: int = 8
    heartbeat_interval: float = 5.0
    heartbeat_timeout: float = 30.0
    idle_wait: float = 1.0
    monitor_interval: float = 1.0
    scale_window: int = 10

    model_config = ConfigDict(extra="allow")


class StorageConfig(BaseModel):
    """Storage configuration."""
    database_path: str = "~/.scrapeboard/scrapeboard.db"
    record_batch_size: int = 100

    # SQLite specific settings
    sqlite_wal_mode: bool = True
    sqlite_cache_size: int = 10000
    sqlite_synchronous: str = "NORMAL"

    model_config = ConfigDict(extra="allow")


class EventsConfig(BaseModel):
    """Event log buffering."""
    buffer_size: int = 5000
    subscriber_queue_size: int = 1000
    drop_summary_every: int = 100

    model_config = ConfigDict(extra="allow")


class APIConfig(BaseModel):
    """HTTP API settings."""
    host: str = "127.0.0.1"
    port: int = 8080
    page_size: int = 50
    max_page_size: int = 500

    model_config = ConfigDict(extra="allow")


class ScrapeboardConfig(BaseSettings):
    """Main configuration class that combines all settings."""

    version: str = "1.0"

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    model_config = SettingsConfigDict(
        env_prefix="SCRAPEBOARD_",
        env_nested_delimiter="__",
        case_sensitive=False,
        populate_by_name=True,
        extra="allow"
    )

    @field_validator("storage")
    @classmethod
    def expand_storage_paths(cls, v):
        """Expand user paths in storage configuration."""
        if isinstance(v, dict):
            v = StorageConfig(**v)
        if v.database_path != ":memory:":
            v.database_path = str(Path(v.database_path).expanduser())
        return v

    @field_validator("global_")
    @classmethod
    def expand_global_paths(cls, v):
        """Expand user paths in global configuration."""
        if isinstance(v, dict):
            v = GlobalConfig(**v)
        if v.log_file and v.log_file.startswith("~"):
            v.log_file = str(Path(v.log_file).expanduser())
        return v


class ConfigManager:
    """Manages configuration loading, validation, and access."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = {}
        self._pydantic_config: Optional[ScrapeboardConfig] = None
        self._load_default_config()

    def _get_default_config_path(self) -> Path:
        """Get the default configuration file path."""
        env_path = os.getenv("SCRAPEBOARD_CONFIG_PATH")
        if env_path:
            return Path(env_path).expanduser()
        return Path.home() / ".scrapeboard" / "config.yaml"

    def get_default_config_path(self) -> Path:
        """Get the default configuration file path."""
        return self._get_default_config_path()

    def get_system_config_path(self) -> Path:
        """Get the system configuration file path."""
        return Path("/etc/scrapeboard/config.yaml")

    def _load_default_config(self) -> None:
        """Load default configuration as dict."""
        default_config = ScrapeboardConfig()
        self._config = default_config.model_dump(by_alias=True)
        self._pydantic_config = default_config

    @property
    def config(self) -> ScrapeboardConfig:
        """Get the current configuration as Pydantic model."""
        if self._pydantic_config is None:
            self._pydantic_config = ScrapeboardConfig(**self._config)
        return self._pydantic_config

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a configuration setting using dot notation.

        Args:
            key: Setting key in dot notation (e.g., 'fetch.timeout')
            default: Default value if setting is not found

        Returns:
            Configuration value or default
        """
        value: Any = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set_setting(self, key: str, value: Any) -> None:
        """Set a configuration setting (runtime only).

        Args:
            key: Setting key in dot notation
            value: Value to set
        """
        keys = key.split('.')
        current = self._config
        for k in keys[:-1]:
            if not isinstance(current.get(k), dict):
                current[k] = {}
            current = current[k]
        current[keys[-1]] = value

        # Rebuilt lazily on next access
        self._pydantic_config = None

    def validate_config(self) -> Dict[str, Any]:
        """Validate the current configuration.

        Returns:
            Dictionary with validation results
        """
        result: Dict[str, Any] = {
            "valid": True,
            "errors": [],
            "warnings": []
        }

        try:
            config = ScrapeboardConfig(**self._config)
        except Exception as e:
            result["valid"] = False
            result["errors"].append(f"Configuration validation failed: {e}")
            return result

        if config.fetch.timeout <= 0:
            result["errors"].append("Fetch timeout must be positive")
        if config.scheduler.max_attempts < 1:
            result["errors"].append("Scheduler max_attempts must be at least 1")
        if config.scheduler.backoff_base < 0:
            result["errors"].append("Scheduler backoff_base must not be negative")
        if config.workers.pool_size < 1:
            result["errors"].append("Workers pool_size must be at least 1")
        if config.workers.min_workers < 1:
            result["errors"].append("Workers min_workers must be at least 1")
        if config.workers.min_workers > config.workers.max_workers:
            result["errors"].append("Workers min_workers must not exceed max_workers")
        if config.workers.heartbeat_timeout <= config.workers.heartbeat_interval:
            result["errors"].append("Workers heartbeat_timeout must exceed heartbeat_interval")
        if config.events.buffer_size < 1:
            result["errors"].append("Events buffer_size must be positive")
        if config.workers.elastic and not (
            config.workers.min_workers <= config.workers.pool_size <= config.workers.max_workers
        ):
            result["warnings"].append("Workers pool_size is outside [min_workers, max_workers] and will be clamped")

        if config.storage.database_path != ":memory:":
            storage_dir = Path(config.storage.database_path).parent
            if not storage_dir.exists():
                result["warnings"].append(f"Storage directory does not exist yet: {storage_dir}")

        if result["errors"]:
            result["valid"] = False
        return result

    def get_section(self, section_name: str) -> Optional[Dict[str, Any]]:
        """Get a configuration section."""
        return self._config.get(section_name)

    def get_all_settings(self) -> Dict[str, Any]:
        """Get all configuration settings."""
        return self._config.copy()

    def load_from_file(self) -> None:
        """Load configuration from file.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed
        """
        if not self.config_path or not self.config_path.exists():
            return

        from .errors import ConfigurationError

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                if self.config_path.suffix.lower() == '.json':
                    file_data = json.load(f)
                else:
                    file_data = yaml.safe_load(f) or {}
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration from {self.config_path}: {e}")

        if not isinstance(file_data, dict):
            raise ConfigurationError(f"Configuration file {self.config_path} must contain a mapping")

        self._deep_merge(self._config, file_data)
        self._pydantic_config = None

    def save_to_file(self) -> None:
        """Save configuration to file."""
        if not self.config_path:
            return

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            if self.config_path.suffix.lower() == '.json':
                json.dump(self._config, f, indent=2)
            else:
                yaml.dump(self._config, f, default_flow_style=False, indent=2)

    def load_from_environment(self) -> None:
        """Load configuration from SCRAPEBOARD_<SECTION>__<KEY> environment variables."""
        for key, value in os.environ.items():
            if not key.startswith("SCRAPEBOARD_") or key == "SCRAPEBOARD_CONFIG_PATH":
                continue
            # SCRAPEBOARD_WORKERS__POOL_SIZE -> workers.pool_size
            config_key = key[len("SCRAPEBOARD_"):].lower().replace("__", ".")

            parsed: Any = value
            if value.lower() in ("true", "false"):
                parsed = value.lower() == "true"
            elif value.isdigit():
                parsed = int(value)
            elif "." in value and value.replace(".", "", 1).isdigit():
                parsed = float(value)

            self.set_setting(config_key, parsed)

        self._pydantic_config = None

    def merge_config(self, new_config: Dict[str, Any]) -> None:
        """Merge new configuration with existing."""
        self._deep_merge(self._config, new_config)
        self._pydantic_config = None

    def _deep_merge(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        """Deep merge source into target dictionary."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._deep_merge(target[key], value)
            else:
                target[key] = value

    def load_hierarchical(self) -> None:
        """Load configuration hierarchically (system -> user -> custom -> environment)."""
        self._load_default_config()

        for path in (self.get_system_config_path(), self.get_default_config_path(), self.config_path):
            if path and path.exists():
                temp_manager = ConfigManager(path)
                temp_manager.load_from_file()
                self.merge_config(temp_manager._config)

        self.load_from_environment()

    def create_default_config(self, config_path: Optional[Path] = None) -> Path:
        """Create a default configuration file.

        Args:
            config_path: Path to create config file (defaults to standard location)

        Returns:
            Path to created config file
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_dict = ScrapeboardConfig().model_dump(by_alias=True)

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_dict, f, default_flow_style=False, indent=2)

        return config_path

    def reload_config(self) -> None:
        """Reload configuration from file and environment."""
        self._load_default_config()
        if self.config_path and self.config_path.exists():
            self.load_from_file()
        self.load_from_environment()


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def set_config_manager(config_manager: Optional[ConfigManager]) -> None:
    """Replace the global configuration manager (used by the CLI and tests)."""
    global _config_manager
    _config_manager = config_manager
