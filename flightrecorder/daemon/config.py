"""Configuration management for flightrecorder."""

from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .monitors import MonitorSettings
from .privacy import DEFAULT_EXCLUDED_APPS, DEFAULT_PLACEHOLDER, FilterConfig, FilterMode
from .retention import RetentionPolicy

DATA_DIR = Path("~/.local/share/flightrecorder")


class CaptureConfig(BaseModel):
    clipboard_enabled: bool = True
    text_field_enabled: bool = True
    clipboard_interval_ms: int = 500
    snapshot_interval_ms: int = 2000
    min_content_length: int = 1
    max_content_length: int = 1_000_000
    skip_password_fields: bool = True
    channel_capacity: int = 100

    @field_validator("clipboard_interval_ms", "snapshot_interval_ms")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("poll intervals must be greater than 0")
        return v

    @field_validator("min_content_length", "max_content_length")
    @classmethod
    def validate_length(cls, v: int) -> int:
        if v < 0:
            raise ValueError("content lengths cannot be negative")
        return v

    @field_validator("channel_capacity")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("channel_capacity must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_length_range(self) -> "CaptureConfig":
        if self.min_content_length > self.max_content_length:
            raise ValueError("min_content_length cannot exceed max_content_length")
        return self

    def clipboard_settings(self) -> MonitorSettings:
        return MonitorSettings(
            poll_interval=self.clipboard_interval_ms / 1000,
            min_content_length=self.min_content_length,
            max_content_length=self.max_content_length,
            skip_password_fields=self.skip_password_fields,
        )

    def text_field_settings(self) -> MonitorSettings:
        return MonitorSettings(
            poll_interval=self.snapshot_interval_ms / 1000,
            min_content_length=self.min_content_length,
            max_content_length=self.max_content_length,
            skip_password_fields=self.skip_password_fields,
        )


class PrivacyConfig(BaseModel):
    enabled: bool = True
    mode: FilterMode = FilterMode.BLOCK
    use_builtin_patterns: bool = True
    custom_patterns: List[str] = Field(default_factory=list)
    excluded_apps: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_APPS))
    redaction_placeholder: str = DEFAULT_PLACEHOLDER


class StorageConfig(BaseModel):
    database_path: Path = DATA_DIR / "captures.db"
    max_captures: int = 100_000  # 0 disables the count rule
    max_age_days: int = 30  # 0 disables the age rule
    prune_interval_hours: int = 24

    @field_validator("max_captures", "max_age_days")
    @classmethod
    def validate_limit(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retention limits cannot be negative")
        return v

    @field_validator("prune_interval_hours")
    @classmethod
    def validate_prune_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("prune_interval_hours must be at least 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = DATA_DIR / "logs" / "daemon.log"
    rotation: str = "1 day"
    retention: str = "7 days"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return v


class Config(BaseModel):
    """Main configuration for the flightrecorder daemon."""

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def search_paths() -> List[Path]:
        return [
            Path("flightrecorder.yaml"),
            Path.home() / ".config" / "flightrecorder" / "config.yaml",
        ]

    @classmethod
    def find_config_path(cls) -> Optional[Path]:
        for candidate in cls.search_paths():
            if candidate.exists():
                return candidate
        return None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from YAML.

        Args:
            config_path: Explicit file to read. When omitted the default
                locations are searched and built-in defaults are used if none
                exists.

        Raises:
            ConfigError: The file is missing, unreadable or invalid.
        """
        if config_path is None:
            config_path = cls.find_config_path()
            if config_path is None:
                logger.debug("No config file found, using defaults")
                return cls()
        else:
            config_path = Path(config_path).expanduser()
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read config file {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config in {config_path}:\n{e}") from e

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path = Path(config_path).expanduser()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)

    def database_path(self) -> Path:
        return self.storage.database_path.expanduser()

    def log_file(self) -> Optional[Path]:
        return self.logging.file.expanduser() if self.logging.file else None

    def max_age(self) -> Optional[timedelta]:
        if self.storage.max_age_days == 0:
            return None
        return timedelta(days=self.storage.max_age_days)

    def prune_interval(self) -> timedelta:
        return timedelta(hours=self.storage.prune_interval_hours)

    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            max_age=self.max_age(),
            max_count=self.storage.max_captures or None,
            interval=self.prune_interval(),
        )

    def filter_config(self) -> FilterConfig:
        return FilterConfig(
            enabled=self.privacy.enabled,
            mode=self.privacy.mode,
            use_builtin_patterns=self.privacy.use_builtin_patterns,
            custom_patterns=list(self.privacy.custom_patterns),
            excluded_apps=list(self.privacy.excluded_apps),
            redaction_placeholder=self.privacy.redaction_placeholder,
        )
