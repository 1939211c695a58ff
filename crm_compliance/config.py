"""
Configuration module for the CRM compliance engine.

Provides centralized configuration management for retention scheduling,
privacy request processing, and storage.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

from pydantic import BaseModel, Field, field_validator

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_WEEKDAYS = {
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
}


class ComplianceConfig(BaseModel):
    """Central configuration for the data lifecycle and compliance engine.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (CRM_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values (lowest priority)

    Example:
        >>> config = ComplianceConfig(
        ...     database_url="postgresql://crm@db/crm",
        ...     export_dir="/var/lib/crm/exports",
        ... )

        Loading from environment:

        >>> import os
        >>> os.environ['CRM_EXPORT_EXPIRY_DAYS'] = '14'
        >>> config = ComplianceConfig.from_env()

    Note:
        Scheduler times are interpreted in ``scheduler_timezone``. Changing
        them requires restarting the scheduler.
    """

    # General settings
    application_name: str = Field(
        "CRM Compliance Engine", description="Name used in audit entries and CLI"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    log_level: str = Field("INFO", description="Logging level for the CLI")

    # Storage settings
    database_url: str = Field(
        "sqlite:///./crm_compliance.db", description="SQLAlchemy database URL"
    )
    export_dir: str = Field(
        "./exports", description="Directory holding export artifacts"
    )

    # Privacy request settings
    api_prefix: str = Field(
        "/api/gdpr", description="Path prefix for download and verification URLs"
    )
    export_expiry_days: int = Field(
        7, description="Days an export artifact stays downloadable", gt=0
    )
    export_estimated_minutes: int = Field(
        30, description="Estimated minutes until an export completes", gt=0
    )
    deletion_estimated_days: int = Field(
        7, description="Estimated days until a deletion completes", gt=0
    )
    max_downloads: int = Field(
        3, description="Maximum downloads per export artifact", gt=0, le=100
    )
    export_workers: int = Field(
        4, description="Worker threads for background exports", gt=0, le=64
    )

    # Retention scheduler settings
    daily_cleanup_time: str = Field("02:00", description="Daily sweep time (HH:MM)")
    weekly_cleanup_day: str = Field(
        "sunday", description="Weekday of the audit log cleanup"
    )
    weekly_cleanup_time: str = Field(
        "03:00", description="Weekly audit log cleanup time (HH:MM)"
    )
    scheduler_timezone: str = Field("UTC", description="Timezone of scheduled jobs")
    scheduler_poll_seconds: float = Field(
        30.0, description="Seconds between scheduler checks", gt=0
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("daily_cleanup_time", "weekly_cleanup_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        """Ensure schedule times use 24-hour HH:MM."""
        if not _TIME_PATTERN.match(v):
            raise ValueError(f"Schedule time must use HH:MM format, got '{v}'")
        return v

    @field_validator("weekly_cleanup_day")
    @classmethod
    def validate_weekday(cls, v: str) -> str:
        """Ensure the weekly cleanup day is a weekday name."""
        if v.lower() not in _WEEKDAYS:
            raise ValueError(f"Unknown weekday '{v}'")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize the logging level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return level

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump()

    @property
    def export_path(self) -> Path:
        """Export directory as a path."""
        return Path(self.export_dir)

    @classmethod
    def from_env(cls, prefix: str = "CRM_") -> "ComplianceConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]

            field_type = field_info.annotation
            if get_origin(field_type) is Union:
                args = get_args(field_type)
                field_type = next((arg for arg in args if arg is not type(None)), str)

            try:
                if field_type == bool:
                    config_dict[field_name] = value.lower() in (
                        "true",
                        "1",
                        "yes",
                        "on",
                    )
                elif field_type == int:
                    config_dict[field_name] = int(value)
                elif field_type == float:
                    config_dict[field_name] = float(value)
                else:
                    config_dict[field_name] = value
            except (ValueError, TypeError):
                # Let model validation report the bad value
                config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ComplianceConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to the configuration file

        Returns:
            Configuration instance
        """
        file_path = Path(path)
        text = file_path.read_text(encoding="utf-8")

        if file_path.suffix.lower() in (".yaml", ".yml"):
            import yaml

            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {file_path} must contain a mapping")

        return cls.model_validate(data)


# Global configuration instance
_config: Optional[ComplianceConfig] = None


def get_config() -> ComplianceConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = ComplianceConfig.from_env()

    return _config


def set_config(config: Optional[ComplianceConfig]) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set, or None to reload from the environment
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> ComplianceConfig:
    """
    Configure the engine with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = ComplianceConfig(**kwargs)
    else:
        config_dict = _config.to_dict()
        config_dict.update(kwargs)
        _config = ComplianceConfig(**config_dict)

    return _config
