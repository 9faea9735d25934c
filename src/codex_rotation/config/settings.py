"""Settings configuration for codex-rotation."""

import tomllib
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from codex_rotation.core.paths import get_storage_path
from codex_rotation.exceptions import ConfigurationError


__all__ = [
    "RotationSettings",
    "get_settings",
]


class RotationSettings(BaseSettings):
    """
    Configuration settings for account rotation.

    Settings are loaded from environment variables (``CODEX_ROTATION_`` prefix)
    and optionally from a TOML file. Environment variables take precedence
    over TOML values.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODEX_ROTATION_",
        case_sensitive=False,
        extra="ignore",
    )

    accounts_path: Path = Field(
        default_factory=get_storage_path,
        description="Path to the persisted accounts document",
    )

    default_rate_limit_ms: int = Field(
        default=60 * 60 * 1000,
        ge=1000,
        description="Rate limit window used when the upstream gives no reset time",
    )

    auth_failure_cooldown_ms: int = Field(
        default=5 * 60 * 1000,
        ge=0,
        description="Cooldown applied after an authentication failure",
    )

    network_error_cooldown_ms: int = Field(
        default=30 * 1000,
        ge=0,
        description="Cooldown applied after a network error",
    )

    dedupe_on_save: bool = Field(
        default=True,
        description="Deduplicate accounts before every save",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    log_json: bool = Field(
        default=False,
        description="Render logs as JSON instead of console output",
    )

    @field_validator("accounts_path", mode="after")
    @classmethod
    def expand_accounts_path(cls, v: Path) -> Path:
        """Expand ``~`` in the accounts path."""
        return v.expanduser()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        level = v.upper()
        if level not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return level

    @classmethod
    def load_toml_config(cls, toml_path: Path) -> dict[str, Any]:
        """Load configuration from a TOML file.

        Args:
            toml_path: Path to the TOML configuration file

        Returns:
            dict: Configuration data from the ``[rotation]`` table, or the
            whole document when that table is absent

        Raises:
            ConfigurationError: If the TOML file is invalid or cannot be read
        """
        try:
            with toml_path.open("rb") as f:
                data = tomllib.load(f)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read TOML config file {toml_path}: {e}"
            ) from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML syntax in {toml_path}: {e}") from e

        section = data.get("rotation", data)
        if not isinstance(section, dict):
            raise ConfigurationError(
                f"Invalid [rotation] section in {toml_path}: expected a table"
            )
        return section

    @classmethod
    def from_toml(cls, toml_path: Path, **overrides: Any) -> "RotationSettings":
        """Create settings from a TOML file, with environment variables on top."""
        config_data = cls.load_toml_config(toml_path)
        config_data.update(overrides)
        # Init kwargs outrank env vars in pydantic-settings, so drop the
        # TOML keys that the environment already provides.
        env_settings = cls(**overrides)
        for name in env_settings.model_fields_set:
            if name not in overrides:
                config_data.pop(name, None)
        return cls(**config_data)


def get_settings(config_path: Path | str | None = None) -> RotationSettings:
    """Build rotation settings from the environment and an optional TOML file.

    Args:
        config_path: Optional path to a TOML configuration file

    Returns:
        RotationSettings: Configured settings instance
    """
    if config_path is None:
        return RotationSettings()
    return RotationSettings.from_toml(Path(config_path))
