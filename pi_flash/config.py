"""Configuration settings for pi_flash.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Also defines the pydantic models for the two JSON files consumed as
external inputs: the flash configuration and the WiFi credentials.
"""

import json
import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the PI_FLASH_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="PI_FLASH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    image_dir: Path = Field(
        default=Path("build/images"),
        description="Directory searched for disk images",
    )
    image_suffix: str = Field(
        default=".wic.gz",
        description="Required suffix of flashable images",
    )
    preferred_images: list[str] = Field(
        default_factory=list,
        description="Exact image names preferred over the most recent one",
    )
    config_path: Path = Field(
        default=Path(".flash-config.json"),
        description="Flash configuration JSON file",
    )
    wifi_creds_path: Path = Field(
        default=Path(".wifi-creds.json"),
        description="WiFi credentials JSON file",
    )

    # Device user
    username: str = Field(
        default="pi",
        description="User whose authorized_keys receives the SSH key",
    )
    user_uid: int = Field(default=1000, ge=0, description="UID/GID of that user")

    # Partitions
    data_free_percent: int = Field(
        default=10,
        ge=0,
        le=90,
        description="Percent of the disk left unallocated when growing /data",
    )

    # Remote
    remote_user: str = Field(default="pi", description="SSH user on the device")
    remote_tmp: str = Field(
        default="/tmp",
        description="Remote scratch directory for transferred images",
    )
    ssh_connect_timeout: int = Field(
        default=5,
        ge=1,
        description="SSH connect timeout in seconds",
    )
    reboot_timeout: int = Field(
        default=120,
        ge=10,
        description="Seconds to wait for a remote reboot",
    )
    reboot_poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between reachability polls",
    )
    fresh_uptime_threshold: float = Field(
        default=120.0,
        gt=0,
        description="Uptime (seconds) below which a device counts as freshly booted",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


class FlashConfig(BaseModel):
    """Schema for the flash configuration file.

    Attributes:
        ssh_key_path: Path to the SSH public key installed on the device.
        device: Default target device (e.g., '/dev/sdb').
        hostname: Hostname written to the boot partition.
        backup_data: Back up and restore the data partition automatically.
        skip_confirmation: Skip the typed device confirmation.
    """

    model_config = ConfigDict(extra="ignore")

    ssh_key_path: str = Field(min_length=1)
    device: str | None = None
    hostname: str | None = None
    backup_data: bool | None = None
    skip_confirmation: bool | None = None


class WifiCredentials(BaseModel):
    """Schema for the WiFi credentials file."""

    model_config = ConfigDict(extra="ignore")

    ssid: str
    password: str

    @field_validator("ssid", "password")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        """Reject empty strings."""
        if not v:
            raise ValueError("must be a non-empty string")
        return v


def _read_json(path: Path) -> object | None:
    """Read a JSON file, warning and returning None on failure."""
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("%s: invalid JSON - %s", path, e)
    except OSError as e:
        logger.warning("%s: %s", path, e)
    return None


def load_flash_config(path: Path) -> FlashConfig | None:
    """Load the flash configuration.

    Args:
        path: Path to the JSON config file.

    Returns:
        FlashConfig, or None if the file is missing, invalid, lacks
        ``ssh_key_path``, or the configured key no longer exists.
    """
    if not path.exists():
        return None

    data = _read_json(path)
    if data is None:
        return None

    try:
        config = FlashConfig.model_validate(data)
    except ValidationError as e:
        logger.warning("%s: invalid flash config - %s", path, e.errors()[0]["msg"])
        return None

    if not Path(config.ssh_key_path).expanduser().exists():
        logger.warning("Configured SSH key no longer exists: %s", config.ssh_key_path)
        return None

    return config


def save_flash_config(path: Path, config: FlashConfig) -> bool:
    """Save the flash configuration.

    Returns:
        True if saved successfully.
    """
    try:
        path.write_text(
            json.dumps(config.model_dump(exclude_none=True), indent=2) + "\n",
            encoding="utf-8",
        )
        return True
    except OSError as e:
        logger.warning("Failed to save config: %s", e)
        return False


def load_wifi_credentials(path: Path) -> WifiCredentials | None:
    """Load WiFi credentials.

    Invalid JSON or missing fields are reported and treated as
    "no credentials available", never as a hard failure.
    """
    if not path.exists():
        return None

    data = _read_json(path)
    if data is None:
        return None

    try:
        return WifiCredentials.model_validate(data)
    except ValidationError as e:
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "<root>"
            logger.warning('%s: missing or invalid "%s" field', path, field)
        return None


__all__ = [
    "FlashConfig",
    "Settings",
    "WifiCredentials",
    "get_settings",
    "load_flash_config",
    "load_wifi_credentials",
    "print_settings_json",
    "save_flash_config",
]
