"""Configuration settings for coreos_customizer.

Uses pydantic-settings for config parsing from environment variables
and defaults. Only tooling knobs live here; the build inputs themselves
(URLs, resources, output path) always come from the caller.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the COREOS_CUSTOM_
    prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREOS_CUSTOM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    tmp_dir: Path | None = Field(
        default=None,
        description="Parent for working directories (uses system default if not set)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Image layout
    squashfs_image: str = Field(
        default="usr.squashfs",
        description="Path of the SquashFS image inside the extracted initram",
    )
    mount_subpath: str = Field(
        default="share/oem",
        description="Directory inside the SquashFS image receiving resources",
    )

    # SquashFS tooling
    unsquashfs_bin: str = Field(
        default="unsquashfs",
        description="unsquashfs executable",
    )
    mksquashfs_bin: str = Field(
        default="mksquashfs",
        description="mksquashfs executable",
    )
    squashfs_compressor: str | None = Field(
        default=None,
        description="Compressor for the rebuilt image (detected from source if not set)",
    )
    squashfs_mkfs_time: int | None = Field(
        default=0,
        ge=0,
        description="Fixed filesystem creation time for reproducible images",
    )
    squashfs_all_root: bool | None = Field(
        default=None,
        description="Record every SquashFS file as owned by root (default: when not root)",
    )

    # Initram packing
    gzip_level: int = Field(
        default=9,
        ge=1,
        le=9,
        description="gzip compression level for the repacked initram",
    )
    initram_root_owned: bool | None = Field(
        default=None,
        description="Record every initram entry as root:root (default: when not root)",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for each artifact download",
    )
    tool_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for each squashfs-tools invocation",
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


__all__ = ["Settings", "get_settings", "print_settings_json"]
