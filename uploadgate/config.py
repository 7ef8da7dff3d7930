"""Application configuration via Pydantic Settings.

All configuration is driven by environment variables prefixed with
``UPLOADGATE_``.  Every setting has a working default so the gateway starts
without a ``.env`` file; invalid values raise a ``ValidationError`` at startup
so misconfigured deployments fail fast.

Usage::

    from uploadgate.config import get_settings

    settings = get_settings()
    print(settings.policy_path)

The ``get_settings`` function is cached with ``functools.lru_cache``. To override
settings in tests, patch ``uploadgate.config.get_settings`` or set the relevant
environment variables before calling ``get_settings()`` for the first time.
"""
from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """UploadGate application settings.

    Environment variables are read case-insensitively. A ``.env`` file in the
    working directory is loaded automatically when present.
    """

    model_config = SettingsConfigDict(
        env_prefix="UPLOADGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Policy
    policy_path: Path = Field(
        default=Path("rules.json"),
        description="Path to the JSON admission policy document",
    )
    policy_cache: bool = Field(
        default=False,
        description="Cache the parsed policy until the document's mtime or size changes",
    )

    # Filesystem areas
    destination_dir: Path = Field(
        default=Path("user_files"),
        description="Directory that receives accepted uploads",
    )
    staging_dir: Path | None = Field(
        default=None,
        description="Private staging directory; defaults to <destination_dir>/.staging",
    )
    max_upload_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1,
        description="Uploads larger than this are refused before inspection",
    )
    collision_policy: Literal["reject", "overwrite", "uniquify"] = Field(
        default="reject",
        description="What commit does when the destination name already exists",
    )

    # Inspectors
    content_sniffer: Literal["libmagic", "file"] = Field(
        default="libmagic",
        description="Content sniffer backend: python-magic or the file(1) command",
    )
    av_backend: Literal["clamd", "clamscan"] = Field(
        default="clamd",
        description="Antivirus backend: clamd daemon or the clamscan command",
    )
    inspector_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on each content/string/metadata inspector call",
    )
    av_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound on a single antivirus scan",
    )
    strings_min_length: int = Field(
        default=4,
        ge=1,
        description="Minimum printable run length reported by strings(1)",
    )

    # ClamAV daemon
    clamav_host: str = Field(default="clamav", description="clamd TCP host")
    clamav_port: int = Field(default=3310, ge=1, le=65535, description="clamd TCP port")
    clamav_socket_path: str | None = Field(
        default=None,
        description="clamd UNIX socket; takes precedence over host/port when set",
    )

    # External binaries
    file_binary: str = "file"
    strings_binary: str = "strings"
    exiftool_binary: str = "exiftool"
    binwalk_binary: str = "binwalk"
    clamscan_binary: str = "clamscan"

    # Environment
    environment: str = Field(
        default="production",
        description="Deployment environment: development, staging, or production",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug logging (logs raw inspector output)",
    )

    @property
    def log_level(self) -> int:
        """``DEBUG`` when ``debug`` is set or in the development environment."""
        if self.debug or self.environment.lower() == "development":
            return logging.DEBUG
        return logging.INFO

    @field_validator("staging_dir")
    @classmethod
    def validate_staging_dir(cls, v: Path | None) -> Path | None:
        if v is not None and str(v).strip() == "":
            return None
        return v

    @property
    def resolved_staging_dir(self) -> Path:
        """Staging directory, defaulting to a hidden folder beside the destination.

        Keeping staging on the same filesystem as the destination is what makes
        the final commit an atomic rename.
        """
        return self.staging_dir or self.destination_dir / ".staging"


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    The first call reads environment variables (and ``.env``). Subsequent calls
    return the cached instance. Clear the cache with ``get_settings.cache_clear()``
    between tests.
    """
    return Settings()
