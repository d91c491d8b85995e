"""Configuration for the Amazon Appstore client and publish runs."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field

from amazon_appstore_mcp.errors import ConfigurationError

DEFAULT_BASE_URL = "https://developer.amazon.com/api/appstore/"
DEFAULT_AUTH_URL = "https://api.amazon.com/auth/o2/token"
LARGE_UPLOAD_THRESHOLD = 300 * 1024 * 1024  # 300 MiB


class ClientSettings(BaseModel):
    """Transport settings shared by every call of a run."""

    base_url: str = Field(DEFAULT_BASE_URL, description="Appstore API base URL")
    auth_url: str = Field(DEFAULT_AUTH_URL, description="Login with Amazon token endpoint")
    api_version: str = Field("v1", description="API version path segment")
    read_timeout: float = Field(30.0, description="Read timeout in seconds")
    write_timeout: float = Field(60.0, description="Write timeout in seconds")
    connect_timeout: float = Field(30.0, description="Connect timeout in seconds")
    large_upload_threshold: int = Field(
        LARGE_UPLOAD_THRESHOLD,
        description="APKs at or above this size in bytes use the large upload endpoints",
    )

    @classmethod
    def from_env(cls) -> ClientSettings:
        """Build settings, overriding defaults from AMAZON_APPSTORE_* variables."""
        overrides: dict[str, Any] = {}
        if base_url := os.environ.get("AMAZON_APPSTORE_BASE_URL"):
            overrides["base_url"] = base_url
        if read_timeout := os.environ.get("AMAZON_APPSTORE_READ_TIMEOUT"):
            overrides["read_timeout"] = float(read_timeout)
        if write_timeout := os.environ.get("AMAZON_APPSTORE_WRITE_TIMEOUT"):
            overrides["write_timeout"] = float(write_timeout)
        return cls(**overrides)

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self.connect_timeout,
            read=self.read_timeout,
            write=self.write_timeout,
        )


class PublishConfig(BaseModel):
    """Inputs of a single publish run."""

    security_profile: str | dict[str, Any] | None = Field(
        None, description="LWA security profile: path to JSON file, JSON string or dict"
    )
    application_id: str | None = Field(None, description="Amazon application ID")
    apk_paths: list[Path] = Field(default_factory=list, description="APK files to publish")
    replace_edit: bool = Field(False, description="Delete the active edit before publishing")
    replace_apks: bool = Field(
        False, description="Replace existing APKs in place instead of upload-new/delete-old"
    )

    @classmethod
    def from_env(cls, **overrides: Any) -> PublishConfig:
        """Build a config, filling credentials from the environment when not given."""
        values: dict[str, Any] = {
            "security_profile": os.environ.get("AMAZON_APPSTORE_SECURITY_PROFILE"),
            "application_id": os.environ.get("AMAZON_APPSTORE_APPLICATION_ID"),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def validate_inputs(self) -> tuple[str | dict[str, Any], str]:
        """Check required inputs before any network activity.

        Returns:
            Tuple of (security_profile, application_id), both known to be set.

        Raises:
            ConfigurationError: If a required value is missing or an APK path is not a file.
        """
        if not self.security_profile:
            raise ConfigurationError("Missing required path to LWA security profile")

        if not self.application_id:
            raise ConfigurationError("Specify your app's application identifier")

        if not self.apk_paths:
            raise ConfigurationError("No APKs to upload")

        missing = [str(path) for path in self.apk_paths if not path.is_file()]
        if missing:
            raise ConfigurationError(f"APK file not found: {', '.join(missing)}")

        return self.security_profile, self.application_id
