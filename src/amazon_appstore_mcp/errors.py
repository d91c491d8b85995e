"""Exceptions raised while publishing to the Amazon Appstore."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from amazon_appstore_mcp.models import PublishPhase


class AppstoreError(Exception):
    """Base exception for Amazon Appstore errors."""


class ConfigurationError(AppstoreError):
    """Required publish input is missing or invalid."""


class AuthenticationError(AppstoreError):
    """The security profile could not be exchanged for an access token."""


class NetworkOperationFailure(AppstoreError):
    """A REST call returned a non-success status or failed in transport."""

    def __init__(self, operation: str, message: str, status_code: int | None = None) -> None:
        self.operation = operation
        self.status_code = status_code
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(f"{operation}: {message}")


class AttachFailure(NetworkOperationFailure):
    """A large APK was uploaded but could not be attached to the edit."""


class PublishError(AppstoreError):
    """A publish phase failed; later phases were not started."""

    def __init__(self, phase: PublishPhase, message: str) -> None:
        self.phase = phase
        super().__init__(message)


class CountMismatchError(PublishError):
    """The edit holds a different number of APKs than are being published."""

    def __init__(self, phase: PublishPhase, existing: int, requested: int) -> None:
        self.existing = existing
        self.requested = requested
        super().__init__(
            phase,
            f"Number of existing APKs on edit ({existing}) does not match "
            f"the number of APKs to upload ({requested})",
        )
