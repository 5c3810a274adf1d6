"""Domain exception hierarchy for the Spatialshot session core."""

from __future__ import annotations


class SpatialshotError(RuntimeError):
    """Base class for all domain-level errors."""


class HostCommandError(SpatialshotError):
    """Raised when a host command fails or the host cannot be reached."""

    def __init__(self, command: str, message: str) -> None:
        super().__init__(message)
        self.command = command


class TransientProviderError(SpatialshotError):
    """Raised when the chat provider is rate limited or temporarily unavailable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChatProviderError(SpatialshotError):
    """Raised when the chat provider fails for non-transient reasons."""


class CredentialMissingError(SpatialshotError):
    """Raised when an operation needs a provider secret that is not stored."""


class PersistenceError(SpatialshotError):
    """Raised when the host fails to save or delete a secret."""


class UploadError(SpatialshotError):
    """Raised when the image host rejects or fails an upload."""


class CaptureInProgressError(SpatialshotError):
    """Raised when a capture ritual is already running for another provider."""


class ConfigValidationError(SpatialshotError):
    """Raised when configuration cannot be validated safely."""
