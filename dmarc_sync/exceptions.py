"""Unified exception hierarchy for dmarc-sync."""


class DmarcSyncError(Exception):
    """Base exception for all sync pipeline errors."""


class ConfigNotFoundError(DmarcSyncError):
    """No sync configuration exists for the given id/user."""


# Authentication
class AuthenticationError(DmarcSyncError):
    """Credentials are missing, expired or unusable.

    ``reason`` is one of ``"expired"``, ``"corrupted"`` or ``"required"`` and
    selects the message shown to the account owner.
    """

    def __init__(self, message: str, reason: str = "required") -> None:
        super().__init__(message)
        self.reason = reason


class UnauthorizedError(AuthenticationError):
    """Provider rejected the access token (HTTP 401)."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, reason="expired")


class CredentialsUnavailableError(AuthenticationError):
    """No usable credentials could be produced for a config."""


class TokenRefreshError(AuthenticationError):
    """Provider token endpoint refused the refresh request."""


class TokenDecryptionError(AuthenticationError):
    """Stored token ciphertext could not be decrypted."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason="corrupted")


# Providers
class ProviderError(DmarcSyncError):
    """A mailbox provider call failed."""


class RateLimitError(ProviderError):
    """Provider kept answering 429 after the allowed retries."""


class UnsupportedProviderError(ProviderError):
    """No adapter is registered for the provider tag."""


# Attachments and reports
class AttachmentDecodeError(DmarcSyncError):
    """Attachment bytes could not be turned into XML payloads."""


class UnsupportedFormatError(AttachmentDecodeError):
    """Attachment filename has an extension the codec does not handle."""


class ReportParseError(DmarcSyncError):
    """XML payload is not a usable DMARC aggregate report."""


class DuplicateReportError(DmarcSyncError):
    """Report already stored for this user."""
