"""
Error taxonomy for contact sync.

Per-platform errors (AuthError, RateLimitExhausted, PlatformAPIError) abort
only that platform's sync. Per-item errors (ValidationRejection,
PersistenceError) are collected into result error lists.
"""

from typing import Any


class ContactSyncError(Exception):
    """Base exception for the contact sync feature."""

    def __init__(self, message: str, *, platform: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.platform = platform
        self.recoverable = recoverable


class AuthError(ContactSyncError):
    """Platform credentials are missing, invalid or expired."""


class RateLimitExhausted(ContactSyncError):
    """An endpoint kept answering "too many requests" past the retry budget."""

    def __init__(self, message: str, *, endpoint: str, retries: int, platform: str | None = None):
        super().__init__(message, platform=platform, recoverable=True)
        self.endpoint = endpoint
        self.retries = retries


class PlatformAPIError(ContactSyncError):
    """Non-auth, non-rate-limit failure returned by a platform API."""

    def __init__(
        self,
        message: str,
        *,
        platform: str | None = None,
        status_code: int | None = None,
        error_code: str | None = None,
        response_data: dict[str, Any] | None = None,
    ):
        super().__init__(message, platform=platform, recoverable=bool(status_code and status_code >= 500))
        self.status_code = status_code
        self.error_code = error_code
        self.response_data = response_data or {}


class ValidationRejection(ContactSyncError):
    """Identity was classified as a bot or automated account."""

    def __init__(self, message: str, *, reasons: list[str], confidence: str, platform: str | None = None):
        super().__init__(message, platform=platform)
        self.reasons = reasons
        self.confidence = confidence


class PersistenceError(ContactSyncError):
    """A store write or read failed."""

    def __init__(self, message: str, *, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message, recoverable=recoverable)
        self.operation = operation


class IdentityConflictError(PersistenceError):
    """(platform, platform_id) is already linked to a different contact."""

    def __init__(self, platform: str, platform_id: str, existing_contact_id: str | None = None):
        super().__init__(
            f"{platform} identity {platform_id} is already linked to another contact",
            operation="link_identity",
            recoverable=False,
        )
        self.platform = platform
        self.platform_id = platform_id
        self.existing_contact_id = existing_contact_id


class ConsolidationError(ContactSyncError):
    """Merging one group of contacts failed; the group is left unmerged."""

    def __init__(self, message: str, *, contact_ids: list[str]):
        super().__init__(message)
        self.contact_ids = contact_ids


class SyncInProgressError(ContactSyncError):
    """Another run already holds the in-progress flag for this user and platform."""
