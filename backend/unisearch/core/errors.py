"""Exception hierarchy shared by the services and the API layer."""

from __future__ import annotations


class UnisearchError(Exception):
    """Base exception for unisearch errors."""

    pass


# ========== Authentication ==========


class AuthError(UnisearchError):
    """Raised when the OAuth session cannot be established or used."""

    pass


class AuthTimeoutError(AuthError):
    """Raised when the browser never reaches the loopback callback."""

    pass


class AuthorizationDeniedError(AuthError):
    """Raised on a provider error, a state mismatch or a missing code."""

    pass


class AuthInProgressError(AuthError):
    """Raised when a second sign-in starts while one is running."""

    pass


class TokenExchangeError(AuthError):
    """Raised when the token endpoint rejects a grant.

    ``error`` carries the OAuth error code (``invalid_grant`` etc.) when the
    endpoint returned one.
    """

    def __init__(self, message: str, error: str | None = None):
        super().__init__(message)
        self.error = error

    @property
    def is_revoked(self) -> bool:
        return self.error == "invalid_grant"


class NotAuthenticatedError(AuthError):
    """Raised when an operation needs a Drive credential and none is usable."""

    pass


# ========== Drive API ==========


class DriveApiError(UnisearchError):
    """Raised when a Drive API call fails.

    ``status`` is the HTTP status, or None for transport failures.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    @property
    def is_transient(self) -> bool:
        return self.status is None or self.status == 429 or 500 <= self.status < 600


class DriveAuthError(DriveApiError):
    """Raised on HTTP 401 from the Drive API."""

    pass


class DriveRateLimitError(DriveApiError):
    """Raised on HTTP 429 from the Drive API."""

    def __init__(self, message: str = "Drive API rate limit exceeded", retry_after: float | None = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class DriveResponseError(DriveApiError):
    """Raised when a Drive response body cannot be parsed."""

    @property
    def is_transient(self) -> bool:
        return False


# ========== Storage / search ==========


class CredentialStoreError(UnisearchError):
    """Raised when the credential slot cannot be read or written."""

    pass


class SearchError(UnisearchError):
    """Raised when a search request is rejected."""

    pass
