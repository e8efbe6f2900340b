"""Consolidated exception hierarchy for the OAuth credential pool.

Every error carries an ``error_type`` and an HTTP ``status_code`` so the API
layer can render it without a lookup table. Exceptions raised from upstream
failures are chained with ``from``.
"""

from enum import StrEnum
from typing import Any

from starlette import status


class ErrorType(StrEnum):
    """Error type codes for API responses."""

    INVALID_REQUEST = "invalid_request_error"
    UNSUPPORTED_PROVIDER = "unsupported_provider_error"
    PROVIDER_NOT_CONFIGURED = "provider_not_configured_error"
    INVALID_STATE = "invalid_state_error"
    EXCHANGE_FAILED = "exchange_failed_error"
    EXPIRED = "expired_error"
    DENIED = "denied_error"
    TRANSIENT_NETWORK = "transient_network_error"
    REFRESH_FAILED = "refresh_failed_error"
    NO_RUNNABLE_ACCOUNT = "no_runnable_account_error"
    STORAGE_NOT_READY = "storage_not_ready_error"
    NOT_FOUND = "not_found_error"
    INVALID_PRIORITY = "invalid_priority_error"
    INTERNAL_SERVER = "internal_server_error"


# ============================================================================
# Base Exception
# ============================================================================


class OAuthPoolError(Exception):
    """Base exception for all credential pool errors."""

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType = ErrorType.INTERNAL_SERVER,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details or {}


# ============================================================================
# Request & Configuration Errors
# ============================================================================


class ValidationError(OAuthPoolError):
    """Validation error (400)."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_type=ErrorType.INVALID_REQUEST,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class UnsupportedProviderError(OAuthPoolError):
    """Provider is unknown or does not offer the requested grant type."""

    def __init__(self, provider: str, grant: str | None = None) -> None:
        message = (
            f"Provider '{provider}' does not support the {grant} grant"
            if grant
            else f"Unknown provider '{provider}'"
        )
        super().__init__(
            message,
            error_type=ErrorType.UNSUPPORTED_PROVIDER,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"provider": provider, "grant": grant},
        )
        self.provider = provider
        self.grant = grant


class ProviderNotConfiguredError(OAuthPoolError):
    """Provider needs client credentials that are not configured."""

    def __init__(self, provider: str, missing: str) -> None:
        super().__init__(
            f"Provider '{provider}' is missing configuration: {missing}",
            error_type=ErrorType.PROVIDER_NOT_CONFIGURED,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"provider": provider, "missing": missing},
        )


class InvalidPriorityError(OAuthPoolError):
    """Priority must be a positive integer."""

    def __init__(self, priority: Any) -> None:
        super().__init__(
            f"Invalid priority {priority!r}: must be a positive integer",
            error_type=ErrorType.INVALID_PRIORITY,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )


# ============================================================================
# Lookup Errors
# ============================================================================


class NotFoundError(OAuthPoolError):
    """Not found error (404)."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(
            message,
            error_type=ErrorType.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class AccountNotFoundError(NotFoundError):
    """Account does not exist."""

    def __init__(self, account_id: str, provider: str | None = None) -> None:
        where = f" for provider '{provider}'" if provider else ""
        super().__init__(f"Account '{account_id}' not found{where}")
        self.account_id = account_id
        self.provider = provider


class AttemptNotFoundError(NotFoundError):
    """Authorization attempt is unknown, retired or cancelled."""

    def __init__(self, state_id: str) -> None:
        super().__init__("Authorization attempt not found or no longer active")
        self.state_id = state_id


# ============================================================================
# Authorization Flow Errors
# ============================================================================


class InvalidStateError(OAuthPoolError):
    """Redirect callback carried a state this process did not issue."""

    def __init__(self, message: str = "Invalid or expired state parameter") -> None:
        super().__init__(
            message,
            error_type=ErrorType.INVALID_STATE,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class ExchangeFailedError(OAuthPoolError):
    """Upstream rejected the authorization code or device code."""

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(
            message,
            error_type=ErrorType.EXCHANGE_FAILED,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"upstream_status": upstream_status},
        )
        self.upstream_status = upstream_status
        self.response_text = response_text


class AttemptExpiredError(OAuthPoolError):
    """Device code or redirect attempt passed its deadline."""

    def __init__(self, message: str = "Authorization attempt expired") -> None:
        super().__init__(
            message,
            error_type=ErrorType.EXPIRED,
            status_code=status.HTTP_410_GONE,
        )


class AuthorizationDeniedError(OAuthPoolError):
    """User declined the authorization request."""

    def __init__(self, message: str = "Authorization denied by user") -> None:
        super().__init__(
            message,
            error_type=ErrorType.DENIED,
            status_code=status.HTTP_403_FORBIDDEN,
        )


class TransientNetworkError(OAuthPoolError):
    """Upstream unreachable, timed out or answered 5xx. Safe to retry."""

    def __init__(self, message: str = "Upstream provider unreachable") -> None:
        super().__init__(
            message,
            error_type=ErrorType.TRANSIENT_NETWORK,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


# ============================================================================
# Credential Lifecycle Errors
# ============================================================================


class RefreshFailedError(OAuthPoolError):
    """Upstream rejected the refresh token, or the account cannot refresh."""

    def __init__(self, account_id: str, reason: str) -> None:
        super().__init__(
            f"Refresh failed for account '{account_id}': {reason}",
            error_type=ErrorType.REFRESH_FAILED,
            status_code=status.HTTP_409_CONFLICT,
            details={"account_id": account_id, "reason": reason},
        )
        self.account_id = account_id
        self.reason = reason


class NoRunnableAccountError(OAuthPoolError):
    """Selection found zero eligible accounts for the provider."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"No runnable account for provider '{provider}'",
            error_type=ErrorType.NO_RUNNABLE_ACCOUNT,
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            details={"provider": provider},
        )
        self.provider = provider


class StorageNotReadyError(OAuthPoolError):
    """Encryption key is not configured; writes are refused."""

    def __init__(
        self, message: str = "Credential storage is not ready: encryption secret missing"
    ) -> None:
        super().__init__(
            message,
            error_type=ErrorType.STORAGE_NOT_READY,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


__all__ = [
    "ErrorType",
    "OAuthPoolError",
    "ValidationError",
    "UnsupportedProviderError",
    "ProviderNotConfiguredError",
    "InvalidPriorityError",
    "NotFoundError",
    "AccountNotFoundError",
    "AttemptNotFoundError",
    "InvalidStateError",
    "ExchangeFailedError",
    "AttemptExpiredError",
    "AuthorizationDeniedError",
    "TransientNetworkError",
    "RefreshFailedError",
    "NoRunnableAccountError",
    "StorageNotReadyError",
]
