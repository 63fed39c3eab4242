"""
Typed errors raised by the connector framework.

Every error carries an ``error_code`` and a ``user_message`` so the UI
layer can render exactly one notification per failure.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional


class ConnectorError(RuntimeError):
    """Base class for connection-manager failures."""

    error_code = "CONNECTOR_ERROR"
    user_message = "Something went wrong with the connection."
    transient = False

    def __init__(self, message: str = "", *, provider: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.provider = provider
        self.notified = False

    def payload(self) -> Dict[str, Optional[str]]:
        return {
            "error_code": self.error_code,
            "user_message": self.user_message,
            "detail": str(self),
            "provider": self.provider,
        }


class UnauthorizedError(ConnectorError):
    """The provider rejected the credential. Terminal for that credential."""

    error_code = "UNAUTHORIZED"
    user_message = "The access token is invalid or expired. Please reconnect your account."


class RateLimitedError(ConnectorError):
    error_code = "RATE_LIMITED"
    user_message = "The provider's rate limit was reached. Try again later."
    transient = True

    def __init__(
        self,
        message: str = "",
        *,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
        reset_at: Optional[datetime] = None,
    ):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after
        self.reset_at = reset_at


class NetworkError(ConnectorError):
    error_code = "NETWORK"
    user_message = "Could not reach the service. Check your connection and try again."
    transient = True


class ServerRejectedError(ConnectorError):
    error_code = "SERVER_REJECTED"
    user_message = "The server rejected the request."

    def __init__(
        self,
        message: str = "",
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code


class BackendAuthError(ConnectorError):
    """The application backend rejected the session token."""

    error_code = "BACKEND_AUTH"
    user_message = "Your session has expired. Please sign in again."


class AuthTimeoutError(ConnectorError):
    error_code = "TIMED_OUT"
    user_message = "Authorization was not completed in time. Please try again."


class CSRFMismatchError(ConnectorError):
    error_code = "CSRF_MISMATCH"
    user_message = "Authorization response did not match the request. Please try again."


class AuthCancelledError(ConnectorError):
    error_code = "CANCELLED"
    user_message = "Authorization was cancelled."


class AuthorizationFailedError(ConnectorError):
    """The provider returned ``error=`` or refused the code exchange."""

    error_code = "AUTHORIZATION_FAILED"
    user_message = "The provider did not authorize the connection."


class ProviderNotConfiguredError(ConnectorError):
    error_code = "NOT_CONFIGURED"
    user_message = "This provider is not available."


class UnsupportedOperationError(ConnectorError):
    error_code = "UNSUPPORTED"
    user_message = "This provider does not support that operation."
