"""Exceptions for LLM Provider Kit."""

from typing import Any


class LLMError(Exception):
    """Base exception for LLM API errors."""
    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None,
                 attempts_made: int | None = None):
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.attempts_made = attempts_made
        super().__init__(message)

    @property
    def kind(self) -> str:
        """Short machine-readable error kind."""
        return "llm_error"

    def __str__(self) -> str:
        parts = [self.message]
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.attempts_made is not None:
            parts.append(f"attempts={self.attempts_made}")
        if len(parts) == 1:
            return self.message
        return f"{parts[0]} ({', '.join(parts[1:])})"


class AuthError(LLMError):
    """Raised when no credential is configured or every credential was rejected."""

    @property
    def kind(self) -> str:
        return "authentication_error"


class NoCredentialAvailableError(AuthError):
    """Raised by a credential pool when every credential is in backoff."""

    @property
    def kind(self) -> str:
        return "no_credential_available"


class RateLimitExceeded(LLMError):
    """Raised when the upstream keeps answering 429 Too Many Requests."""
    def __init__(self, message: str, provider: str | None = None, retry_after: float | None = None,
                 status_code: int | None = 429, attempts_made: int | None = None):
        self.retry_after = retry_after
        super().__init__(message, provider, status_code, attempts_made)

    @property
    def kind(self) -> str:
        return "rate_limit_exceeded"


class NetworkError(LLMError):
    """Raised on connect, read or timeout failures."""

    @property
    def kind(self) -> str:
        return "network_error"


class UpstreamError(LLMError):
    """Raised when the upstream answers with a 5xx status."""
    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None,
                 error_data: dict[str, Any] | None = None, attempts_made: int | None = None):
        self.error_data = error_data
        super().__init__(message, provider, status_code, attempts_made)

    @property
    def kind(self) -> str:
        return "upstream_error"


class InvalidRequest(LLMError):
    """Raised on upstream 4xx validation errors or local pre-flight failures."""
    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None,
                 error_data: dict[str, Any] | None = None, attempts_made: int | None = None):
        self.error_data = error_data
        super().__init__(message, provider, status_code, attempts_made)

    @property
    def kind(self) -> str:
        return "invalid_request"


class MalformedResponse(LLMError):
    """Raised when a response cannot be decoded into the normalized model."""

    @property
    def kind(self) -> str:
        return "malformed_response"


class Cancelled(LLMError):
    """Raised when the caller aborted the operation."""

    @property
    def kind(self) -> str:
        return "cancelled"


class RefreshFailed(LLMError):
    """Raised when an OAuth token refresh round-trip fails."""
    def __init__(self, message: str, provider: str | None = None, credential_id: str | None = None,
                 status_code: int | None = None, attempts_made: int | None = None):
        self.credential_id = credential_id
        super().__init__(message, provider, status_code, attempts_made)

    @property
    def kind(self) -> str:
        return "refresh_failed"


class ConfigurationError(LLMError):
    """Raised when there's a configuration error."""
    def __init__(self, message: str):
        super().__init__(f"Configuration error: {message}")

    @property
    def kind(self) -> str:
        return "configuration_error"
