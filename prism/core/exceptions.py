"""
Custom exceptions for the Prism analysis engine.

Provides a hierarchy of exceptions for better error handling and debugging.
Only ``RequestRejectedError`` subclasses ever reach a caller of the engine;
everything else is converted into lower confidence on the result.
"""

from typing import Any, Dict, Optional


class PrismError(Exception):
    """Base exception for all Prism errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(PrismError):
    """Raised when there are configuration issues."""

    pass


class RequestRejectedError(PrismError):
    """A request the engine refuses to run. Carries a machine-readable code."""

    code = "rejected"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class SubjectValidationError(RequestRejectedError):
    """The subject identifier is malformed for its domain."""

    code = "invalid_subject"


class RequestValidationError(RequestRejectedError):
    """Depth, timeframe or capability list is malformed."""

    code = "invalid_request"


class NoProvidersError(RequestRejectedError):
    """No provider is registered for the domain for any requested capability."""

    code = "no_providers"


class ProviderCallError(PrismError):
    """Base class for failures inside a provider adapter."""

    def __init__(self, provider: str, message: str, **kwargs):
        super().__init__(f"{provider}: {message}", **kwargs)
        self.provider = provider


class ProviderUnavailableError(ProviderCallError):
    """Provider cannot be called (missing credentials, rate limited, breaker open)."""

    pass


class ProviderRateLimitedError(ProviderUnavailableError):
    """The provider's local quota has no token left for another attempt."""

    pass


class ProviderNetworkError(ProviderCallError):
    """Connection to the provider failed before a response arrived."""

    pass


class ProviderTimeoutError(ProviderCallError):
    """Provider call exceeded its timeout."""

    pass


class ProviderResponseError(ProviderCallError):
    """Provider returned an error status or an unparseable body."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(provider, message, **kwargs)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is not None and (self.status_code == 429 or self.status_code >= 500)


class CacheBackendError(PrismError):
    """Persistent cache tier failed; treated as a cache miss."""

    pass
