"""
Provider adapter interface and HTTP base class.

Adapters never raise across ``fetch``: every failure comes back as a typed
``ProviderError`` value. Each adapter parses its wire response into its own
tagged pydantic model and converts that into canonical metric names.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, Optional, Union

import httpx
import structlog
from pydantic import ValidationError

from prism.core.config import ProviderConfig
from prism.core.exceptions import (
    ProviderCallError,
    ProviderNetworkError,
    ProviderRateLimitedError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from prism.core.models import (
    AnalysisRequest,
    MetricValue,
    ProviderDescriptor,
    ProviderError,
    ProviderErrorKind,
    ProviderPayload,
)
from prism.utils.reliability import retrying

logger = structlog.get_logger(__name__)

FetchOutcome = Union[ProviderPayload, ProviderError]


def error_from_exception(exc: BaseException) -> ProviderError:
    """Map an exception raised during a provider call to a typed error value."""
    if isinstance(exc, (asyncio.TimeoutError, ProviderTimeoutError)):
        return ProviderError(kind=ProviderErrorKind.TIMEOUT, message=str(exc) or "timed out")
    if isinstance(exc, asyncio.CancelledError):
        return ProviderError(kind=ProviderErrorKind.CANCELLED, message="cancelled")
    if isinstance(exc, ProviderUnavailableError):
        return ProviderError(kind=ProviderErrorKind.UNAVAILABLE, message=str(exc))
    if isinstance(exc, ProviderNetworkError):
        return ProviderError(kind=ProviderErrorKind.NETWORK, message=str(exc))
    if isinstance(exc, ProviderResponseError):
        return ProviderError(
            kind=ProviderErrorKind.BAD_RESPONSE, message=str(exc), status_code=exc.status_code
        )
    return ProviderError(kind=ProviderErrorKind.BAD_RESPONSE, message=f"{type(exc).__name__}: {exc}")


class ProviderAdapter(ABC):
    """Common interface every data provider implements."""

    def __init__(self, descriptor: ProviderDescriptor):
        self.descriptor = descriptor
        self._acquire_attempt: Callable[[], bool] = lambda: True

    @property
    def name(self) -> str:
        return self.descriptor.name

    def capabilities(self) -> FrozenSet[str]:
        return self.descriptor.capabilities

    def is_available(self) -> bool:
        return self.descriptor.has_credentials

    def bind_rate_limit(self, acquire: Callable[[], bool]):
        """Install the quota check consulted before each retry attempt."""
        self._acquire_attempt = acquire

    async def fetch(self, request: AnalysisRequest, capability: str) -> FetchOutcome:
        """Fetch one capability for a request, returning a payload or a typed error."""
        if capability not in self.descriptor.capabilities:
            return ProviderError(
                kind=ProviderErrorKind.UNAVAILABLE,
                message=f"{self.name} does not provide '{capability}'",
            )
        if not self.is_available():
            return ProviderError(kind=ProviderErrorKind.UNAVAILABLE, message="missing credentials")

        try:
            metrics = await self._fetch(request, capability)
        except ProviderCallError as e:
            logger.debug("Provider call failed", provider=self.name, capability=capability, error=str(e))
            return error_from_exception(e)
        except ValidationError as e:
            logger.debug("Provider response did not parse", provider=self.name, error=str(e))
            return ProviderError(
                kind=ProviderErrorKind.BAD_RESPONSE,
                message=f"unexpected response shape ({e.error_count()} errors)",
            )

        return ProviderPayload(
            provider=self.name,
            capability=capability,
            source=f"{self.name}.{capability}",
            metrics=metrics,
        )

    @abstractmethod
    async def _fetch(self, request: AnalysisRequest, capability: str) -> Dict[str, MetricValue]:
        """Return canonical metrics for ``capability`` or raise ``ProviderCallError``."""

    async def aclose(self):
        pass


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ProviderResponseError):
        return exc.retryable
    return isinstance(exc, (ProviderTimeoutError, ProviderNetworkError))


class HttpProvider(ProviderAdapter):
    """
    Adapter base for JSON/HTML over HTTP.

    Network errors, timeouts, HTTP 429 and 5xx responses are retried with
    exponential backoff before surfacing as a typed error. The first attempt
    is paid for by the fanout; every retry takes its own rate limit token.
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        backoff_initial: float = 0.5,
    ):
        super().__init__(descriptor)
        self.config = config
        self.backoff_initial = backoff_initial
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=config.http_timeout,
            headers={"User-Agent": "prism-analysis/1.0"},
            follow_redirects=True,
        )

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(self.name, f"request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderNetworkError(self.name, f"network error: {e}") from e

        if response.status_code >= 400:
            raise ProviderResponseError(
                self.name,
                f"HTTP {response.status_code} from {response.request.url.host}",
                status_code=response.status_code,
            )
        return response

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request with retries; raises ``ProviderCallError`` on final failure."""
        response = None
        async for attempt in retrying(
            max_attempts=self.config.retry_attempts,
            backoff_initial=self.backoff_initial,
            retry_on=_is_retryable,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1 and not self._acquire_attempt():
                    raise ProviderRateLimitedError(self.name, "rate limited before retry")
                response = await self._send(method, url, **kwargs)
        return response

    async def get_json(self, url: str, **kwargs) -> Any:
        response = await self.request("GET", url, **kwargs)
        return self._decode(response)

    async def post_json(self, url: str, **kwargs) -> Any:
        response = await self.request("POST", url, **kwargs)
        return self._decode(response)

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderResponseError(
                self.name, "response body is not JSON", status_code=response.status_code
            ) from e

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
