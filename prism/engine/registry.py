"""
Provider registry.

Holds every configured adapter, with or without credentials, and answers two
questions: which providers exist for a domain/capability (hard eligibility)
and which of those can be called right now (soft eligibility: credentials,
remaining quota, closed circuit).
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Set

import structlog

from prism.core.models import ProviderDescriptor
from prism.providers.base import ProviderAdapter
from prism.utils.reliability import CircuitBreaker, SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)

SKIP_MISSING_CREDENTIALS = "missing_credentials"
SKIP_RATE_LIMITED = "rate_limited"
SKIP_CIRCUIT_OPEN = "circuit_open"


@dataclass
class ProviderSelection:
    """Providers chosen for one request, plus the ones skipped and why."""

    selected: List[ProviderAdapter] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    @property
    def names(self) -> List[str]:
        return [adapter.name for adapter in self.selected]


class ProviderRegistry:
    """Adapters by name, with their rate limiters and circuit breakers."""

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        breaker_failure_threshold: int = 5,
        breaker_recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_limiter = rate_limiter
        self._breaker_failure_threshold = breaker_failure_threshold
        self._breaker_recovery_timeout = breaker_recovery_timeout
        self._clock = clock
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}

    def register(self, adapter: ProviderAdapter):
        """Add an adapter and configure its quota and breaker."""
        name = adapter.name
        if name in self._adapters:
            raise ValueError(f"Provider '{name}' is already registered")

        descriptor = adapter.descriptor
        self._adapters[name] = adapter
        self.rate_limiter.configure(name, descriptor.quota, descriptor.window_seconds)
        adapter.bind_rate_limit(lambda: self.rate_limiter.try_acquire(name))
        self._breakers[name] = CircuitBreaker(
            name,
            failure_threshold=self._breaker_failure_threshold,
            recovery_timeout=self._breaker_recovery_timeout,
            clock=self._clock,
        )
        logger.debug(
            "Provider registered",
            provider=name,
            capabilities=sorted(descriptor.capabilities),
            has_credentials=descriptor.has_credentials,
        )

    def get(self, name: str) -> ProviderAdapter:
        return self._adapters[name]

    def breaker(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    @property
    def adapters(self) -> List[ProviderAdapter]:
        return [self._adapters[name] for name in sorted(self._adapters)]

    @property
    def descriptors(self) -> Mapping[str, ProviderDescriptor]:
        return {name: adapter.descriptor for name, adapter in self._adapters.items()}

    def providers_for(self, domain: str, capability: str) -> List[ProviderAdapter]:
        """
        Registered providers for a domain/capability, ignoring availability.

        Sorted by reliability rank for the capability (highest first), then name.
        """
        matches = [
            adapter
            for adapter in self._adapters.values()
            if adapter.descriptor.supports_domain(domain) and capability in adapter.capabilities()
        ]
        return sorted(matches, key=lambda a: (-a.descriptor.rank_for(capability), a.name))

    def unsupported_capabilities(self, domain: str, capabilities: Iterable[str]) -> Set[str]:
        """Requested capabilities that no registered provider serves for ``domain``."""
        return {c for c in capabilities if not self.providers_for(domain, c)}

    def skip_reason(self, adapter: ProviderAdapter) -> str:
        """Why a provider cannot be called right now, or '' when it can."""
        if not adapter.is_available():
            return SKIP_MISSING_CREDENTIALS
        if self._breakers[adapter.name].is_open:
            return SKIP_CIRCUIT_OPEN
        if not self.rate_limiter.has_capacity(adapter.name):
            return SKIP_RATE_LIMITED
        return ""

    def available_providers(self, domain: str, capabilities: Iterable[str]) -> ProviderSelection:
        """
        Providers whose capabilities intersect the request, whose domain
        matches, and which can be called right now.

        Exhausted quota, an open breaker and missing credentials are soft
        exclusions: the provider is listed in ``skipped`` with a reason.
        """
        capabilities = set(capabilities)
        selection = ProviderSelection()
        for adapter in self.adapters:
            if not adapter.descriptor.supports_domain(domain):
                continue
            if not adapter.descriptor.serves(capabilities):
                continue
            reason = self.skip_reason(adapter)
            if reason:
                selection.skipped[adapter.name] = reason
            else:
                selection.selected.append(adapter)

        if selection.skipped:
            logger.debug("Providers skipped", domain=domain, skipped=selection.skipped)
        return selection

    def status(self, domain: str = "") -> List[Dict[str, Any]]:
        """One row per provider for display."""
        rows = []
        limits = self.rate_limiter.status()
        for adapter in self.adapters:
            descriptor = adapter.descriptor
            if domain and not descriptor.supports_domain(domain):
                continue
            limit = limits.get(adapter.name, {})
            rows.append(
                {
                    "name": adapter.name,
                    "capabilities": sorted(descriptor.capabilities),
                    "domains": sorted(descriptor.domains),
                    "has_credentials": descriptor.has_credentials,
                    "quota": f"{limit.get('used', 0)}/{descriptor.quota} per {descriptor.window_seconds:g}s",
                    "breaker": self._breakers[adapter.name].state.value,
                    "status": self.skip_reason(adapter) or "ready",
                }
            )
        return rows

    async def aclose(self):
        for adapter in self._adapters.values():
            await adapter.aclose()
