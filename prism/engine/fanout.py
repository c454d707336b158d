"""
Bounded-concurrency dispatch of provider calls.

One call per (provider, capability) pair. Every call settles into a
``ProviderCallResult``; a failing call never aborts its siblings. A request
deadline or an explicit cancel stops the outstanding calls but keeps the
results that already arrived.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from prism.core.config import FanoutConfig
from prism.core.models import (
    AnalysisRequest,
    ProviderCallResult,
    ProviderError,
    ProviderErrorKind,
    ProviderPayload,
)
from prism.engine.registry import ProviderRegistry
from prism.providers.base import ProviderAdapter, error_from_exception
from prism.utils.reliability import elapsed_ms

logger = structlog.get_logger(__name__)

CallPlan = Sequence[Tuple[ProviderAdapter, str]]

# Failures that count against a provider's circuit breaker
_BREAKER_FAILURES = (
    ProviderErrorKind.TIMEOUT,
    ProviderErrorKind.NETWORK,
    ProviderErrorKind.BAD_RESPONSE,
)


@dataclass
class FanoutReport:
    """Settled results of one fanout."""

    results: List[ProviderCallResult] = field(default_factory=list)
    interrupted: bool = False

    @property
    def succeeded(self) -> List[ProviderCallResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[ProviderCallResult]:
        return [r for r in self.results if not r.success]


def build_plan(adapters: Sequence[ProviderAdapter], capabilities) -> List[Tuple[ProviderAdapter, str]]:
    """Every (provider, capability) pair to call, in a stable order."""
    return [
        (adapter, capability)
        for adapter in sorted(adapters, key=lambda a: a.name)
        for capability in sorted(adapter.descriptor.serves(capabilities))
    ]


class FanoutExecutor:
    """
    Dispatches provider calls under a per-request cap and a global cap shared
    by every request on the same event loop.
    """

    def __init__(
        self,
        config: FanoutConfig,
        registry: ProviderRegistry,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.registry = registry
        self._clock = clock
        self._global: Optional[asyncio.Semaphore] = None
        self._global_loop: Optional[asyncio.AbstractEventLoop] = None
        self.calls_dispatched = 0

    def _global_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._global is None or self._global_loop is not loop:
            self._global = asyncio.Semaphore(self.config.global_concurrency)
            self._global_loop = loop
        return self._global

    async def execute(
        self,
        request: AnalysisRequest,
        plan: CallPlan,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> FanoutReport:
        """
        Run every planned call and settle all of them.

        Args:
            request: The validated request
            plan: (adapter, capability) pairs to call
            cancel_event: Setting it stops outstanding calls
            deadline: Seconds allowed for the whole fanout (None: no deadline)

        Returns:
            FanoutReport with one result per planned call; calls stopped by the
            deadline or cancel are recorded as CANCELLED
        """
        if not plan:
            return FanoutReport()

        loop = asyncio.get_running_loop()
        local = asyncio.Semaphore(self.config.max_concurrency)
        global_sem = self._global_semaphore()
        tasks: Dict[asyncio.Task, Tuple[str, str]] = {
            loop.create_task(self._call(adapter, capability, request, local, global_sem)): (
                adapter.name,
                capability,
            )
            for adapter, capability in plan
        }

        cancel_waiter = loop.create_task(cancel_event.wait()) if cancel_event is not None else None
        stop_at = loop.time() + deadline if deadline else None
        pending = set(tasks)
        interrupted = False

        try:
            while pending:
                remaining = None if stop_at is None else stop_at - loop.time()
                if remaining is not None and remaining <= 0:
                    interrupted = True
                    break
                waiting = pending | {cancel_waiter} if cancel_waiter else pending
                done, _ = await asyncio.wait(
                    waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if cancel_waiter is not None and cancel_waiter in done:
                    interrupted = True
                    break
                pending -= done
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if interrupted:
            logger.warning(
                "Fanout interrupted",
                outstanding=sum(1 for t in tasks if t.cancelled()),
                completed=sum(1 for t in tasks if not t.cancelled()),
            )

        results = []
        for task, (provider, capability) in tasks.items():
            if task.cancelled():
                results.append(
                    ProviderCallResult.failed(
                        provider,
                        capability,
                        ProviderError(kind=ProviderErrorKind.CANCELLED, message="request interrupted"),
                    )
                )
            else:
                results.append(task.result())

        return FanoutReport(results=results, interrupted=interrupted)

    async def _call(
        self,
        adapter: ProviderAdapter,
        capability: str,
        request: AnalysisRequest,
        local: asyncio.Semaphore,
        global_sem: asyncio.Semaphore,
    ) -> ProviderCallResult:
        async with local, global_sem:
            breaker = self.registry.breaker(adapter.name)
            if not breaker.allow_request():
                return ProviderCallResult.failed(
                    adapter.name,
                    capability,
                    ProviderError(kind=ProviderErrorKind.UNAVAILABLE, message="circuit open"),
                )
            if not self.registry.rate_limiter.try_acquire(adapter.name):
                return ProviderCallResult.failed(
                    adapter.name,
                    capability,
                    ProviderError(kind=ProviderErrorKind.UNAVAILABLE, message="rate limited"),
                )

            self.calls_dispatched += 1
            started = self._clock()
            try:
                outcome = await asyncio.wait_for(
                    adapter.fetch(request, capability), timeout=self.config.call_timeout
                )
            except Exception as e:
                outcome = error_from_exception(e)
                if outcome.kind == ProviderErrorKind.BAD_RESPONSE:
                    logger.warning(
                        "Provider adapter raised",
                        provider=adapter.name,
                        capability=capability,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
            latency = elapsed_ms(started, self._clock)

        if isinstance(outcome, ProviderPayload):
            breaker.record_success()
            if outcome.provider != adapter.name or outcome.capability != capability:
                outcome = outcome.model_copy(update={"provider": adapter.name, "capability": capability})
            return ProviderCallResult.ok(outcome, latency_ms=latency)

        if not isinstance(outcome, ProviderError):
            outcome = ProviderError(
                kind=ProviderErrorKind.BAD_RESPONSE,
                message=f"adapter returned {type(outcome).__name__}",
            )
        if outcome.kind in _BREAKER_FAILURES:
            breaker.record_failure()

        logger.warning(
            "Provider call failed",
            provider=adapter.name,
            capability=capability,
            kind=outcome.kind.value,
            error=outcome.message,
            latency_ms=latency,
        )
        return ProviderCallResult.failed(adapter.name, capability, outcome, latency_ms=latency)
