"""
Analysis engine.

Ties the components together: validate -> cache (with collapsing) -> select
providers -> fanout -> consolidate -> score -> recommend -> write-through.
One engine is built at process start and passed to whatever needs it.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Iterable, Optional, Union

import structlog

from prism.core.config import Settings
from prism.core.exceptions import NoProvidersError, RequestRejectedError
from prism.core.models import AnalysisRequest, AnalysisResult, ResultMetadata
from prism.core.validation import validate_request
from prism.engine.cache import CacheManager, make_cache_key
from prism.engine.consolidator import ResponseConsolidator
from prism.engine.fanout import FanoutExecutor, build_plan
from prism.engine.overview import build_overview
from prism.engine.persistence import InMemoryPersistentStore, PersistentStore, SQLitePersistentStore
from prism.engine.recommendations import RecommendationGenerator
from prism.engine.registry import ProviderRegistry
from prism.engine.scoring import ScoreEngine
from prism.engine.telemetry import (
    ANALYSIS_COMPLETED,
    ANALYSIS_REJECTED,
    PROVIDER_CALL_FAILED,
    Telemetry,
    TelemetrySink,
)
from prism.providers.base import ProviderAdapter
from prism.utils.reliability import SlidingWindowRateLimiter, elapsed_ms

logger = structlog.get_logger(__name__)


class AnalysisEngine:
    """
    Multi-provider analysis orchestration.

    Usage:
        async with create_engine(settings) as engine:
            result = await engine.analyze({"subject": ..., "domain": ..., "capabilities": [...]})
    """

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        cache: CacheManager,
        fanout: FanoutExecutor,
        consolidator: ResponseConsolidator,
        scorer: ScoreEngine,
        recommender: RecommendationGenerator,
        telemetry: Optional[Telemetry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.registry = registry
        self.cache = cache
        self.fanout = fanout
        self.consolidator = consolidator
        self.scorer = scorer
        self.recommender = recommender
        self.telemetry = telemetry or Telemetry()
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None

    # Lifecycle

    async def start(self):
        interval = self.settings.cache.sweep_interval
        if interval and self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self.cache.run_sweeper(interval))
            logger.debug("Cache sweeper started", interval=interval)

    async def close(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.telemetry.drain()
        await self.registry.aclose()
        close_store = getattr(self.cache.store, "close", None)
        if close_store is not None:
            close_store()

    async def __aenter__(self) -> "AnalysisEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # Requests

    def prepare(self, request: Union[AnalysisRequest, Dict[str, Any]]) -> AnalysisRequest:
        """
        Validate a request and check that its domain has providers.

        Raises:
            RequestRejectedError: invalid request, invalid subject, or no
                provider registered for any requested capability
        """
        if not isinstance(request, AnalysisRequest):
            request = AnalysisRequest.from_payload(request)
        request = validate_request(request)

        unsupported = self.registry.unsupported_capabilities(request.domain, request.capabilities)
        if unsupported == set(request.capabilities):
            raise NoProvidersError(
                f"No providers registered for domain '{request.domain}'",
                details={"domain": request.domain, "capabilities": sorted(request.capabilities)},
            )
        return request

    async def analyze(
        self,
        request: Union[AnalysisRequest, Dict[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AnalysisResult:
        """
        Run (or serve from cache) one analysis.

        Args:
            request: An AnalysisRequest or a payload dict with the same fields
            cancel_event: Setting it stops outstanding provider calls; the
                result is built from whatever already arrived and not cached

        Returns:
            AnalysisResult with per-delivery metadata filled in

        Raises:
            RequestRejectedError: the only error a caller ever sees
        """
        started = self._clock()
        try:
            request = self.prepare(request)
        except RequestRejectedError as e:
            logger.info("Analysis rejected", code=e.code, reason=e.message)
            self.telemetry.emit(ANALYSIS_REJECTED, code=e.code, reason=e.message)
            raise

        key = make_cache_key(request)
        with structlog.contextvars.bound_contextvars(
            cache_key=key, subject=request.subject, domain=request.domain
        ):
            lookup = await self.cache.get_or_compute(key, lambda: self._compute(request, key, cancel_event))

            result = AnalysisResult.model_validate(lookup.payload)
            processing_ms = elapsed_ms(started, self._clock)
            result.metadata = result.metadata.model_copy(
                update={
                    "cache_hit": lookup.hit,
                    "cache_tier": lookup.tier,
                    "collapsed": lookup.collapsed,
                    "processing_time_ms": processing_ms,
                }
            )

            logger.info(
                "Analysis completed",
                cache_hit=lookup.hit,
                cache_tier=lookup.tier,
                collapsed=lookup.collapsed,
                overall=result.score.overall,
                providers_used=result.metadata.providers_used,
                processing_time_ms=processing_ms,
            )
            self.telemetry.emit(
                ANALYSIS_COMPLETED,
                domain=request.domain,
                capabilities=list(request.sorted_capabilities),
                cache_hit=lookup.hit,
                collapsed=lookup.collapsed,
                partial=result.metadata.partial,
                overall=result.score.overall,
                processing_time_ms=processing_ms,
            )
            return result

    async def _compute(
        self,
        request: AnalysisRequest,
        key: str,
        cancel_event: Optional[asyncio.Event],
    ):
        unsupported = self.registry.unsupported_capabilities(request.domain, request.capabilities)
        selection = self.registry.available_providers(request.domain, request.capabilities)
        plan = build_plan(selection.selected, request.capabilities)

        logger.debug("Dispatching providers", providers=selection.names, calls=len(plan))
        report = await self.fanout.execute(
            request,
            plan,
            cancel_event=cancel_event,
            deadline=self.settings.fanout.request_deadline,
        )

        for failure in report.failed:
            self.telemetry.emit(
                PROVIDER_CALL_FAILED,
                provider=failure.provider,
                capability=failure.capability,
                kind=failure.error.kind.value if failure.error else "unknown",
            )

        consolidated = self.consolidator.consolidate(
            request, report.results, self.registry.descriptors, unsupported
        )
        score = self.scorer.score(consolidated)
        recommendations = self.recommender.generate(consolidated)
        overview = build_overview(request, consolidated, score, recommendations)

        providers_used = sorted({r.provider for r in report.succeeded})
        metadata = ResultMetadata(
            cache_key=key,
            providers_used=providers_used,
            providers_skipped=dict(sorted(selection.skipped.items())),
            provider_errors={
                f"{r.provider}/{r.capability}": r.error.kind.value
                for r in sorted(report.failed, key=lambda r: (r.provider, r.capability))
                if r.error
            },
            partial=report.interrupted,
        )
        result = AnalysisResult(
            overview=overview,
            sections=consolidated.sections,
            score=score,
            recommendations=recommendations,
            metadata=metadata,
        )

        # Interrupted results and results with no provider data are not cached
        ttl = None
        if not report.interrupted and providers_used:
            ttl = self.settings.cache.ttl_for(request.capabilities)
        return result.model_dump(mode="json"), ttl

    def cache_stats(self) -> Dict[str, Any]:
        stats = self.cache.stats.to_dict()
        stats["l1_size"] = self.cache.l1_size
        stats["inflight"] = self.cache.inflight
        stats["fanout_calls"] = self.fanout.calls_dispatched
        return stats


def create_engine(
    settings: Settings,
    adapters: Optional[Iterable[ProviderAdapter]] = None,
    store: Optional[PersistentStore] = None,
    telemetry_sink: Optional[TelemetrySink] = None,
    cache_clock: Callable[[], float] = time.time,
    limiter_clock: Callable[[], float] = time.monotonic,
) -> AnalysisEngine:
    """
    Build an engine from settings.

    Args:
        settings: Application settings
        adapters: Provider adapters; defaults to the built-in providers
        store: L2 store; defaults to SQLite when CACHE_DB_PATH is set,
            otherwise in-memory
        telemetry_sink: Telemetry collaborator; defaults to structured logging
        cache_clock: Wall clock for cache expiry
        limiter_clock: Monotonic clock for rate limiting and breakers
    """
    if adapters is None:
        from prism.providers import build_default_adapters

        adapters = build_default_adapters(settings.providers)

    if store is None:
        if settings.cache.db_path:
            store = SQLitePersistentStore.from_path(settings.cache.db_path)
        else:
            store = InMemoryPersistentStore()

    registry = ProviderRegistry(
        SlidingWindowRateLimiter(clock=limiter_clock),
        breaker_failure_threshold=settings.providers.breaker_failure_threshold,
        breaker_recovery_timeout=settings.providers.breaker_recovery_timeout,
        clock=limiter_clock,
    )
    for adapter in adapters:
        registry.register(adapter)

    return AnalysisEngine(
        settings=settings,
        registry=registry,
        cache=CacheManager(settings.cache, store=store, clock=cache_clock),
        fanout=FanoutExecutor(settings.fanout, registry, clock=limiter_clock),
        consolidator=ResponseConsolidator(settings.consolidation),
        scorer=ScoreEngine(),
        recommender=RecommendationGenerator(
            max_recommendations=settings.recommendations.max_recommendations
        ),
        telemetry=Telemetry(telemetry_sink),
    )
