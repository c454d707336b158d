"""
Test suite for provider fanout.

Validates settle-all semantics, timeouts, concurrency caps, cancellation and
breaker/limiter integration.
"""

import asyncio

import httpx

from fakes import FakeClock, FakeProvider
from prism.core.config import FanoutConfig, ProviderConfig
from prism.core.exceptions import ProviderTimeoutError, ProviderUnavailableError
from prism.core.models import AnalysisRequest, ProviderErrorKind
from prism.engine.fanout import FanoutExecutor, build_plan
from prism.engine.registry import ProviderRegistry
from prism.providers.blockchain import MoralisProvider
from prism.utils.reliability import CircuitBreakerState, SlidingWindowRateLimiter

REQUEST = AnalysisRequest(subject="0xabc123", domain="ethereum", capabilities=["tokens", "nfts"])
TOKENS = {"tokens": {"token_count": 3, "spam_token_count": 0}}


def _executor(*adapters, call_timeout=1.0, max_concurrency=8, global_concurrency=32, threshold=5):
    registry = ProviderRegistry(
        SlidingWindowRateLimiter(clock=FakeClock()),
        breaker_failure_threshold=threshold,
    )
    for adapter in adapters:
        registry.register(adapter)
    config = FanoutConfig(
        max_concurrency=max_concurrency,
        global_concurrency=global_concurrency,
        call_timeout=call_timeout,
        request_deadline=None,
    )
    return FanoutExecutor(config, registry), registry


class ConcurrencyTracker(FakeProvider):
    """Records the highest number of its calls running at once across instances."""

    active = 0
    peak = 0

    async def _fetch(self, request, capability):
        cls = type(self)
        cls.active += 1
        cls.peak = max(cls.peak, cls.active)
        try:
            await asyncio.sleep(0.02)
        finally:
            cls.active -= 1
        return {"token_count": 1}


class TestBuildPlan:
    """Test call planning."""

    def test_one_call_per_provider_and_capability(self):
        """Test the plan pairs each provider with the capabilities it serves."""
        a = FakeProvider("a", capabilities=["tokens", "nfts", "defi"])
        b = FakeProvider("b", capabilities=["tokens"])
        plan = build_plan([b, a], REQUEST.capabilities)
        assert [(adapter.name, cap) for adapter, cap in plan] == [
            ("a", "nfts"),
            ("a", "tokens"),
            ("b", "tokens"),
        ]


class TestSettleAll:
    """Test that failures never abort sibling calls."""

    def test_failure_does_not_abort_siblings(self):
        """Test one failing provider leaves the other's result intact."""
        ok = FakeProvider("ok", metrics=TOKENS)
        bad = FakeProvider("bad", error=ProviderUnavailableError("bad", "down"))
        executor, _ = _executor(ok, bad)

        plan = build_plan([ok, bad], ["tokens"])
        report = asyncio.run(executor.execute(REQUEST, plan))

        assert len(report.results) == 2
        assert [r.provider for r in report.succeeded] == ["ok"]
        assert report.failed[0].error.kind == ProviderErrorKind.UNAVAILABLE
        assert not report.interrupted

    def test_unexpected_exception_is_bad_response(self):
        """Test arbitrary adapter exceptions are settled as bad responses."""
        broken = FakeProvider("broken", error=KeyError("result"))
        executor, _ = _executor(broken)

        report = asyncio.run(executor.execute(REQUEST, build_plan([broken], ["tokens"])))
        assert report.results[0].error.kind == ProviderErrorKind.BAD_RESPONSE

    def test_timeout_is_a_provider_failure(self):
        """Test a call exceeding its timeout settles as TIMEOUT."""
        slow = FakeProvider("slow", metrics=TOKENS, delay=1.0)
        executor, _ = _executor(slow, call_timeout=0.02)

        report = asyncio.run(executor.execute(REQUEST, build_plan([slow], ["tokens"])))
        result = report.results[0]
        assert not result.success
        assert result.error.kind == ProviderErrorKind.TIMEOUT

    def test_payload_is_tagged_with_call_identity(self):
        """Test successful calls carry provider, capability and source tag."""
        ok = FakeProvider("ok", metrics=TOKENS)
        executor, _ = _executor(ok)

        report = asyncio.run(executor.execute(REQUEST, build_plan([ok], ["tokens"])))
        payload = report.results[0].payload
        assert payload.provider == "ok"
        assert payload.capability == "tokens"
        assert payload.source == "ok.tokens"
        assert payload.metrics == {"token_count": 3, "spam_token_count": 0}

    def test_empty_plan(self):
        """Test an empty plan returns an empty report."""
        executor, _ = _executor()
        report = asyncio.run(executor.execute(REQUEST, []))
        assert report.results == []
        assert executor.calls_dispatched == 0


class TestConcurrencyLimits:
    """Test per-request and global concurrency caps."""

    def test_per_request_cap(self):
        """Test no more than max_concurrency calls run at once."""
        ConcurrencyTracker.active = 0
        ConcurrencyTracker.peak = 0
        trackers = [ConcurrencyTracker(f"p{i}") for i in range(6)]
        executor, _ = _executor(*trackers, max_concurrency=2)

        report = asyncio.run(executor.execute(REQUEST, build_plan(trackers, ["tokens"])))

        assert len(report.succeeded) == 6
        assert ConcurrencyTracker.peak == 2

    def test_global_cap_spans_requests(self):
        """Test simultaneous requests together never exceed the global cap."""
        ConcurrencyTracker.active = 0
        ConcurrencyTracker.peak = 0
        trackers = [ConcurrencyTracker(f"p{i}") for i in range(4)]
        executor, _ = _executor(*trackers, max_concurrency=4, global_concurrency=3)
        plan = build_plan(trackers, ["tokens"])

        async def run():
            return await asyncio.gather(
                executor.execute(REQUEST, plan),
                executor.execute(REQUEST.model_copy(update={"subject": "0xdef456"}), plan),
            )

        first, second = asyncio.run(run())

        assert len(first.succeeded) == 4
        assert len(second.succeeded) == 4
        assert ConcurrencyTracker.peak == 3


class TestInterruption:
    """Test cancellation and deadlines."""

    def test_cancel_keeps_completed_results(self):
        """Test a cancel stops outstanding calls but keeps finished ones."""
        fast = FakeProvider("fast", metrics=TOKENS)
        stuck = FakeProvider("stuck", metrics=TOKENS, gate=asyncio.Event())
        executor, _ = _executor(fast, stuck)
        plan = build_plan([fast, stuck], ["tokens"])

        async def run():
            cancel = asyncio.Event()
            task = asyncio.ensure_future(executor.execute(REQUEST, plan, cancel_event=cancel))
            await asyncio.sleep(0.02)
            cancel.set()
            return await task

        report = asyncio.run(run())
        by_provider = {r.provider: r for r in report.results}
        assert report.interrupted
        assert by_provider["fast"].success
        assert by_provider["stuck"].error.kind == ProviderErrorKind.CANCELLED

    def test_deadline_interrupts(self):
        """Test the request deadline cancels slow calls."""
        slow = FakeProvider("slow", metrics=TOKENS, delay=1.0)
        executor, _ = _executor(slow, call_timeout=5.0)

        report = asyncio.run(
            executor.execute(REQUEST, build_plan([slow], ["tokens"]), deadline=0.02)
        )
        assert report.interrupted
        assert report.results[0].error.kind == ProviderErrorKind.CANCELLED

    def test_cancelled_calls_do_not_trip_breaker(self):
        """Test interrupted calls are not counted as provider failures."""
        stuck = FakeProvider("stuck", gate=asyncio.Event())
        executor, registry = _executor(stuck, threshold=1)

        asyncio.run(executor.execute(REQUEST, build_plan([stuck], ["tokens"]), deadline=0.01))
        assert registry.breaker("stuck").state == CircuitBreakerState.CLOSED


class TestReliabilityIntegration:
    """Test breaker and rate limiter checks at dispatch time."""

    def test_open_breaker_refuses_call(self):
        """Test an open circuit settles the call as unavailable without dispatching."""
        p1 = FakeProvider("p1", metrics=TOKENS)
        executor, registry = _executor(p1, threshold=1)
        registry.breaker("p1").record_failure()

        report = asyncio.run(executor.execute(REQUEST, build_plan([p1], ["tokens"])))
        assert report.results[0].error.kind == ProviderErrorKind.UNAVAILABLE
        assert report.results[0].error.message == "circuit open"
        assert p1.calls == []

    def test_quota_checked_per_call(self):
        """Test calls beyond quota are refused as rate limited."""
        p1 = FakeProvider("p1", capabilities=["tokens", "nfts"], quota=1)
        executor, _ = _executor(p1)

        report = asyncio.run(executor.execute(REQUEST, build_plan([p1], REQUEST.capabilities)))
        assert len(report.succeeded) == 1
        assert report.failed[0].error.message == "rate limited"
        assert executor.calls_dispatched == 1

    def test_timeouts_open_breaker(self):
        """Test repeated timeouts count against the breaker."""
        flaky = FakeProvider("flaky", error=ProviderTimeoutError("flaky", "slow"))
        executor, registry = _executor(flaky, threshold=2)
        plan = build_plan([flaky], ["tokens"])

        asyncio.run(executor.execute(REQUEST, plan))
        asyncio.run(executor.execute(REQUEST, plan))
        assert registry.breaker("flaky").state == CircuitBreakerState.OPEN

    def test_unavailable_errors_do_not_open_breaker(self):
        """Test unavailability is not held against the provider."""
        down = FakeProvider("down", error=ProviderUnavailableError("down", "maintenance"))
        executor, registry = _executor(down, threshold=1)

        asyncio.run(executor.execute(REQUEST, build_plan([down], ["tokens"])))
        assert registry.breaker("down").state == CircuitBreakerState.CLOSED

    def test_connection_failures_open_breaker(self):
        """Test repeated connection failures count against the breaker."""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        config = ProviderConfig(moralis_api_key="key", retry_attempts=1)
        moralis = MoralisProvider(config, httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
        executor, registry = _executor(moralis, threshold=2)
        plan = build_plan([moralis], ["tokens"])

        first = asyncio.run(executor.execute(REQUEST, plan))
        asyncio.run(executor.execute(REQUEST, plan))

        assert first.results[0].error.kind == ProviderErrorKind.NETWORK
        assert registry.breaker("moralis").state == CircuitBreakerState.OPEN
