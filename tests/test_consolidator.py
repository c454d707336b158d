"""
Test suite for response consolidation.

Covers the single-source, agreement and conflict merge rules, the explicit
unavailable variant and section confidence.
"""

import itertools

import pytest

from prism.core.config import ConsolidationConfig
from prism.core.models import (
    AnalysisRequest,
    Depth,
    MetricStatus,
    ProviderCallResult,
    ProviderDescriptor,
    ProviderError,
    ProviderErrorKind,
    ProviderPayload,
)
from prism.engine.consolidator import (
    REASON_ALL_FAILED,
    REASON_NO_PROVIDER,
    ResponseConsolidator,
    relative_spread,
)

REQUEST = AnalysisRequest(subject="0xabc123", domain="ethereum", capabilities=["tokens"])


@pytest.fixture
def consolidator():
    return ResponseConsolidator(ConsolidationConfig())


def _ok(provider, capability="tokens", **metrics):
    return ProviderCallResult.ok(
        ProviderPayload(
            provider=provider,
            capability=capability,
            source=f"{provider}.{capability}",
            metrics=metrics,
        )
    )


def _failed(provider, capability="tokens", kind=ProviderErrorKind.TIMEOUT):
    return ProviderCallResult.failed(provider, capability, ProviderError(kind=kind))


def _descriptors(**ranks):
    return {
        name: ProviderDescriptor(
            name=name,
            capabilities=frozenset({"tokens"}),
            domains=frozenset({"ethereum"}),
            reliability={"tokens": rank},
        )
        for name, rank in ranks.items()
    }


class TestRelativeSpread:
    """Test the agreement measure."""

    def test_spread(self):
        """Test spread is relative to the largest magnitude."""
        assert relative_spread([100, 110]) == pytest.approx(10 / 110)
        assert relative_spread([5, 5, 5]) == 0.0
        assert relative_spread([0, 0]) == 0.0


class TestMergeMetric:
    """Test merging one metric across providers."""

    def test_no_values_is_unavailable(self, consolidator):
        """Test missing data is an explicit variant, never zero."""
        metric = consolidator.merge_metric({})
        assert metric.status == MetricStatus.UNAVAILABLE
        assert metric.value is None
        assert metric.confidence == 0.0
        assert not metric.is_available

    def test_single_source_penalty(self, consolidator):
        """Test one provider's value is used with reduced confidence."""
        metric = consolidator.merge_metric({"p1": 12})
        assert metric.value == 12
        assert metric.status == MetricStatus.MEASURED
        assert metric.provenance == ["p1"]
        assert metric.confidence == pytest.approx(0.7)

    def test_measured_zero_is_available(self, consolidator):
        """Test a reported zero is data, unlike a missing value."""
        metric = consolidator.merge_metric({"p1": 0})
        assert metric.is_available
        assert metric.value == 0

    def test_agreeing_values_are_averaged(self, consolidator):
        """Test values within the threshold merge to their mean."""
        metric = consolidator.merge_metric({"p1": 100, "p2": 105})
        assert metric.value == pytest.approx(102.5)
        assert metric.status == MetricStatus.MEASURED
        assert metric.provenance == ["p1", "p2"]
        assert metric.confidence == pytest.approx(0.95)

    def test_integral_mean_stays_int(self, consolidator):
        """Test integer metrics stay integers when the mean is whole."""
        metric = consolidator.merge_metric({"p1": 10, "p2": 10})
        assert metric.value == 10
        assert isinstance(metric.value, int)

    def test_more_sources_more_confidence(self, consolidator):
        """Test each extra agreeing source raises confidence, capped at 1."""
        two = consolidator.merge_metric({"a": 10, "b": 10})
        three = consolidator.merge_metric({"a": 10, "b": 10, "c": 10})
        assert three.confidence > two.confidence
        many = consolidator.merge_metric({str(i): 10 for i in range(10)})
        assert many.confidence == 1.0

    def test_conflict_uses_highest_rank(self, consolidator):
        """Test disagreement beyond threshold picks the most reliable provider."""
        metric = consolidator.merge_metric({"p1": 100, "p2": 150}, {"p1": 1, "p2": 3})
        assert metric.status == MetricStatus.CONFLICTED
        assert metric.conflicted
        assert metric.value == 150
        assert metric.provenance == ["p2"]
        assert metric.conflicting_values == {"p1": 100}
        assert metric.confidence == pytest.approx(0.5)

    def test_conflict_tie_broken_by_name(self, consolidator):
        """Test equal ranks fall back to provider name order."""
        metric = consolidator.merge_metric({"zeta": 1, "alpha": 50}, {"zeta": 2, "alpha": 2})
        assert metric.value == 50
        assert metric.provenance == ["alpha"]

    def test_conflict_provenance_includes_agreeing_providers(self, consolidator):
        """Test providers close to the chosen value share its provenance."""
        metric = consolidator.merge_metric(
            {"a": 10, "b": 50, "c": 52}, {"a": 1, "b": 3, "c": 1}
        )
        assert metric.value == 50
        assert metric.provenance == ["b", "c"]
        assert metric.conflicting_values == {"a": 10}

    def test_just_over_threshold_conflicts(self, consolidator):
        """Test a spread above ten percent is a conflict."""
        metric = consolidator.merge_metric({"p1": 100, "p2": 112}, {"p1": 2, "p2": 1})
        assert metric.conflicted
        assert metric.value == 100

    def test_booleans_agree_or_conflict(self, consolidator):
        """Test non-numeric values must match exactly to agree."""
        agree = consolidator.merge_metric({"a": True, "b": True})
        assert agree.value is True
        assert agree.status == MetricStatus.MEASURED

        conflict = consolidator.merge_metric({"a": True, "b": False}, {"a": 1, "b": 2})
        assert conflict.conflicted
        assert conflict.value is False


class TestConsolidateSection:
    """Test building sections from call results."""

    def test_single_provider_section(self, consolidator):
        """Test one successful provider fills the section at reduced confidence."""
        results = [_ok("p1", token_count=4, spam_token_count=1), _failed("p2")]
        section = consolidator.consolidate(REQUEST, results, _descriptors(p1=1, p2=1)).sections[
            "tokens"
        ]
        assert section.provenance == ["p1"]
        assert section.confidence == pytest.approx(0.7)
        assert section.metric("token_count").value == 4
        assert section.unavailable_reason is None

    def test_two_providers_more_confident_than_one(self, consolidator):
        """Test agreement raises section confidence above the single-source case."""
        one = consolidator.consolidate(
            REQUEST, [_ok("p1", token_count=4, spam_token_count=1), _failed("p2")], _descriptors(p1=1, p2=1)
        ).sections["tokens"]
        two = consolidator.consolidate(
            REQUEST,
            [_ok("p1", token_count=4, spam_token_count=1), _ok("p2", token_count=4, spam_token_count=1)],
            _descriptors(p1=1, p2=1),
        ).sections["tokens"]
        assert one.confidence < two.confidence
        assert two.provenance == ["p1", "p2"]

    def test_missing_metric_reduces_coverage(self, consolidator):
        """Test section confidence scales with the fraction of expected metrics present."""
        results = [_ok("p1", token_count=4)]
        section = consolidator.consolidate(REQUEST, results, _descriptors(p1=1)).sections["tokens"]
        assert section.metric("spam_token_count").status == MetricStatus.UNAVAILABLE
        assert section.confidence == pytest.approx(0.5 * 0.7)

    def test_depth_extends_expected_metrics(self, consolidator):
        """Test deeper requests expect more metrics."""
        detailed = REQUEST.model_copy(update={"depth": Depth.DETAILED})
        results = [_ok("p1", token_count=4, spam_token_count=1)]
        section = consolidator.consolidate(detailed, results, _descriptors(p1=1)).sections["tokens"]
        assert "verified_token_count" in section.data
        assert section.confidence == pytest.approx(2 / 3 * 0.7, abs=1e-4)

    def test_extra_metrics_are_kept(self, consolidator):
        """Test metrics beyond the catalog are merged too."""
        results = [_ok("p1", token_count=4, spam_token_count=0, top_token_share=55.0)]
        section = consolidator.consolidate(REQUEST, results, _descriptors(p1=1)).sections["tokens"]
        assert section.metric("top_token_share").value == 55.0

    def test_all_failed_section(self, consolidator):
        """Test a section with no successful provider is marked unavailable."""
        section = consolidator.consolidate(REQUEST, [_failed("p1")], _descriptors(p1=1)).sections[
            "tokens"
        ]
        assert section.confidence == 0.0
        assert section.unavailable_reason == REASON_ALL_FAILED
        assert not section.is_available

    def test_unsupported_capability_section(self, consolidator):
        """Test capabilities with no registered provider get an unavailable section."""
        request = REQUEST.model_copy(update={"capabilities": frozenset({"tokens", "labels"})})
        result = consolidator.consolidate(
            request, [_ok("p1", token_count=1, spam_token_count=0)], _descriptors(p1=1), {"labels"}
        )
        labels = result.sections["labels"]
        assert labels.unavailable_reason == REASON_NO_PROVIDER
        assert labels.confidence == 0.0
        assert set(labels.data) == {"is_contract", "is_verified"}
        assert result.sections["tokens"].is_available

    def test_conflicted_section_flag(self, consolidator):
        """Test a conflicted metric flags its section."""
        results = [
            _ok("p1", token_count=10, spam_token_count=0),
            _ok("p2", token_count=50, spam_token_count=0),
        ]
        section = consolidator.consolidate(REQUEST, results, _descriptors(p1=3, p2=1)).sections[
            "tokens"
        ]
        assert section.conflicted
        assert section.metric("token_count").value == 10
        assert not section.metric("spam_token_count").conflicted

    def test_arrival_order_does_not_matter(self, consolidator):
        """Test every permutation of results consolidates identically."""
        results = [
            _ok("a", token_count=10, spam_token_count=2),
            _ok("b", token_count=11, spam_token_count=9),
            _ok("c", token_count=40),
            _failed("d"),
        ]
        descriptors = _descriptors(a=1, b=2, c=3, d=1)
        outputs = {
            consolidator.consolidate(REQUEST, list(order), descriptors).model_dump_json()
            for order in itertools.permutations(results)
        }
        assert len(outputs) == 1
