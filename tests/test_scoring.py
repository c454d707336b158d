"""Test suite for the score engine."""

import pytest

from prism.core.models import (
    ConsolidatedMetric,
    ConsolidatedResult,
    MetricStatus,
    ScoreBlock,
    Section,
)
from prism.engine.scoring import ScoreComponent, ScoreEngine


def _result(**sections):
    """Build a consolidated result from {capability: {metric: value}}."""
    return ConsolidatedResult(
        sections={
            capability: Section(
                data={
                    name: (
                        ConsolidatedMetric.unavailable()
                        if value is None
                        else ConsolidatedMetric(value=value, status=MetricStatus.MEASURED, confidence=1.0)
                    )
                    for name, value in metrics.items()
                },
                confidence=1.0,
            )
            for capability, metrics in sections.items()
        }
    )


@pytest.fixture
def engine():
    return ScoreEngine()


class TestScoreComponent:
    """Test the metric-to-points mapping."""

    def test_linear_scale(self):
        """Test values map linearly between low and high."""
        component = ScoreComponent("content", "content", "word_count", high=1500)
        assert component.points(_result(content={"word_count": 750})) == 50.0

    def test_clamped(self):
        """Test values outside the range are clamped."""
        component = ScoreComponent("content", "content", "word_count", high=1500)
        assert component.points(_result(content={"word_count": 9000})) == 100.0

    def test_inverted(self):
        """Test smaller-is-better metrics are inverted."""
        component = ScoreComponent(
            "performance", "performance", "largest_contentful_paint_ms", low=2500, high=6000, invert=True
        )
        assert component.points(_result(performance={"largest_contentful_paint_ms": 2000})) == 100.0
        assert component.points(_result(performance={"largest_contentful_paint_ms": 10000})) == 0.0

    def test_booleans(self):
        """Test flags score all or nothing."""
        component = ScoreComponent("technical", "metadata", "has_viewport")
        assert component.points(_result(metadata={"has_viewport": True})) == 100.0
        assert component.points(_result(metadata={"has_viewport": False})) == 0.0

    def test_unavailable_metric_has_no_points(self):
        """Test missing data is skipped rather than scored as zero."""
        component = ScoreComponent("content", "content", "word_count")
        assert component.points(_result(content={"word_count": None})) is None
        assert component.points(_result()) is None


class TestScoreEngine:
    """Test category and overall scores."""

    def test_empty_result_scores_zero(self, engine):
        """Test a result with no data has an overall of zero and no categories."""
        score = engine.score(_result())
        assert score.overall == 0.0
        assert score.categories == {}

    def test_single_category(self, engine):
        """Test a lone category becomes the overall score."""
        score = engine.score(_result(seo={"seo_score": 85}))
        assert score.categories == {"seo": 85.0}
        assert score.overall == 85.0

    def test_weighted_components(self, engine):
        """Test components are weighted inside a category."""
        score = engine.score(
            _result(performance={"performance_score": 90, "largest_contentful_paint_ms": 10000})
        )
        assert score.categories["performance"] == 60.0

    def test_weights_renormalized_over_present_categories(self, engine):
        """Test missing categories are excluded from the weighted mean."""
        score = engine.score(
            _result(
                performance={"performance_score": 90, "largest_contentful_paint_ms": 10000},
                seo={"seo_score": 100},
            )
        )
        assert score.overall == pytest.approx(round((60 * 1.5 + 100 * 1.2) / 2.7, 1))
        assert "content" not in score.categories

    def test_overall_always_in_range(self, engine):
        """Test extreme inputs still produce scores within [0, 100]."""
        extremes = [
            _result(performance={"performance_score": -50, "cumulative_layout_shift": 99}),
            _result(content={"word_count": 10**9, "h1_count": 1}, links={"internal_link_count": 10**6}),
            _result(tokens={"token_count": 0, "spam_token_count": 500}),
        ]
        for result in extremes:
            score = engine.score(result)
            assert 0.0 <= score.overall <= 100.0
            assert all(0.0 <= v <= 100.0 for v in score.categories.values())

    def test_deterministic(self, engine):
        """Test equal inputs give equal scores."""
        result = _result(seo={"seo_score": 70, "accessibility_score": 90})
        assert engine.score(result) == engine.score(result)

    def test_custom_weights(self):
        """Test category weights can be overridden."""
        engine = ScoreEngine(category_weights={"seo": 3.0, "performance": 1.0})
        score = engine.score(_result(seo={"seo_score": 100}, performance={"performance_score": 0}))
        assert score.overall == 75.0


class TestScoreBlock:
    """Test score serialization."""

    def test_serializes_flat(self):
        """Test categories sit beside overall in the serialized form."""
        block = ScoreBlock(overall=70.0, categories={"seo": 80.0})
        assert block.model_dump() == {"overall": 70.0, "seo": 80.0}

    def test_flat_form_validates_back(self):
        """Test the flat form can be read back."""
        block = ScoreBlock.model_validate({"overall": 70.0, "seo": 80.0})
        assert block.overall == 70.0
        assert block.categories == {"seo": 80.0}
