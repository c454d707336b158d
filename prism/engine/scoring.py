"""
Score engine.

Pure and deterministic: consolidated metrics -> category sub-scores in
[0, 100] -> weighted overall score. Categories with no data are left out and
the remaining weights are renormalized; a missing category never counts as
zero.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from prism.core.models import ConsolidatedResult, ScoreBlock

CATEGORY_WEIGHTS: Dict[str, float] = {
    "performance": 1.5,
    "content": 1.3,
    "seo": 1.2,
    "trust": 1.1,
    "technical": 1.0,
    "activity": 1.0,
    "portfolio": 1.0,
    "links": 0.8,
}


@dataclass(frozen=True)
class ScoreComponent:
    """
    One metric's contribution to a category.

    Numeric values map linearly from ``low`` (0 points) to ``high`` (100
    points) and are clamped. Booleans score 100 when true. ``invert`` flips
    the scale for metrics where smaller is better.
    """

    category: str
    capability: str
    metric: str
    weight: float = 1.0
    low: float = 0.0
    high: float = 100.0
    invert: bool = False

    def points(self, result: ConsolidatedResult) -> Optional[float]:
        section = result.section(self.capability)
        flag = section.flag(self.metric)
        if flag is not None:
            value = 100.0 if flag else 0.0
        else:
            number = section.number(self.metric)
            if number is None:
                return None
            span = self.high - self.low
            value = (number - self.low) / span * 100.0 if span else 0.0
        value = max(0.0, min(100.0, value))
        return 100.0 - value if self.invert else value


DEFAULT_COMPONENTS: List[ScoreComponent] = [
    # performance
    ScoreComponent("performance", "performance", "performance_score", weight=2.0),
    ScoreComponent("performance", "performance", "largest_contentful_paint_ms", low=2500, high=6000, invert=True),
    ScoreComponent("performance", "performance", "first_contentful_paint_ms", low=1800, high=4000, invert=True),
    ScoreComponent("performance", "performance", "cumulative_layout_shift", low=0.1, high=0.5, invert=True),
    ScoreComponent("performance", "performance", "total_blocking_time_ms", low=200, high=1000, invert=True),
    # seo
    ScoreComponent("seo", "seo", "seo_score", weight=2.0),
    ScoreComponent("seo", "seo", "accessibility_score"),
    ScoreComponent("seo", "seo", "best_practices_score"),
    # technical
    ScoreComponent("technical", "metadata", "title_length", high=30),
    ScoreComponent("technical", "metadata", "meta_description_length", high=120),
    ScoreComponent("technical", "metadata", "has_canonical"),
    ScoreComponent("technical", "metadata", "has_viewport", weight=1.5),
    ScoreComponent("technical", "metadata", "has_open_graph", weight=0.5),
    ScoreComponent("technical", "metadata", "has_structured_data", weight=0.5),
    # content
    ScoreComponent("content", "content", "word_count", weight=2.0, high=1500),
    ScoreComponent("content", "content", "h1_count", high=1),
    ScoreComponent("content", "content", "images_missing_alt", high=10, invert=True),
    # links
    ScoreComponent("links", "links", "internal_link_count", weight=2.0, high=50),
    ScoreComponent("links", "links", "external_link_count", high=10),
    # activity
    ScoreComponent("activity", "transactions", "tx_count", weight=2.0, high=500),
    ScoreComponent("activity", "transactions", "unique_counterparties", high=100),
    ScoreComponent("activity", "activity", "transfer_count", high=500),
    ScoreComponent("activity", "activity", "days_active", high=365),
    # portfolio
    ScoreComponent("portfolio", "tokens", "token_count", high=50),
    ScoreComponent("portfolio", "tokens", "verified_token_count", high=20),
    ScoreComponent("portfolio", "tokens", "spam_token_count", high=20, invert=True),
    ScoreComponent("portfolio", "nfts", "collection_count", weight=0.5, high=25),
    ScoreComponent("portfolio", "defi", "protocol_count", high=10),
    # trust
    ScoreComponent("trust", "labels", "is_verified", weight=2.0),
    ScoreComponent("trust", "transactions", "failed_tx_count", high=50, invert=True),
]


class ScoreEngine:
    """Computes category sub-scores and a renormalized overall score."""

    def __init__(
        self,
        components: Sequence[ScoreComponent] = tuple(DEFAULT_COMPONENTS),
        category_weights: Optional[Dict[str, float]] = None,
    ):
        self.components = list(components)
        self.category_weights = dict(category_weights or CATEGORY_WEIGHTS)

    def category_scores(self, result: ConsolidatedResult) -> Dict[str, float]:
        totals: Dict[str, List[float]] = {}
        for component in self.components:
            points = component.points(result)
            if points is None:
                continue
            acc = totals.setdefault(component.category, [0.0, 0.0])
            acc[0] += points * component.weight
            acc[1] += component.weight

        return {
            category: round(weighted / weight, 1)
            for category, (weighted, weight) in sorted(totals.items())
            if weight > 0
        }

    def score(self, result: ConsolidatedResult) -> ScoreBlock:
        """
        Score a consolidated result.

        Returns:
            ScoreBlock; ``overall`` is 0.0 when no category had any data
        """
        categories = self.category_scores(result)
        weighted = 0.0
        total_weight = 0.0
        for category, value in categories.items():
            weight = self.category_weights.get(category, 1.0)
            weighted += value * weight
            total_weight += weight

        overall = round(weighted / total_weight, 1) if total_weight else 0.0
        return ScoreBlock(overall=max(0.0, min(100.0, overall)), categories=categories)
