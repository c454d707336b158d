"""
Recommendation generator.

A fixed, ordered rule table. Each rule is a predicate over consolidated
metrics plus a template. Output is deduplicated by title (first rule wins),
sorted by priority descending and capped. No hidden state.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from prism.core.models import ConsolidatedResult, Level, Recommendation

Predicate = Callable[[ConsolidatedResult], bool]

LOW_CONFIDENCE_THRESHOLD = 0.5


def _num(capability: str, metric: str, test: Callable[[float], bool]) -> Predicate:
    """Predicate on a numeric metric; false when the metric is unavailable."""

    def predicate(result: ConsolidatedResult) -> bool:
        value = result.number(capability, metric)
        return value is not None and test(value)

    return predicate


def _is_false(capability: str, metric: str) -> Predicate:
    def predicate(result: ConsolidatedResult) -> bool:
        return result.flag(capability, metric) is False

    return predicate


def _unverified_contract(result: ConsolidatedResult) -> bool:
    return result.flag("labels", "is_contract") is True and result.flag("labels", "is_verified") is False


def _low_confidence(result: ConsolidatedResult) -> bool:
    return any(s.confidence < LOW_CONFIDENCE_THRESHOLD for s in result.sections.values())


def _slug(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


@dataclass(frozen=True)
class Rule:
    title: str
    category: str
    predicate: Predicate
    impact: Level
    effort: Level
    likelihood: float
    description: str = ""
    capability: Optional[str] = None
    steps: Sequence[str] = field(default_factory=tuple)


DEFAULT_RULES: List[Rule] = [
    Rule(
        "Improve page load performance",
        "performance",
        _num("performance", "performance_score", lambda v: v < 50),
        Level.HIGH,
        Level.HIGH,
        0.8,
        "The page scores poorly on lab performance measurements.",
        "performance",
        ("Audit render-blocking scripts and styles", "Defer non-critical JavaScript", "Serve static assets from a CDN"),
    ),
    Rule(
        "Improve page load performance",
        "performance",
        _num("performance", "largest_contentful_paint_ms", lambda v: v > 2500),
        Level.HIGH,
        Level.MEDIUM,
        0.9,
        "The largest element takes too long to render.",
        "performance",
        ("Preload the hero image", "Compress and resize large images", "Reduce server response time"),
    ),
    Rule(
        "Reduce main-thread blocking",
        "performance",
        _num("performance", "total_blocking_time_ms", lambda v: v > 300),
        Level.HIGH,
        Level.HIGH,
        0.8,
        "Long JavaScript tasks delay interactivity.",
        "performance",
        ("Split long tasks", "Remove unused JavaScript", "Move heavy work to web workers"),
    ),
    Rule(
        "Stabilize page layout",
        "performance",
        _num("performance", "cumulative_layout_shift", lambda v: v > 0.1),
        Level.MEDIUM,
        Level.MEDIUM,
        0.8,
        "Content shifts while the page loads.",
        "performance",
        ("Set explicit width and height on images and embeds", "Reserve space for ads and banners"),
    ),
    Rule(
        "Add a responsive viewport tag",
        "technical",
        _is_false("metadata", "has_viewport"),
        Level.HIGH,
        Level.LOW,
        0.95,
        "Without a viewport meta tag mobile browsers render a desktop layout.",
        "metadata",
        ('Add <meta name="viewport" content="width=device-width, initial-scale=1">',),
    ),
    Rule(
        "Fix failing SEO audits",
        "seo",
        _num("seo", "seo_score", lambda v: v < 80),
        Level.HIGH,
        Level.MEDIUM,
        0.8,
        "Search engine audits report crawlability or markup problems.",
        "seo",
        ("Review the failing audits", "Fix crawl and indexing issues", "Re-run the audit"),
    ),
    Rule(
        "Write a meta description",
        "technical",
        _num("metadata", "meta_description_length", lambda v: v < 50),
        Level.MEDIUM,
        Level.LOW,
        0.9,
        "Search results show a missing or very short description.",
        "metadata",
        ("Write a 120-160 character summary of the page", "Include the primary keyword once"),
    ),
    Rule(
        "Write a descriptive page title",
        "technical",
        _num("metadata", "title_length", lambda v: v < 30 or v > 65),
        Level.MEDIUM,
        Level.LOW,
        0.8,
        "The title is too short or will be truncated in search results.",
        "metadata",
        ("Keep the title between 30 and 65 characters", "Lead with the primary topic"),
    ),
    Rule(
        "Declare a canonical URL",
        "technical",
        _is_false("metadata", "has_canonical"),
        Level.MEDIUM,
        Level.LOW,
        0.85,
        "Duplicate URLs may split ranking signals.",
        "metadata",
        ('Add <link rel="canonical"> pointing at the preferred URL',),
    ),
    Rule(
        "Add alt text to images",
        "content",
        _num("content", "images_missing_alt", lambda v: v > 0),
        Level.MEDIUM,
        Level.LOW,
        0.85,
        "Images without alt text are invisible to screen readers and image search.",
        "content",
        ("List images without alt attributes", "Describe each image in a short phrase"),
    ),
    Rule(
        "Expand thin content",
        "content",
        _num("content", "word_count", lambda v: v < 300),
        Level.HIGH,
        Level.MEDIUM,
        0.7,
        "The page has too little text to rank for competitive queries.",
        "content",
        ("Identify the questions visitors ask", "Add sections answering them", "Link to supporting pages"),
    ),
    Rule(
        "Use exactly one H1 heading",
        "content",
        _num("content", "h1_count", lambda v: v != 1),
        Level.LOW,
        Level.LOW,
        0.8,
        "The page has no H1 or several competing H1 headings.",
        "content",
        ("Keep one H1 that states the page topic", "Demote other H1 elements to H2"),
    ),
    Rule(
        "Fix accessibility issues",
        "seo",
        _num("seo", "accessibility_score", lambda v: v < 80),
        Level.MEDIUM,
        Level.MEDIUM,
        0.7,
        "Accessibility audits report contrast, labelling or navigation problems.",
        "seo",
        ("Fix colour contrast", "Label form controls", "Check keyboard navigation"),
    ),
    Rule(
        "Add Open Graph tags",
        "technical",
        _is_false("metadata", "has_open_graph"),
        Level.LOW,
        Level.LOW,
        0.7,
        "Shared links render without a title card or image.",
        "metadata",
        ("Add og:title, og:description and og:image",),
    ),
    Rule(
        "Add structured data",
        "technical",
        _is_false("metadata", "has_structured_data"),
        Level.MEDIUM,
        Level.MEDIUM,
        0.6,
        "Structured data makes the page eligible for rich results.",
        "metadata",
        ("Pick the matching schema.org type", "Embed it as JSON-LD", "Validate with a rich results test"),
    ),
    Rule(
        "Strengthen internal linking",
        "links",
        _num("links", "internal_link_count", lambda v: v < 5),
        Level.MEDIUM,
        Level.LOW,
        0.7,
        "Few internal links make related pages harder to discover.",
        "links",
        ("Link to related pages from the body text", "Add breadcrumb navigation"),
    ),
    Rule(
        "Verify the contract source code",
        "trust",
        _unverified_contract,
        Level.HIGH,
        Level.MEDIUM,
        0.9,
        "Unverified contracts cannot be audited by users or tools.",
        "labels",
        ("Publish the source on the block explorer", "Match compiler version and settings"),
    ),
    Rule(
        "Review spam token holdings",
        "portfolio",
        _num("tokens", "spam_token_count", lambda v: v > 0),
        Level.MEDIUM,
        Level.LOW,
        0.8,
        "The address holds tokens flagged as spam, often used for phishing.",
        "tokens",
        ("Do not interact with flagged tokens", "Hide them in wallet interfaces"),
    ),
    Rule(
        "Reduce portfolio concentration",
        "portfolio",
        _num("tokens", "top_token_share", lambda v: v > 80),
        Level.MEDIUM,
        Level.MEDIUM,
        0.6,
        "Most of the portfolio value sits in a single token.",
        "tokens",
        ("Define a target allocation", "Rebalance gradually"),
    ),
    Rule(
        "Investigate failed transactions",
        "trust",
        _num("transactions", "failed_tx_count", lambda v: v > 5),
        Level.MEDIUM,
        Level.LOW,
        0.7,
        "Repeated failures waste gas and may indicate a misbehaving integration.",
        "transactions",
        ("Group failures by target contract", "Check gas limits and revert reasons"),
    ),
    Rule(
        "Low on-chain activity",
        "activity",
        _num("transactions", "tx_count", lambda v: v < 10),
        Level.LOW,
        Level.MEDIUM,
        0.5,
        "The address has little transaction history to analyze.",
        "transactions",
        ("Widen the timeframe", "Check related addresses"),
    ),
    Rule(
        "Configure additional data providers",
        "data",
        _low_confidence,
        Level.MEDIUM,
        Level.LOW,
        0.9,
        "Some sections have low confidence because few providers returned data.",
        None,
        ("Add API credentials for unconfigured providers", "Check provider quotas and status"),
    ),
]


class RecommendationGenerator:
    """Evaluates the rule table against a consolidated result."""

    def __init__(self, rules: Sequence[Rule] = tuple(DEFAULT_RULES), max_recommendations: int = 10):
        self.rules = list(rules)
        self.max_recommendations = max_recommendations

    @staticmethod
    def likelihood(rule: Rule, result: ConsolidatedResult) -> float:
        """Rule likelihood scaled by the confidence of the section it reads."""
        if rule.capability is None:
            return rule.likelihood
        return rule.likelihood * result.section(rule.capability).confidence

    def generate(self, result: ConsolidatedResult) -> List[Recommendation]:
        """
        Produce the ranked recommendation list.

        Priority is ``impact_weight * likelihood / effort_weight``. Ties keep
        rule-table order.
        """
        seen = set()
        candidates: List[Recommendation] = []
        for rule in self.rules:
            if rule.title in seen or not rule.predicate(result):
                continue
            seen.add(rule.title)
            likelihood = round(self.likelihood(rule, result), 4)
            candidates.append(
                Recommendation(
                    id=_slug(rule.title),
                    title=rule.title,
                    description=rule.description,
                    category=rule.category,
                    impact=rule.impact,
                    effort=rule.effort,
                    likelihood=likelihood,
                    priority=round(rule.impact.weight * likelihood / rule.effort.weight, 4),
                    steps=list(rule.steps),
                    capability=rule.capability,
                )
            )

        ranked = sorted(candidates, key=lambda r: -r.priority)[: self.max_recommendations]
        return [r.model_copy(update={"rank": i}) for i, r in enumerate(ranked, start=1)]
