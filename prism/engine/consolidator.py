"""
Response consolidation.

Merges successful provider payloads into one section per requested
capability. The result depends only on the set of results, never on the
order they arrived in.
"""

from typing import Dict, Iterable, List, Mapping, Optional

import structlog

from prism.core.config import ConsolidationConfig
from prism.core.models import (
    AnalysisRequest,
    ConsolidatedMetric,
    ConsolidatedResult,
    MetricStatus,
    MetricValue,
    ProviderCallResult,
    ProviderDescriptor,
    Section,
)
from prism.engine.catalog import expected_metrics

logger = structlog.get_logger(__name__)

REASON_NO_PROVIDER = "no provider registered for this capability"
REASON_ALL_FAILED = "no provider returned data"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def relative_spread(values: Iterable[float]) -> float:
    """(max - min) / max(|max|, |min|); 0 when every value is zero."""
    values = list(values)
    high, low = max(values), min(values)
    scale = max(abs(high), abs(low))
    if scale == 0:
        return 0.0
    return (high - low) / scale


class ResponseConsolidator:
    """Applies the single-source / agreement / conflict merge policy."""

    def __init__(self, config: ConsolidationConfig):
        self.config = config

    def _agrees(self, a: MetricValue, b: MetricValue) -> bool:
        if _is_number(a) and _is_number(b):
            return relative_spread([a, b]) <= self.config.agreement_threshold
        return a == b

    def merge_metric(
        self,
        values: Mapping[str, MetricValue],
        ranks: Optional[Mapping[str, int]] = None,
    ) -> ConsolidatedMetric:
        """
        Merge one metric's values keyed by provider name.

        Args:
            values: provider -> reported value
            ranks: provider -> reliability rank for this capability

        Returns:
            ConsolidatedMetric; UNAVAILABLE when ``values`` is empty
        """
        if not values:
            return ConsolidatedMetric.unavailable()

        ranks = ranks or {}
        providers = sorted(values)

        if len(providers) == 1:
            provider = providers[0]
            return ConsolidatedMetric(
                value=values[provider],
                status=MetricStatus.MEASURED,
                confidence=round(1.0 - self.config.single_source_penalty, 4),
                provenance=[provider],
            )

        ordered = [values[p] for p in providers]
        if all(_is_number(v) for v in ordered):
            agree = relative_spread(ordered) <= self.config.agreement_threshold
        else:
            agree = all(v == ordered[0] for v in ordered)

        if agree:
            if _is_number(ordered[0]):
                mean = sum(ordered) / len(ordered)
                all_ints = all(isinstance(v, int) for v in ordered)
                value = int(mean) if all_ints and mean.is_integer() else round(mean, 4)
            else:
                value = ordered[0]
            confidence = min(1.0, self.config.agreement_confidence + 0.025 * (len(providers) - 2))
            return ConsolidatedMetric(
                value=value,
                status=MetricStatus.MEASURED,
                confidence=round(confidence, 4),
                provenance=providers,
            )

        # Conflict: the most reliable provider wins, ties broken by name
        chosen = sorted(providers, key=lambda p: (-ranks.get(p, 0), p))[0]
        chosen_value = values[chosen]
        agreeing = [p for p in providers if self._agrees(values[p], chosen_value)]
        return ConsolidatedMetric(
            value=chosen_value,
            status=MetricStatus.CONFLICTED,
            confidence=self.config.conflict_confidence,
            provenance=agreeing,
            conflicting_values={p: values[p] for p in providers if p not in agreeing},
        )

    def consolidate_section(
        self,
        request: AnalysisRequest,
        capability: str,
        results: List[ProviderCallResult],
        descriptors: Mapping[str, ProviderDescriptor],
    ) -> Section:
        payloads = sorted(
            (r.payload for r in results if r.success and r.payload and r.capability == capability),
            key=lambda p: p.provider,
        )
        expected = expected_metrics(capability, request.depth)
        reported = sorted({m for p in payloads for m in p.metrics} - set(expected))
        ranks = {
            name: descriptor.rank_for(capability) for name, descriptor in descriptors.items()
        }

        data: Dict[str, ConsolidatedMetric] = {}
        for metric in expected + reported:
            values = {p.provider: p.metrics[metric] for p in payloads if metric in p.metrics}
            data[metric] = self.merge_metric(values, ranks)

        available = [m for m in data.values() if m.is_available]
        if expected:
            coverage = sum(1 for m in expected if data[m].is_available) / len(expected)
        else:
            coverage = 1.0 if available else 0.0
        mean_confidence = (
            sum(m.confidence for m in available) / len(available) if available else 0.0
        )

        provenance = sorted({p for m in available for p in m.provenance})
        return Section(
            data=data,
            confidence=round(coverage * mean_confidence, 4),
            provenance=provenance,
            conflicted=any(m.conflicted for m in data.values()),
            unavailable_reason=None if available else REASON_ALL_FAILED,
        )

    def consolidate(
        self,
        request: AnalysisRequest,
        results: List[ProviderCallResult],
        descriptors: Mapping[str, ProviderDescriptor],
        unsupported: Iterable[str] = (),
    ) -> ConsolidatedResult:
        """
        Build one section per requested capability.

        Capabilities in ``unsupported`` (no registered provider) become
        unavailable sections with zero confidence.
        """
        unsupported = set(unsupported)
        sections: Dict[str, Section] = {}
        for capability in request.sorted_capabilities:
            if capability in unsupported:
                sections[capability] = Section(
                    data={
                        m: ConsolidatedMetric.unavailable()
                        for m in expected_metrics(capability, request.depth)
                    },
                    unavailable_reason=REASON_NO_PROVIDER,
                )
                continue
            sections[capability] = self.consolidate_section(request, capability, results, descriptors)

        conflicted = [c for c, s in sections.items() if s.conflicted]
        if conflicted:
            logger.info("Provider values conflicted", capabilities=conflicted)
        return ConsolidatedResult(sections=sections)
