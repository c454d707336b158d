"""Builds the human-readable overview block of a result."""

from typing import List

from prism.core.models import (
    AnalysisRequest,
    ConsolidatedResult,
    Level,
    Overview,
    Recommendation,
    ScoreBlock,
)

STRENGTH_THRESHOLD = 80.0
WEAKNESS_THRESHOLD = 50.0


def _label(category: str) -> str:
    return category.replace("_", " ")


def build_overview(
    request: AnalysisRequest,
    consolidated: ConsolidatedResult,
    score: ScoreBlock,
    recommendations: List[Recommendation],
) -> Overview:
    sections = consolidated.sections
    analyzed = [c for c, s in sections.items() if s.is_available]
    unavailable = [c for c, s in sections.items() if not s.is_available]

    findings = []
    for capability in analyzed:
        section = sections[capability]
        measured = sum(1 for m in section.data.values() if m.is_available)
        finding = (
            f"{capability}: {measured}/{len(section.data)} metrics from "
            f"{', '.join(section.provenance)} ({section.confidence:.0%} confidence)"
        )
        if section.conflicted:
            finding += ", providers disagreed"
        findings.append(finding)

    strengths = [
        f"Strong {_label(c)} ({v:.0f}/100)"
        for c, v in score.categories.items()
        if v >= STRENGTH_THRESHOLD
    ]
    weaknesses = [
        f"Weak {_label(c)} ({v:.0f}/100)"
        for c, v in score.categories.items()
        if v < WEAKNESS_THRESHOLD
    ]
    critical = [r.title for r in recommendations if r.impact == Level.HIGH]

    confidence = (
        round(sum(s.confidence for s in sections.values()) / len(sections), 4) if sections else 0.0
    )

    if analyzed:
        summary = (
            f"{request.domain} analysis of {request.subject}: overall score "
            f"{score.overall:.1f}/100 from {len(analyzed)} of {len(sections)} sections"
        )
    else:
        summary = f"No data was available for {request.subject} on {request.domain}"
    if critical:
        summary += f"; {len(critical)} critical issue{'s' if len(critical) != 1 else ''}"

    return Overview(
        subject=request.subject,
        domain=request.domain,
        depth=request.depth,
        summary=summary,
        confidence=confidence,
        key_findings=findings,
        strengths=strengths,
        weaknesses=weaknesses,
        critical_issues=critical,
        sections_analyzed=analyzed,
        sections_unavailable=unavailable,
    )
