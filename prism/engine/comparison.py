"""Side-by-side comparison of two analysis results."""

from typing import Dict, List, Optional

from pydantic import Field

from prism.core.models import AnalysisResult, CamelModel

TIE_MARGIN = 1.0


class CategoryComparison(CamelModel):
    first: Optional[float] = None
    second: Optional[float] = None
    difference: Optional[float] = None
    winner: Optional[str] = None


class ComparisonReport(CamelModel):
    """Score differences between two results; positive favours the first."""

    first_subject: str
    second_subject: str
    overall: CategoryComparison
    categories: Dict[str, CategoryComparison] = Field(default_factory=dict)
    summary: str = ""


def _compare(first: Optional[float], second: Optional[float]) -> CategoryComparison:
    if first is None or second is None:
        return CategoryComparison(first=first, second=second)
    difference = round(first - second, 1)
    if abs(difference) < TIE_MARGIN:
        winner = "tie"
    else:
        winner = "first" if difference > 0 else "second"
    return CategoryComparison(first=first, second=second, difference=difference, winner=winner)


def compare_results(first: AnalysisResult, second: AnalysisResult) -> ComparisonReport:
    """
    Compare two results category by category.

    Categories scored in only one result are listed with a None difference.
    Differences under one point count as a tie.
    """
    names = sorted(set(first.score.categories) | set(second.score.categories))
    categories = {
        name: _compare(first.score.categories.get(name), second.score.categories.get(name))
        for name in names
    }
    overall = _compare(first.score.overall, second.score.overall)

    a, b = first.overview.subject, second.overview.subject
    wins: List[str] = [n for n, c in categories.items() if c.winner == "first"]
    losses: List[str] = [n for n, c in categories.items() if c.winner == "second"]
    if overall.winner == "tie":
        summary = f"{a} and {b} score within a point of each other overall"
    else:
        leader = a if overall.winner == "first" else b
        summary = f"{leader} leads overall by {abs(overall.difference):.1f} points"
    if wins:
        summary += f"; {a} is ahead on {', '.join(wins)}"
    if losses:
        summary += f"; {b} is ahead on {', '.join(losses)}"

    return ComparisonReport(
        first_subject=a,
        second_subject=b,
        overall=overall,
        categories=categories,
        summary=summary,
    )
