"""
Canonical metric catalog.

Lists the metrics each capability is expected to report at each depth.
Depths are cumulative: ``detailed`` expects everything ``basic`` does.
"""

from typing import Dict, List, Tuple

from prism.core.models import Depth

CAPABILITY_METRICS: Dict[str, Dict[Depth, Tuple[str, ...]]] = {
    # chain capabilities
    "transactions": {
        Depth.BASIC: ("tx_count", "unique_counterparties"),
        Depth.DETAILED: ("total_value_native", "avg_value_native"),
        Depth.COMPREHENSIVE: ("gas_spent_native", "failed_tx_count"),
    },
    "tokens": {
        Depth.BASIC: ("token_count", "spam_token_count"),
        Depth.DETAILED: ("verified_token_count",),
        Depth.COMPREHENSIVE: ("top_token_share",),
    },
    "nfts": {
        Depth.BASIC: ("nft_count", "collection_count"),
        Depth.DETAILED: ("spam_nft_count",),
    },
    "defi": {
        Depth.BASIC: ("protocol_count", "position_count"),
        Depth.DETAILED: ("total_value_usd",),
        Depth.COMPREHENSIVE: ("unclaimed_rewards_usd",),
    },
    "labels": {
        Depth.BASIC: ("is_contract", "is_verified"),
        Depth.DETAILED: ("contract_name",),
        Depth.COMPREHENSIVE: ("is_proxy",),
    },
    "activity": {
        Depth.BASIC: ("transfer_count", "days_active"),
        Depth.DETAILED: ("last_active_days_ago",),
    },
    # web capabilities
    "performance": {
        Depth.BASIC: ("performance_score", "largest_contentful_paint_ms"),
        Depth.DETAILED: (
            "first_contentful_paint_ms",
            "cumulative_layout_shift",
            "total_blocking_time_ms",
        ),
        Depth.COMPREHENSIVE: ("speed_index_ms",),
    },
    "seo": {
        Depth.BASIC: ("seo_score",),
        Depth.DETAILED: ("accessibility_score", "best_practices_score"),
    },
    "metadata": {
        Depth.BASIC: ("title_length", "meta_description_length"),
        Depth.DETAILED: ("has_canonical", "has_viewport"),
        Depth.COMPREHENSIVE: ("has_open_graph", "has_structured_data"),
    },
    "content": {
        Depth.BASIC: ("word_count", "h1_count"),
        Depth.DETAILED: ("heading_count", "image_count", "images_missing_alt"),
    },
    "links": {
        Depth.BASIC: ("internal_link_count", "external_link_count"),
        Depth.DETAILED: ("nofollow_link_count",),
    },
}


def expected_metrics(capability: str, depth: Depth) -> List[str]:
    """
    Metrics a capability should report at ``depth``.

    Returns an empty list for capabilities outside the catalog; their sections
    are judged only by what providers return.
    """
    levels = CAPABILITY_METRICS.get(capability)
    if not levels:
        return []
    metrics: List[str] = []
    for level in Depth:
        if level.level > depth.level:
            break
        metrics.extend(levels.get(level, ()))
    return metrics
