"""
Analysis engine components.

Provides provider selection, rate limiting, two-tier caching, fanout,
consolidation, scoring and recommendation generation.
"""

from .cache import CacheManager, make_cache_key
from .comparison import compare_results
from .orchestrator import AnalysisEngine, create_engine

__all__ = ["AnalysisEngine", "CacheManager", "compare_results", "create_engine", "make_cache_key"]
