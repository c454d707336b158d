"""
Prism: multi-provider analysis orchestration engine.

Fans an analysis request out to independent data providers, merges their
payloads into one scored result with provenance, and caches it at two tiers.
"""

__version__ = "1.0.0"
