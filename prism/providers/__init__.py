"""
External data provider adapters.
"""

from typing import List, Optional

import httpx

from prism.core.config import ProviderConfig

from .base import HttpProvider, ProviderAdapter
from .blockchain import AlchemyProvider, EtherscanProvider, MoralisProvider
from .web import PageSpeedProvider, SiteInspectorProvider

__all__ = [
    "AlchemyProvider",
    "EtherscanProvider",
    "HttpProvider",
    "MoralisProvider",
    "PageSpeedProvider",
    "ProviderAdapter",
    "SiteInspectorProvider",
    "build_default_adapters",
]


def build_default_adapters(
    config: ProviderConfig, client: Optional[httpx.AsyncClient] = None
) -> List[ProviderAdapter]:
    """
    Every built-in provider, including ones without credentials.

    Providers without credentials stay registered so the engine can tell a
    domain with no providers apart from one whose providers are unconfigured.
    """
    return [
        MoralisProvider(config, client),
        EtherscanProvider(config, client),
        AlchemyProvider(config, client),
        PageSpeedProvider(config, client),
        SiteInspectorProvider(config, client),
    ]
