"""
Configuration management for Prism.

Provides centralized, validated configuration from environment variables
with proper type checking and defaults.
"""

from __future__ import annotations

from typing import Annotated, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Capabilities whose metrics move quickly (balances, live counts) vs. ones that
# describe structure (contract metadata, page markup).
DEFAULT_VOLATILE_CAPABILITIES = ["transactions", "tokens", "nfts", "defi", "activity", "performance"]
DEFAULT_STABLE_CAPABILITIES = ["labels", "metadata", "content", "links", "seo"]


def _parse_bool(v) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y")
    return bool(v)


def _parse_csv_list(v) -> List[str]:
    if isinstance(v, str):
        return [item.strip().lower() for item in v.split(",") if item.strip()]
    return list(v or [])


class CacheConfig(BaseSettings):
    """Two-tier cache configuration."""

    l1_max_entries: int = Field(default=512, alias="CACHE_L1_MAX_ENTRIES", ge=1)
    default_ttl: int = Field(default=900, alias="CACHE_DEFAULT_TTL", ge=1)
    volatile_ttl: int = Field(default=300, alias="CACHE_VOLATILE_TTL", ge=1)
    stable_ttl: int = Field(default=3600, alias="CACHE_STABLE_TTL", ge=1)
    volatile_capabilities: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_VOLATILE_CAPABILITIES),
        alias="CACHE_VOLATILE_CAPABILITIES",
    )
    stable_capabilities: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_STABLE_CAPABILITIES),
        alias="CACHE_STABLE_CAPABILITIES",
    )
    sweep_interval: float = Field(default=60.0, alias="CACHE_SWEEP_INTERVAL", ge=0)
    db_path: Optional[str] = Field(default=None, alias="CACHE_DB_PATH")

    @field_validator("volatile_capabilities", "stable_capabilities", mode="before")
    @classmethod
    def parse_capabilities(cls, v):
        return _parse_csv_list(v)

    def ttl_for(self, capabilities) -> int:
        """
        TTL for a result covering ``capabilities``.

        The shortest TTL among the capabilities wins, so a result never outlives
        its most volatile section.
        """
        ttls = []
        for capability in capabilities:
            if capability in self.volatile_capabilities:
                ttls.append(self.volatile_ttl)
            elif capability in self.stable_capabilities:
                ttls.append(self.stable_ttl)
            else:
                ttls.append(self.default_ttl)
        return min(ttls) if ttls else self.default_ttl

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class FanoutConfig(BaseSettings):
    """Provider dispatch limits."""

    max_concurrency: int = Field(default=8, alias="FANOUT_MAX_CONCURRENCY", ge=1)
    global_concurrency: int = Field(default=32, alias="FANOUT_GLOBAL_CONCURRENCY", ge=1)
    call_timeout: float = Field(default=10.0, alias="FANOUT_CALL_TIMEOUT", gt=0)
    request_deadline: Optional[float] = Field(default=30.0, alias="FANOUT_REQUEST_DEADLINE")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class ConsolidationConfig(BaseSettings):
    """Metric merge policy."""

    agreement_threshold: float = Field(
        default=0.10, alias="CONSOLIDATION_AGREEMENT_THRESHOLD", ge=0
    )
    single_source_penalty: float = Field(
        default=0.3, alias="CONSOLIDATION_SINGLE_SOURCE_PENALTY", ge=0, le=1
    )
    agreement_confidence: float = Field(
        default=0.95, alias="CONSOLIDATION_AGREEMENT_CONFIDENCE", ge=0, le=1
    )
    conflict_confidence: float = Field(
        default=0.5, alias="CONSOLIDATION_CONFLICT_CONFIDENCE", ge=0, le=1
    )

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class RecommendationConfig(BaseSettings):
    """Recommendation list limits."""

    max_recommendations: int = Field(default=10, alias="RECOMMENDATIONS_MAX", ge=1)

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class ProviderConfig(BaseSettings):
    """External data provider credentials and quotas."""

    moralis_api_key: Optional[str] = Field(default=None, alias="MORALIS_API_KEY")
    etherscan_api_key: Optional[str] = Field(default=None, alias="ETHERSCAN_API_KEY")
    alchemy_api_key: Optional[str] = Field(default=None, alias="ALCHEMY_API_KEY")
    pagespeed_api_key: Optional[str] = Field(default=None, alias="PAGESPEED_API_KEY")

    moralis_quota: int = Field(default=1500, alias="MORALIS_QUOTA", ge=1)
    moralis_window_seconds: float = Field(default=60.0, alias="MORALIS_WINDOW_SECONDS", gt=0)
    etherscan_quota: int = Field(default=5, alias="ETHERSCAN_QUOTA", ge=1)
    etherscan_window_seconds: float = Field(default=1.0, alias="ETHERSCAN_WINDOW_SECONDS", gt=0)
    alchemy_quota: int = Field(default=1500, alias="ALCHEMY_QUOTA", ge=1)
    alchemy_window_seconds: float = Field(default=60.0, alias="ALCHEMY_WINDOW_SECONDS", gt=0)
    pagespeed_quota: int = Field(default=240, alias="PAGESPEED_QUOTA", ge=1)
    pagespeed_window_seconds: float = Field(default=60.0, alias="PAGESPEED_WINDOW_SECONDS", gt=0)
    site_inspector_quota: int = Field(default=60, alias="SITE_INSPECTOR_QUOTA", ge=1)
    site_inspector_window_seconds: float = Field(
        default=60.0, alias="SITE_INSPECTOR_WINDOW_SECONDS", gt=0
    )

    site_inspector_enabled: bool = Field(default=True, alias="SITE_INSPECTOR_ENABLED")
    http_timeout: float = Field(default=8.0, alias="HTTP_TIMEOUT", gt=0)
    retry_attempts: int = Field(default=3, alias="PROVIDER_RETRY_ATTEMPTS", ge=1)
    breaker_failure_threshold: int = Field(default=5, alias="PROVIDER_BREAKER_THRESHOLD", ge=1)
    breaker_recovery_timeout: float = Field(
        default=60.0, alias="PROVIDER_BREAKER_RECOVERY", gt=0
    )

    @field_validator("site_inspector_enabled", mode="before")
    @classmethod
    def parse_site_inspector_enabled(cls, v):
        return _parse_bool(v)

    def quota_for(self, provider: str) -> Dict[str, float]:
        """Quota and window length for a provider name."""
        return {
            "quota": getattr(self, f"{provider}_quota"),
            "window_seconds": getattr(self, f"{provider}_window_seconds"),
        }

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: str = Field(default="production", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Component configurations
    cache: CacheConfig = Field(default_factory=CacheConfig)
    fanout: FanoutConfig = Field(default_factory=FanoutConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    recommendations: RecommendationConfig = Field(default_factory=RecommendationConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug(cls, v):
        return _parse_bool(v)

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def validate_provider_settings(config: Optional[Settings] = None) -> List[str]:
    """
    Report provider credentials that are not configured.

    Missing credentials never fail a request; the affected providers are
    skipped. This is used by the CLI to explain low-confidence results.

    Returns:
        List of missing environment variable names
    """
    config = config or get_settings()
    missing = []
    if not config.providers.moralis_api_key:
        missing.append("MORALIS_API_KEY")
    if not config.providers.etherscan_api_key:
        missing.append("ETHERSCAN_API_KEY")
    if not config.providers.alchemy_api_key:
        missing.append("ALCHEMY_API_KEY")
    if not config.providers.pagespeed_api_key:
        missing.append("PAGESPEED_API_KEY")
    return missing


def print_configuration_summary(config: Optional[Settings] = None) -> None:
    """Print a summary of the current configuration for debugging."""
    try:
        config = config or get_settings()
        print("=== Prism Configuration Summary ===")
        print(f"Environment: {config.environment}")
        print(f"Debug Mode: {config.debug}")
        print()
        print("Cache:")
        print(f"  L1 capacity: {config.cache.l1_max_entries}")
        print(f"  L2 store: {config.cache.db_path or 'in-memory'}")
        print(f"  TTL volatile/stable/default: "
              f"{config.cache.volatile_ttl}s / {config.cache.stable_ttl}s / {config.cache.default_ttl}s")
        print()
        print("Fanout:")
        print(f"  Per-request concurrency: {config.fanout.max_concurrency}")
        print(f"  Global concurrency: {config.fanout.global_concurrency}")
        print(f"  Call timeout: {config.fanout.call_timeout}s")
        print(f"  Request deadline: {config.fanout.request_deadline or 'none'}")
        print()
        print("Providers:")
        print(f"  Moralis: {'✓' if config.providers.moralis_api_key else '✗'}")
        print(f"  Etherscan: {'✓' if config.providers.etherscan_api_key else '✗'}")
        print(f"  Alchemy: {'✓' if config.providers.alchemy_api_key else '✗'}")
        print(f"  PageSpeed: {'✓' if config.providers.pagespeed_api_key else '✗'}")
        print(f"  Site inspector: {'✓' if config.providers.site_inspector_enabled else '✗'}")
        print("=" * 35)
    except Exception as e:
        print(f"Error loading configuration: {e}")
