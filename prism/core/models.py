"""
Data models and type definitions for Prism.

Provides type-safe data structures with validation for the engine's
request/result contract and for the values passed between its components.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_serializer,
    model_validator,
)
from pydantic.alias_generators import to_camel

from prism.core.exceptions import RequestValidationError

MetricValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]

ALLOWED_TIMEFRAMES = ("24h", "7d", "30d", "90d", "all")


class Depth(str, Enum):
    """How much of a capability's metric set a request expects."""

    BASIC = "basic"
    DETAILED = "detailed"
    COMPREHENSIVE = "comprehensive"

    @property
    def level(self) -> int:
        return {"basic": 0, "detailed": 1, "comprehensive": 2}[self.value]


class ProviderErrorKind(str, Enum):
    """Why a provider call produced no payload."""

    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    BAD_RESPONSE = "bad_response"
    NETWORK = "network_error"
    CANCELLED = "cancelled"


class MetricStatus(str, Enum):
    """Outcome of consolidating one metric."""

    MEASURED = "measured"
    CONFLICTED = "conflicted"
    UNAVAILABLE = "unavailable"


class Level(str, Enum):
    """Impact / effort scale for recommendations."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class CamelModel(BaseModel):
    """Base for wire models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request


class AnalysisRequest(CamelModel):
    """One analysis request. Immutable once created."""

    subject: str = Field(..., min_length=1, max_length=2048)
    domain: str = Field(..., min_length=1, max_length=64)
    capabilities: FrozenSet[str] = Field(..., min_length=1)
    depth: Depth = Field(default=Depth.BASIC)
    timeframe: Optional[str] = Field(default=None)
    requester_id: Optional[str] = Field(default=None, max_length=200)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    @field_validator("subject")
    @classmethod
    def strip_subject(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("subject must not be blank")
        return v

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v):
        return v.strip().lower()

    @field_validator("capabilities", mode="before")
    @classmethod
    def normalize_capabilities(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        return frozenset(c.strip().lower() for c in v if c and c.strip())

    @field_validator("timeframe")
    @classmethod
    def validate_timeframe(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        if v not in ALLOWED_TIMEFRAMES:
            raise ValueError(f"timeframe must be one of {', '.join(ALLOWED_TIMEFRAMES)}")
        return v

    @property
    def sorted_capabilities(self) -> Tuple[str, ...]:
        return tuple(sorted(self.capabilities))

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AnalysisRequest":
        """
        Build a request from a caller payload (camelCase or snake_case keys).

        Raises:
            RequestValidationError: when the payload is malformed
        """
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise RequestValidationError(
                "Malformed analysis request",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e


# Providers


class ProviderDescriptor(BaseModel):
    """Static description of one data provider, built at process start."""

    name: str
    capabilities: FrozenSet[str]
    domains: FrozenSet[str]
    has_credentials: bool = True
    reliability: Dict[str, int] = Field(default_factory=dict)
    quota: int = Field(default=60, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)

    model_config = ConfigDict(frozen=True)

    def rank_for(self, capability: str) -> int:
        """Declared reliability rank for a capability; higher is more trusted."""
        return self.reliability.get(capability, 0)

    def supports_domain(self, domain: str) -> bool:
        return domain in self.domains

    def serves(self, capabilities) -> FrozenSet[str]:
        """The subset of ``capabilities`` this provider can answer."""
        return self.capabilities.intersection(capabilities)


class ProviderError(BaseModel):
    """Typed failure value returned by an adapter instead of raising."""

    kind: ProviderErrorKind
    message: str = ""
    status_code: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class ProviderPayload(BaseModel):
    """Canonical metrics produced by an adapter from its own wire response."""

    provider: str
    capability: str
    source: str = Field(..., description="Tag of the provider response model")
    metrics: Dict[str, MetricValue] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ProviderCallResult(BaseModel):
    """Outcome of one (provider, capability) call."""

    provider: str
    capability: str
    success: bool
    payload: Optional[ProviderPayload] = None
    error: Optional[ProviderError] = None
    latency_ms: float = 0.0

    @classmethod
    def ok(cls, payload: ProviderPayload, latency_ms: float = 0.0) -> "ProviderCallResult":
        return cls(
            provider=payload.provider,
            capability=payload.capability,
            success=True,
            payload=payload,
            latency_ms=latency_ms,
        )

    @classmethod
    def failed(
        cls,
        provider: str,
        capability: str,
        error: ProviderError,
        latency_ms: float = 0.0,
    ) -> "ProviderCallResult":
        return cls(
            provider=provider,
            capability=capability,
            success=False,
            error=error,
            latency_ms=latency_ms,
        )


# Consolidated result


class ConsolidatedMetric(CamelModel):
    """One merged metric with its confidence and provenance."""

    value: Optional[MetricValue] = None
    status: MetricStatus = MetricStatus.UNAVAILABLE
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    provenance: List[str] = Field(default_factory=list)
    conflicting_values: Dict[str, MetricValue] = Field(default_factory=dict)

    @property
    def is_available(self) -> bool:
        return self.status != MetricStatus.UNAVAILABLE

    @property
    def conflicted(self) -> bool:
        return self.status == MetricStatus.CONFLICTED

    @classmethod
    def unavailable(cls) -> "ConsolidatedMetric":
        return cls(status=MetricStatus.UNAVAILABLE)


class Section(CamelModel):
    """Merged view of one requested capability."""

    data: Dict[str, ConsolidatedMetric] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    provenance: List[str] = Field(default_factory=list)
    conflicted: bool = False
    unavailable_reason: Optional[str] = None

    def metric(self, name: str) -> ConsolidatedMetric:
        return self.data.get(name) or ConsolidatedMetric.unavailable()

    def number(self, name: str) -> Optional[float]:
        """Numeric value of a metric, or None when it is unavailable or not numeric."""
        metric = self.data.get(name)
        if metric is None or not metric.is_available:
            return None
        if isinstance(metric.value, bool) or not isinstance(metric.value, (int, float)):
            return None
        return float(metric.value)

    def flag(self, name: str) -> Optional[bool]:
        metric = self.data.get(name)
        if metric is None or not metric.is_available or not isinstance(metric.value, bool):
            return None
        return metric.value

    @property
    def is_available(self) -> bool:
        return any(m.is_available for m in self.data.values())


class ConsolidatedResult(CamelModel):
    """All sections of one analysis, keyed by capability."""

    sections: Dict[str, Section] = Field(default_factory=dict)

    def section(self, capability: str) -> Section:
        return self.sections.get(capability) or Section(unavailable_reason="not requested")

    def number(self, capability: str, metric: str) -> Optional[float]:
        return self.section(capability).number(metric)

    def flag(self, capability: str, metric: str) -> Optional[bool]:
        return self.section(capability).flag(metric)


class ScoreBlock(BaseModel):
    """Overall score plus one sub-score per category that had data."""

    overall: float = Field(default=0.0, ge=0.0, le=100.0)
    categories: Dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def split_flat_categories(cls, data):
        if isinstance(data, dict) and "categories" not in data:
            data = dict(data)
            overall = data.pop("overall", 0.0)
            return {"overall": overall, "categories": data}
        return data

    @model_serializer
    def flatten(self) -> Dict[str, float]:
        return {"overall": self.overall, **self.categories}


class Recommendation(CamelModel):
    """One ranked, actionable recommendation."""

    id: str
    title: str
    description: str = ""
    category: str
    impact: Level
    effort: Level
    likelihood: float = Field(..., ge=0.0, le=1.0)
    priority: float = Field(..., ge=0.0)
    rank: int = Field(default=0, ge=0)
    steps: List[str] = Field(default_factory=list)
    capability: Optional[str] = None


class Overview(CamelModel):
    """Human-readable digest of an analysis."""

    subject: str
    domain: str
    depth: Depth
    summary: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    key_findings: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    critical_issues: List[str] = Field(default_factory=list)
    sections_analyzed: List[str] = Field(default_factory=list)
    sections_unavailable: List[str] = Field(default_factory=list)


class ResultMetadata(CamelModel):
    """Per-delivery facts about how a result was produced."""

    cache_key: str = ""
    providers_used: List[str] = Field(default_factory=list)
    providers_skipped: Dict[str, str] = Field(default_factory=dict)
    provider_errors: Dict[str, str] = Field(default_factory=dict)
    cache_hit: bool = False
    cache_tier: Optional[str] = None
    collapsed: bool = False
    partial: bool = False
    processing_time_ms: float = 0.0


class AnalysisResult(CamelModel):
    """Complete engine result delivered to callers."""

    overview: Overview
    sections: Dict[str, Section] = Field(default_factory=dict)
    score: ScoreBlock = Field(default_factory=ScoreBlock)
    recommendations: List[Recommendation] = Field(default_factory=list)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict using the camelCase contract field names."""
        return self.model_dump(mode="json", by_alias=True)

    def content(self) -> Dict[str, Any]:
        """Everything except per-delivery metadata; equal for equal inputs."""
        data = self.model_dump(mode="json", exclude={"metadata"})
        data["providers_used"] = list(self.metadata.providers_used)
        return data


# Cache


class CacheEntry(BaseModel):
    """One cached payload with absolute expiry (clock seconds)."""

    key: str
    payload: Dict[str, Any]
    created_at: float
    expires_at: float
    tier: str = "l1"

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at
