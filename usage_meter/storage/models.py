"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class FeatureType(Enum):
    """Kind of AI call a usage record is billed under."""
    CHAT = "chat"
    EMBEDDING = "embedding"
    REWRITE = "rewrite"
    CONTEXT_GENERATION = "context_generation"
    RERANK = "rerank"


class PeriodType(Enum):
    """Granularity of a latency rollup."""
    HOURLY = "hourly"
    DAILY = "daily"


def to_dict(obj: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-friendly values."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {key: to_dict(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_dict(value) for value in obj]
    return obj


class Serializable:
    """Mixin giving dataclasses a ``to_dict()`` for dashboard rendering."""

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)


@dataclass(frozen=True)
class CostBreakdown(Serializable):
    """USD cost of a single billable call, split by token direction."""
    input_cost: float
    output_cost: float
    total_cost: float

    def __post_init__(self):
        """Validate cost values are non-negative."""
        if self.input_cost < 0:
            raise ValueError("input_cost cannot be negative")
        if self.output_cost < 0:
            raise ValueError("output_cost cannot be negative")
        if self.total_cost < 0:
            raise ValueError("total_cost cannot be negative")

    @classmethod
    def zero(cls) -> "CostBreakdown":
        return cls(input_cost=0.0, output_cost=0.0, total_cost=0.0)


@dataclass(frozen=True)
class UsageRecord(Serializable):
    """Immutable record of LLM usage for financial tracking.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    tenant_id: str
    model_provider: str
    model_id: str
    feature_type: FeatureType
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: CostBreakdown
    chatbot_id: Optional[str] = None
    conversation_id: Optional[str] = None

    def __post_init__(self):
        """Validate token counts are consistent."""
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")
        if self.total_tokens != self.input_tokens + self.output_tokens:
            raise ValueError("total_tokens must equal input_tokens + output_tokens")


@dataclass(frozen=True)
class TenantBudgetStatus(Serializable):
    """Current-month accrued cost for one tenant."""
    tenant_id: str
    current_month_usage: float
    updated_at: Optional[datetime] = None
    override_monthly_budget: Optional[float] = None


@dataclass(frozen=True)
class LatencyRecord(Serializable):
    """End-to-end timing of one completed chat request.

    Stage durations are optional: cache hits skip the LLM, search and
    rewrite stages entirely.
    """
    timestamp: datetime
    tenant_id: str
    channel: str
    total_duration_ms: float
    cache_hit: bool = False
    chunks_used: int = 0
    chatbot_id: Optional[str] = None
    llm_duration_ms: Optional[float] = None
    search_duration_ms: Optional[float] = None
    rewrite_duration_ms: Optional[float] = None

    def __post_init__(self):
        if self.total_duration_ms < 0:
            raise ValueError("total_duration_ms cannot be negative")
        if self.chunks_used < 0:
            raise ValueError("chunks_used cannot be negative")


@dataclass(frozen=True)
class LatencyRollup(Serializable):
    """Pre-computed latency summary for one entity and period.

    A ``chatbot_id`` of None is the tenant-wide rollup.
    """
    tenant_id: str
    chatbot_id: Optional[str]
    period_type: PeriodType
    period_start: datetime
    request_count: int
    cache_hit_count: int
    total_avg_ms: Optional[float] = None
    total_p50_ms: Optional[float] = None
    total_p95_ms: Optional[float] = None
    total_p99_ms: Optional[float] = None
    total_min_ms: Optional[float] = None
    total_max_ms: Optional[float] = None
    llm_avg_ms: Optional[float] = None
    llm_p95_ms: Optional[float] = None
    search_avg_ms: Optional[float] = None
    search_p95_ms: Optional[float] = None


@dataclass(frozen=True)
class AlertThreshold(Serializable):
    """Stored alert override for a scope.

    Null ids widen the scope (tenant None is global, chatbot None is
    tenant-wide). Null values fall back to the configured defaults.
    """
    tenant_id: Optional[str]
    chatbot_id: Optional[str]
    p95_threshold_ms: Optional[float] = None
    avg_spike_threshold: Optional[float] = None
    alert_enabled: Optional[bool] = None
    alert_cooldown_minutes: Optional[int] = None


@dataclass(frozen=True)
class PriceCatalogEntry(Serializable):
    """Per-million-token pricing for one provider model."""
    provider: str
    model_id: str
    display_name: str
    input_price_per_million: float
    output_price_per_million: float
    is_embedding: bool = False
    is_active: bool = True

    def __post_init__(self):
        """Validate prices are non-negative."""
        if self.input_price_per_million < 0:
            raise ValueError("input_price_per_million cannot be negative")
        if self.output_price_per_million < 0:
            raise ValueError("output_price_per_million cannot be negative")

    @property
    def key(self) -> str:
        return price_key(self.provider, self.model_id)


def price_key(provider: str, model_id: str) -> str:
    """Catalog lookup key for a provider model."""
    return f"{provider}:{model_id}"


def scope_key(value: Optional[str]) -> str:
    """Non-null stand-in for an optional id inside unique keys.

    SQLite treats NULLs as distinct in UNIQUE constraints, so nullable
    scope ids are mirrored into NOT NULL key columns.
    """
    return value if value is not None else ""


def from_scope_key(value: str) -> Optional[str]:
    return value or None
