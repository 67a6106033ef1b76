"""Domain and API models for AI report generation."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for payloads exchanged with the UI (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SectionType(str, Enum):
    """Section kinds the report renderer understands."""

    HERO = "hero"
    STAT_ROW = "stat-row"
    CATEGORY_GRID = "category-grid"
    CHART = "chart"
    TABLE = "table"
    HEADER = "header"
    MAP = "map"


VALID_SECTION_TYPES = frozenset(item.value for item in SectionType)
VALID_CHART_TYPES = frozenset(
    {
        "bar", "line", "pie", "treemap", "radar", "area", "scatter",
        "bump", "funnel", "heatmap", "calendar", "waterfall",
    }
)
VALID_MAP_TYPES = frozenset({"choropleth", "flow", "cluster", "arc"})


class ConversationMessage(CamelModel):
    """One entry in the running transcript."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Literal["user", "assistant"]
    content: str


class ToolExecution(CamelModel):
    """Audit record for a single tool invocation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    result: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    duration_ms: float = 0.0


class DateRange(CamelModel):
    type: str = "last30"
    start: Optional[str] = None
    end: Optional[str] = None


class ReportSection(CamelModel):
    """A single block of the report; managed only through section tools."""

    type: str
    title: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    data: Optional[Any] = None
    insight: Optional[str] = None


class ReportDraft(CamelModel):
    """Report under construction for one request."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Untitled Report"
    description: Optional[str] = None
    theme: str = "blue"
    date_range: DateRange = Field(default_factory=DateRange)
    sections: List[ReportSection] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    customer_id: str = ""


class LearningExtraction(CamelModel):
    """Something learned about a customer's vocabulary or preferences."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: Literal["terminology", "product", "preference", "correction"]
    key: str
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    source: str = "explicit"
    maps_to_field: Optional[str] = None


class AccessPolicy(BaseModel):
    """What the current caller may see; fixed for the whole request."""

    model_config = ConfigDict(frozen=True)

    is_admin: bool
    restricted_fields: FrozenSet[str] = frozenset()

    def is_restricted(self, field_name: str) -> bool:
        if self.is_admin:
            return False
        return str(field_name or "").strip().lower() in self.restricted_fields


class GenerateReportRequest(CamelModel):
    """Request payload for one conversational report turn."""

    prompt: str = Field(min_length=1)
    conversation_history: List[ConversationMessage] = Field(default_factory=list)
    customer_id: Optional[str] = None
    is_admin: Optional[bool] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    use_tools: bool = True


class UsageSummary(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: float = 0.0


class GenerateReportResponse(CamelModel):
    """Successful (possibly degraded) result of a report request."""

    report: Optional[ReportDraft] = None
    message: str
    tool_executions: List[ToolExecution] = Field(default_factory=list)
    learnings: Optional[List[LearningExtraction]] = None
    needs_clarification: Optional[bool] = None
    clarification_options: Optional[List[str]] = None
    outcome: str = "success"
    usage: UsageSummary = Field(default_factory=UsageSummary)


class RateLimitStatus(CamelModel):
    """Outcome of a rate-limit check across all windows."""

    allowed: bool
    limit_type: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    remaining: Dict[str, int] = Field(default_factory=dict)


class CircuitStatus(CamelModel):
    state: str
    recent_failures: int
    retry_after_seconds: float


class KnowledgeItem(CamelModel):
    """Row from the learned-knowledge store."""

    knowledge_id: int
    customer_id: str
    knowledge_type: str
    key: str
    label: str
    definition: str
    source: str
    confidence: float
    needs_review: bool
    is_active: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[str] = None
