"""Typed tool-call inputs exposed to the report-building LLM.

Each tool is one pydantic model tagged by a ``tool`` literal; together they form
the ``ToolCall`` discriminated union the executor matches on. The JSON schemas
sent to the model are generated from the same classes.
"""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from report_agent.core.errors import ToolInputError
from report_agent.models.report import SectionType


Aggregation = Literal["sum", "avg", "count", "min", "max"]
Theme = Literal["blue", "green", "orange", "purple", "red", "teal", "slate"]
DateRangeType = Literal["last7", "last30", "last90", "last6months", "ytd", "lastYear", "all"]
Confidence = Literal["high", "medium", "low"]


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class QueryFilter(BaseModel):
    field: str = Field(min_length=1)
    operator: Literal["eq", "neq", "gt", "gte", "lt", "lte", "contains", "in"] = "eq"
    value: Any = None


class AggregationSpec(BaseModel):
    field: str = Field(min_length=1)
    function: Aggregation = "sum"
    alias: Optional[str] = None


class JoinSpec(BaseModel):
    table: str = Field(min_length=1)
    type: Literal["left", "inner"] = "left"
    on: Optional[str] = None


# Data discovery and querying

class DiscoverTablesInput(ToolInput):
    """List available tables. Call first to see what data exists."""

    tool: Literal["discover_tables"] = "discover_tables"
    category: Optional[Literal["core", "reference", "analytics"]] = None
    include_row_counts: bool = False


class DiscoverFieldsInput(ToolInput):
    """Get all fields for a table with types and whether they can be grouped or aggregated."""

    tool: Literal["discover_fields"] = "discover_fields"
    table_name: str = Field(min_length=1, description="Table name, e.g. 'shipment'")
    include_samples: bool = True


class DiscoverJoinsInput(ToolInput):
    """Get relationships between tables."""

    tool: Literal["discover_joins"] = "discover_joins"
    table_name: str = Field(min_length=1)


class QueryTableInput(ToolInput):
    """Query a table with filters, grouping and aggregation. Customer filtering is automatic."""

    tool: Literal["query_table"] = "query_table"
    table_name: str = Field(min_length=1)
    select: List[str] = Field(default_factory=lambda: ["*"])
    filters: List[QueryFilter] = Field(default_factory=list)
    group_by: List[str] = Field(default_factory=list)
    aggregations: List[AggregationSpec] = Field(default_factory=list)
    order_by: Optional[str] = None
    order_dir: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=100, ge=1, le=1000)


class SearchTextInput(ToolInput):
    """Search for text across tables. Returns the fields where matches were found."""

    tool: Literal["search_text"] = "search_text"
    query: str = Field(min_length=1)
    tables: Optional[List[str]] = None
    fields: Optional[List[str]] = None
    match_type: Literal["contains", "exact", "starts_with"] = "contains"
    limit: int = Field(default=50, ge=1, le=500)


class QueryWithJoinInput(ToolInput):
    """Query across multiple tables with joins."""

    tool: Literal["query_with_join"] = "query_with_join"
    base_table: str = Field(min_length=1)
    joins: List[JoinSpec] = Field(min_length=1)
    select: List[str] = Field(default_factory=lambda: ["*"])
    filters: List[QueryFilter] = Field(default_factory=list)
    group_by: List[str] = Field(default_factory=list)
    aggregations: List[AggregationSpec] = Field(default_factory=list)
    order_by: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)


class AggregateInput(ToolInput):
    """Simple group-by aggregation."""

    tool: Literal["aggregate"] = "aggregate"
    table_name: str = Field(min_length=1)
    group_by: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    aggregation: Aggregation
    filters: List[QueryFilter] = Field(default_factory=list)
    limit: int = Field(default=20, ge=1, le=500)


class ExploreFieldInput(ToolInput):
    """Inspect one field: sample values, coverage, cardinality and a data-quality rating."""

    tool: Literal["explore_field"] = "explore_field"
    field_name: str = Field(min_length=1, validation_alias=AliasChoices("field_name", "field"))
    sample_size: int = Field(default=15, ge=1, le=100)


class PreviewAggregationInput(ToolInput):
    """Preview grouped results before adding a section; suggests a chart type."""

    tool: Literal["preview_aggregation"] = "preview_aggregation"
    group_by: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    aggregation: Aggregation = "sum"
    limit: int = Field(default=15, ge=1, le=100)


class DetectAnomaliesInput(ToolInput):
    """Flag groups whose average metric deviates from the mean by more than the sensitivity threshold."""

    tool: Literal["detect_anomalies"] = "detect_anomalies"
    metric: str = Field(min_length=1)
    group_by: str = "carrier_name"
    sensitivity: Literal["high", "medium", "low"] = "medium"
    table_name: str = "shipment"


class SuggestVisualizationInput(ToolInput):
    """Recommend a chart type for a grouping."""

    tool: Literal["suggest_visualization"] = "suggest_visualization"
    group_by: str = Field(min_length=1)
    metric: Optional[str] = None
    aggregation: Aggregation = "sum"


# Report construction

class CreateReportDraftInput(ToolInput):
    """Start a new report draft, replacing any existing one."""

    tool: Literal["create_report_draft"] = "create_report_draft"
    name: str = "Untitled Report"
    description: Optional[str] = None
    theme: Theme = "blue"
    date_range: DateRangeType = "last30"


class SetReportMetadataInput(ToolInput):
    """Update the draft's name, description, theme or date range."""

    tool: Literal["set_report_metadata"] = "set_report_metadata"
    name: Optional[str] = None
    description: Optional[str] = None
    theme: Optional[Theme] = None
    date_range: Optional[DateRangeType] = None


class AddSectionInput(ToolInput):
    """Add a section. A config with groupBy and metric is previewed immediately and given an insight."""

    tool: Literal["add_section"] = "add_section"
    section_type: SectionType
    title: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class ModifySectionInput(ToolInput):
    """Merge updates into an existing section."""

    tool: Literal["modify_section"] = "modify_section"
    section_index: int = Field(ge=0)
    updates: Dict[str, Any] = Field(default_factory=dict)


class RemoveSectionInput(ToolInput):
    """Remove a section by index."""

    tool: Literal["remove_section"] = "remove_section"
    section_index: int = Field(ge=0)


class ReorderSectionsInput(ToolInput):
    """Reorder sections; new_order must list every current index exactly once."""

    tool: Literal["reorder_sections"] = "reorder_sections"
    new_order: List[int]


class PreviewReportInput(ToolInput):
    """Fill in missing section data and summarize the draft."""

    tool: Literal["preview_report"] = "preview_report"


class FinalizeReportInput(ToolInput):
    """Validate and return the finished report. Uses the current draft when no report is given."""

    tool: Literal["finalize_report"] = "finalize_report"
    report: Optional[Dict[str, Any]] = None
    summary: str = ""


# Customer memory

class LearnTerminologyInput(ToolInput):
    """Remember what a customer means by a term."""

    tool: Literal["learn_terminology"] = "learn_terminology"
    term: str = Field(min_length=1, validation_alias=AliasChoices("term", "key"))
    meaning: str = Field(min_length=1, validation_alias=AliasChoices("meaning", "value"))
    confidence: Confidence = "medium"
    maps_to_field: Optional[str] = None
    maps_to_filter: Optional[str] = None


class LearnPreferenceInput(ToolInput):
    """Remember a customer preference, such as a favourite chart type."""

    tool: Literal["learn_preference"] = "learn_preference"
    preference_type: str = Field(min_length=1)
    key: str = Field(min_length=1)
    value: str = Field(min_length=1)
    confidence: Confidence = "high"
    context: Optional[str] = None


class RecordCorrectionInput(ToolInput):
    """Record a user correction for human review."""

    tool: Literal["record_correction"] = "record_correction"
    original: str = Field(min_length=1)
    corrected: str = Field(min_length=1)
    context: Optional[str] = None


class GetCustomerMemoryInput(ToolInput):
    """Load what has been learned about this customer."""

    tool: Literal["get_customer_memory"] = "get_customer_memory"
    include_terminology: bool = True
    include_preferences: bool = True
    include_history: bool = False


class AskClarificationInput(ToolInput):
    """Ask the user a clarifying question and stop."""

    tool: Literal["ask_clarification"] = "ask_clarification"
    question: str = Field(min_length=1)
    options: List[str] = Field(default_factory=list)
    context: Optional[str] = None


ToolCall = Annotated[
    Union[
        DiscoverTablesInput,
        DiscoverFieldsInput,
        DiscoverJoinsInput,
        QueryTableInput,
        SearchTextInput,
        QueryWithJoinInput,
        AggregateInput,
        ExploreFieldInput,
        PreviewAggregationInput,
        DetectAnomaliesInput,
        SuggestVisualizationInput,
        CreateReportDraftInput,
        SetReportMetadataInput,
        AddSectionInput,
        ModifySectionInput,
        RemoveSectionInput,
        ReorderSectionsInput,
        PreviewReportInput,
        FinalizeReportInput,
        LearnTerminologyInput,
        LearnPreferenceInput,
        RecordCorrectionInput,
        GetCustomerMemoryInput,
        AskClarificationInput,
    ],
    Field(discriminator="tool"),
]

TOOL_MODELS: Dict[str, type[ToolInput]] = {
    model.model_fields["tool"].default: model
    for model in get_args(get_args(ToolCall)[0])
}
TOOL_NAMES = frozenset(TOOL_MODELS)

TOOL_ALIASES = {
    "preview_grouping": "preview_aggregation",
    "emit_learning": "learn_terminology",
}

# Tools that only read customer data; consecutive runs of these may execute concurrently.
READ_ONLY_TOOLS = frozenset(
    {
        "discover_tables",
        "discover_fields",
        "discover_joins",
        "query_table",
        "search_text",
        "query_with_join",
        "aggregate",
        "explore_field",
        "preview_aggregation",
        "detect_anomalies",
        "suggest_visualization",
        "get_customer_memory",
    }
)

_TOOL_ADAPTER: TypeAdapter = TypeAdapter(ToolCall)


def canonical_tool_name(name: str) -> str:
    name = (name or "").strip()
    return TOOL_ALIASES.get(name, name)


def _describe_validation_error(tool_name: str, exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        parts = list(error.get("loc", ()))
        # Discriminated-union errors are prefixed with the tag.
        if parts and parts[0] == tool_name:
            parts = parts[1:]
        loc = ".".join(str(part) for part in parts if part != "tool")
        if error.get("type") == "missing":
            messages.append(f"{loc} is required")
        elif loc:
            messages.append(f"{loc}: {error.get('msg')}")
        else:
            messages.append(str(error.get("msg")))
    return "; ".join(messages) or "invalid input"


def parse_tool_call(name: str, arguments: Optional[Dict[str, Any]]) -> ToolCall:
    """Validate raw LLM tool arguments into the typed input for ``name``."""
    tool_name = canonical_tool_name(name)
    if tool_name not in TOOL_NAMES:
        raise ToolInputError(name, f"Unknown tool: {name}")
    if arguments is not None and not isinstance(arguments, dict):
        raise ToolInputError(tool_name, "Tool arguments must be a JSON object")

    payload = dict(arguments or {})
    payload["tool"] = tool_name
    try:
        return _TOOL_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ToolInputError(tool_name, _describe_validation_error(tool_name, exc)) from exc


def _parameters_schema(model: type[ToolInput]) -> Dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    description = schema.pop("description", "")
    properties = schema.get("properties", {})
    properties.pop("tool", None)
    for prop in properties.values():
        prop.pop("title", None)
    required = [item for item in schema.get("required", []) if item != "tool"]
    if required:
        schema["required"] = required
    else:
        schema.pop("required", None)
    schema["properties"] = properties
    return {"description": description, "parameters": schema}


def tool_definitions() -> List[Dict[str, Any]]:
    """OpenAI-style function tool definitions for every canonical tool."""
    definitions: List[Dict[str, Any]] = []
    for name, model in TOOL_MODELS.items():
        generated = _parameters_schema(model)
        definitions.append(
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": generated["description"],
                    "parameters": generated["parameters"],
                },
            }
        )
    return definitions
