"""Executes LLM tool calls for one report request.

The executor owns the in-progress ``ReportDraft`` for the lifetime of a request.
Tool failures never raise out of ``execute_batch``: they come back as
``{"success": False, "error": ...}`` so the model can adapt and retry.
"""
from __future__ import annotations

import asyncio
import json
import math
import time
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, assert_never

from pydantic import ValidationError

from report_agent.core.errors import DataQueryError, ToolInputError
from report_agent.core.logging import logger
from report_agent.models.report import (
    VALID_CHART_TYPES,
    VALID_MAP_TYPES,
    VALID_SECTION_TYPES,
    AccessPolicy,
    DateRange,
    LearningExtraction,
    ReportDraft,
    ReportSection,
    ToolExecution,
)
from report_agent.models.tools import (
    READ_ONLY_TOOLS,
    AddSectionInput,
    AggregateInput,
    AskClarificationInput,
    CreateReportDraftInput,
    DetectAnomaliesInput,
    DiscoverFieldsInput,
    DiscoverJoinsInput,
    DiscoverTablesInput,
    ExploreFieldInput,
    FinalizeReportInput,
    GetCustomerMemoryInput,
    LearnPreferenceInput,
    LearnTerminologyInput,
    ModifySectionInput,
    PreviewAggregationInput,
    PreviewReportInput,
    QueryTableInput,
    QueryWithJoinInput,
    RecordCorrectionInput,
    RemoveSectionInput,
    ReorderSectionsInput,
    SearchTextInput,
    SetReportMetadataInput,
    SuggestVisualizationInput,
    ToolCall,
    canonical_tool_name,
    parse_tool_call,
)
from report_agent.services.learning import (
    AUTO_ACTIVATE_CONFIDENCE,
    KnowledgeStore,
    confidence_score,
    correction_key,
    normalize_key,
)
from report_agent.services.query_service import DataQueryService, QueryScope
from report_agent.services.sanitizer import find_restricted_fields


ANOMALY_THRESHOLDS = {"high": 1.5, "medium": 2.0, "low": 3.0}
GEO_SUFFIXES = ("_state", "_city", "_zip", "_country")


def assess_data_quality(populated_percent: float) -> str:
    if populated_percent >= 95:
        return "excellent"
    if populated_percent >= 80:
        return "good"
    if populated_percent >= 50:
        return "moderate"
    return "poor"


def field_recommendation(populated_percent: float, unique_count: int) -> str:
    if populated_percent < 50:
        return f"Low coverage ({populated_percent}%) - consider using a different field"
    if unique_count == 1:
        return "Single value - not useful for grouping"
    if unique_count > 100:
        return "High cardinality - consider filtering"
    return "Good for analysis"


def assess_grouping_quality(result_count: int, total_groups: int) -> str:
    if result_count == 0:
        return "no_data"
    if total_groups <= 5:
        return "excellent"
    if total_groups <= 15:
        return "good"
    if total_groups <= 50:
        return "moderate"
    return "high_cardinality"


def suggest_chart(total_groups: int) -> str:
    if total_groups <= 5:
        return "pie or donut chart"
    if total_groups <= 10:
        return "bar chart"
    if total_groups <= 20:
        return "horizontal bar chart"
    return "table or filtered chart"


def section_insight(section_type: str, rows: Sequence[Dict[str, Any]], title: Optional[str] = None) -> str:
    if not rows:
        return ""
    total = sum(float(row.get("value") or 0) for row in rows)
    top = rows[0]
    top_percent = f"{float(top.get('value') or 0) / total * 100:.1f}" if total > 0 else "0"
    return f"{top.get('name')} leads with {top_percent}% of {title or section_type}"


def resolve_date_range(kind: str, today: Optional[date] = None) -> DateRange:
    today = today or date.today()
    offsets = {"last7": 7, "last30": 30, "last90": 90, "last6months": 182, "lastYear": 365}
    if kind == "all":
        return DateRange(type=kind)
    if kind == "ytd":
        start = date(today.year, 1, 1)
    else:
        start = today - timedelta(days=offsets.get(kind, 30))
    return DateRange(type=kind, start=start.isoformat(), end=today.isoformat())


def _section_metric(config: Dict[str, Any]) -> Tuple[Optional[str], str]:
    metric = config.get("metric")
    if isinstance(metric, dict):
        return metric.get("field"), metric.get("aggregation") or config.get("aggregation") or "sum"
    if isinstance(metric, str):
        return metric, config.get("aggregation") or "sum"
    return None, "sum"


def _referenced_fields(config: Dict[str, Any]) -> List[str]:
    fields: List[str] = []
    group_by = config.get("groupBy")
    if isinstance(group_by, str):
        fields.append(group_by)
    metric_field, _ = _section_metric(config)
    if metric_field:
        fields.append(metric_field)
    for metric in config.get("metrics") or []:
        if isinstance(metric, dict) and isinstance(metric.get("field"), str):
            fields.append(metric["field"])
    return fields


def _is_derived_field(name: str) -> bool:
    return name == "*" or "_per_" in name or name.startswith("calc_")


def validate_report(
    report: Dict[str, Any],
    available_fields: frozenset[str],
    policy: AccessPolicy,
) -> List[str]:
    """Return every reason ``report`` cannot be handed to the caller; empty when valid."""
    errors: List[str] = []
    if not str(report.get("name") or "").strip():
        errors.append("Report name is required")

    sections = report.get("sections")
    if not isinstance(sections, list):
        errors.append("Report sections must be an array")
        sections = []

    for index, section in enumerate(sections):
        if not isinstance(section, dict):
            errors.append(f"Section {index}: must be an object")
            continue
        section_type = section.get("type")
        if section_type not in VALID_SECTION_TYPES:
            errors.append(f"Section {index}: invalid type '{section_type}'")
        config = section.get("config") or {}
        if not isinstance(config, dict):
            errors.append(f"Section {index}: config must be an object")
            continue
        if section_type == "chart" and config.get("chartType") and config["chartType"] not in VALID_CHART_TYPES:
            errors.append(f"Section {index}: invalid chart type '{config['chartType']}'")
        if section_type == "map" and config.get("mapType") and config["mapType"] not in VALID_MAP_TYPES:
            errors.append(f"Section {index}: invalid map type '{config['mapType']}'")
        for field_name in _referenced_fields(config):
            if _is_derived_field(field_name) or policy.is_restricted(field_name):
                continue
            if field_name not in available_fields:
                errors.append(f"Section {index}: unknown field '{field_name}'")

    if not policy.is_admin:
        serialized = json.dumps(report, default=str).lower()
        for field_name in find_restricted_fields(serialized, policy.restricted_fields):
            errors.append(f"Report contains restricted field: {field_name}")
    return errors


class ToolExecutor:
    """Dispatches typed tool calls and owns the request's report draft."""

    def __init__(
        self,
        data: DataQueryService,
        knowledge: KnowledgeStore,
        customer_id: str,
        policy: AccessPolicy,
    ) -> None:
        self.data = data
        self.knowledge = knowledge
        self.customer_id = customer_id
        self.policy = policy
        self.scope = QueryScope(customer_id=customer_id, is_admin=policy.is_admin)
        self.draft: Optional[ReportDraft] = None
        self.final_report: Optional[ReportDraft] = None
        self.clarification: Optional[Dict[str, Any]] = None
        self.executions: List[ToolExecution] = []
        self.learnings: List[LearningExtraction] = []

    async def execute_batch(self, calls: Sequence[Tuple[str, Optional[Dict[str, Any]]]]) -> List[ToolExecution]:
        """Run one turn's tool calls; results come back in call order.

        Consecutive read-only calls run concurrently; anything that touches the
        draft or customer memory runs alone, in order.
        """
        results: List[ToolExecution] = []
        index = 0
        while index < len(calls):
            name, arguments = calls[index]
            if canonical_tool_name(name) not in READ_ONLY_TOOLS:
                results.append(await self._run(name, arguments))
                index += 1
                continue
            end = index
            while end < len(calls) and canonical_tool_name(calls[end][0]) in READ_ONLY_TOOLS:
                end += 1
            results.extend(await asyncio.gather(*(self._run(n, a) for n, a in calls[index:end])))
            index = end
        self.executions.extend(results)
        return results

    async def _run(self, name: str, arguments: Optional[Dict[str, Any]]) -> ToolExecution:
        started = time.perf_counter()
        tool_name = canonical_tool_name(name)
        try:
            call = parse_tool_call(name, arguments)
            result = await self._dispatch(call)
        except (ToolInputError, DataQueryError) as exc:
            result = {"success": False, "error": exc.message}
        except Exception as exc:
            logger.error("Tool execution failed", tool=tool_name, error=str(exc))
            result = {"success": False, "error": str(exc) or "Tool execution failed"}

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "Tool executed",
            tool=tool_name,
            ok=bool(result.get("success")),
            duration_ms=duration_ms,
        )
        return ToolExecution(
            tool_name=tool_name,
            input=dict(arguments) if isinstance(arguments, dict) else {},
            result=result,
            duration_ms=duration_ms,
        )

    async def _dispatch(self, call: ToolCall) -> Dict[str, Any]:
        match call:
            case DiscoverTablesInput():
                return await self._discover_tables(call)
            case DiscoverFieldsInput():
                return await self._discover_fields(call)
            case DiscoverJoinsInput():
                return await self._discover_joins(call)
            case QueryTableInput():
                return await self._query_table(call)
            case SearchTextInput():
                return await self._search_text(call)
            case QueryWithJoinInput():
                return await self._query_with_join(call)
            case AggregateInput():
                return await self._aggregate(call)
            case ExploreFieldInput():
                return await self._explore_field(call)
            case PreviewAggregationInput():
                return await self._preview_aggregation(call)
            case DetectAnomaliesInput():
                return await self._detect_anomalies(call)
            case SuggestVisualizationInput():
                return await self._suggest_visualization(call)
            case CreateReportDraftInput():
                return self._create_report_draft(call)
            case SetReportMetadataInput():
                return self._set_report_metadata(call)
            case AddSectionInput():
                return await self._add_section(call)
            case ModifySectionInput():
                return self._modify_section(call)
            case RemoveSectionInput():
                return self._remove_section(call)
            case ReorderSectionsInput():
                return self._reorder_sections(call)
            case PreviewReportInput():
                return await self._preview_report(call)
            case FinalizeReportInput():
                return self._finalize_report(call)
            case LearnTerminologyInput():
                return self._learn_terminology(call)
            case LearnPreferenceInput():
                return self._learn_preference(call)
            case RecordCorrectionInput():
                return self._record_correction(call)
            case GetCustomerMemoryInput():
                return self._get_customer_memory(call)
            case AskClarificationInput():
                return self._ask_clarification(call)
            case _:
                assert_never(call)

    # Data tools

    async def _discover_tables(self, call: DiscoverTablesInput) -> Dict[str, Any]:
        tables = await self.data.discover_tables(self.scope, call.category, call.include_row_counts)
        return {
            "success": True,
            "tables": tables,
            "count": len(tables),
            "hint": "Use discover_fields(table_name) to see fields",
        }

    async def _discover_fields(self, call: DiscoverFieldsInput) -> Dict[str, Any]:
        fields = await self.data.discover_fields(self.scope, call.table_name, call.include_samples)
        return {
            "success": True,
            "table_name": call.table_name,
            "field_count": len(fields),
            "fields": fields,
            "summary": {
                "groupable_fields": [item["field_name"] for item in fields if item.get("is_groupable")],
                "aggregatable_fields": [item["field_name"] for item in fields if item.get("is_aggregatable")],
                "searchable_fields": [item["field_name"] for item in fields if item.get("is_searchable")],
            },
            "hint": "Use query_table() to query this table",
        }

    async def _discover_joins(self, call: DiscoverJoinsInput) -> Dict[str, Any]:
        joins = await self.data.discover_joins(self.scope, call.table_name)
        return {
            "success": True,
            "table_name": call.table_name,
            "joins": joins,
            "join_count": len(joins),
            "hint": "Use query_with_join() for multi-table queries",
        }

    async def _query_table(self, call: QueryTableInput) -> Dict[str, Any]:
        result = await self.data.query_table(
            self.scope,
            table_name=call.table_name,
            select=call.select,
            filters=[item.model_dump() for item in call.filters],
            group_by=call.group_by,
            aggregations=[item.model_dump() for item in call.aggregations],
            order_by=call.order_by,
            order_dir=call.order_dir,
            limit=call.limit,
        )
        return {"success": True, "table": call.table_name, **result}

    async def _search_text(self, call: SearchTextInput) -> Dict[str, Any]:
        result = await self.data.search_text(
            self.scope,
            query=call.query,
            tables=call.tables,
            fields=call.fields,
            match_type=call.match_type,
            limit=call.limit,
        )
        matches = result.get("results") or []
        hint = (
            f"Found in {len(matches)} field(s). Use query_table() with filters."
            if matches
            else "No matches. Try different term."
        )
        return {"success": True, "query": call.query, **result, "hint": hint}

    async def _query_with_join(self, call: QueryWithJoinInput) -> Dict[str, Any]:
        result = await self.data.query_with_join(
            self.scope,
            base_table=call.base_table,
            joins=[item.model_dump() for item in call.joins],
            select=call.select,
            filters=[item.model_dump() for item in call.filters],
            group_by=call.group_by,
            aggregations=[item.model_dump() for item in call.aggregations],
            order_by=call.order_by,
            limit=call.limit,
        )
        return {"success": True, "base_table": call.base_table, **result}

    async def _aggregate(self, call: AggregateInput) -> Dict[str, Any]:
        result = await self.data.aggregate(
            self.scope,
            table_name=call.table_name,
            group_by=call.group_by,
            metric=call.metric,
            aggregation=call.aggregation,
            filters=[item.model_dump() for item in call.filters],
            limit=call.limit,
        )
        return {"success": True, **result}

    async def _explore_field(self, call: ExploreFieldInput) -> Dict[str, Any]:
        result = await self.data.explore_field(self.scope, call.field_name, call.sample_size)
        total = int(result.get("total_count") or 0)
        populated = int(result.get("populated_count") or 0)
        unique = int(result.get("unique_count") or 0)
        populated_percent = round(populated / total * 100) if total > 0 else 0
        return {
            "success": True,
            **result,
            "populated_percent": populated_percent,
            "data_quality": assess_data_quality(populated_percent),
            "recommendation": field_recommendation(populated_percent, unique),
        }

    async def _preview_aggregation(self, call: PreviewAggregationInput) -> Dict[str, Any]:
        result = await self.data.preview_grouping(
            self.scope, call.group_by, call.metric, call.aggregation, call.limit
        )
        rows = result.get("results") or []
        total_groups = int(result.get("total_groups") or len(rows))
        return {
            "success": True,
            **result,
            "quality": assess_grouping_quality(len(rows), total_groups),
            "visualization_suggestion": suggest_chart(total_groups),
            "warning": (
                f"High cardinality ({total_groups} groups) - consider limiting or filtering"
                if total_groups > 20
                else None
            ),
        }

    async def _detect_anomalies(self, call: DetectAnomaliesInput) -> Dict[str, Any]:
        threshold = ANOMALY_THRESHOLDS[call.sensitivity]
        result = await self.data.aggregate(
            self.scope,
            table_name=call.table_name,
            group_by=call.group_by,
            metric=call.metric,
            aggregation="avg",
            limit=50,
        )
        rows = result.get("data") or []
        if not rows:
            return {"success": True, "metric": call.metric, "group_by": call.group_by, "anomalies": [], "anomaly_count": 0}

        values = [float(row.get("value") or 0) for row in rows]
        mean = sum(values) / len(values)
        stddev = math.sqrt(sum((value - mean) ** 2 for value in values) / len(values))
        anomalies = []
        if stddev > 0:
            for row, value in zip(rows, values):
                if abs(value - mean) > threshold * stddev:
                    anomalies.append(
                        {
                            **row,
                            "deviation": round((value - mean) / stddev, 2),
                            "direction": "high" if value > mean else "low",
                        }
                    )
        return {
            "success": True,
            "metric": call.metric,
            "group_by": call.group_by,
            "statistics": {"mean": round(mean, 2), "stddev": round(stddev, 2), "threshold": threshold},
            "anomalies": anomalies,
            "anomaly_count": len(anomalies),
        }

    async def _suggest_visualization(self, call: SuggestVisualizationInput) -> Dict[str, Any]:
        preview = await self.data.preview_grouping(
            self.scope, call.group_by, call.metric or "*", call.aggregation if call.metric else "count", 100
        )
        total_groups = int(preview.get("total_groups") or 0)
        group_by = call.group_by.lower()
        if "date" in group_by or group_by.endswith(("_month", "_week", "_day")):
            section_type, chart_type, reason = "chart", "line", "Time series reads best as a line"
        elif group_by.endswith(GEO_SUFFIXES):
            section_type, chart_type, reason = "map", "choropleth", "Geographic grouping suits a map"
        else:
            suggestion = suggest_chart(total_groups)
            section_type = "table" if total_groups > 20 else "chart"
            chart_type = "pie" if total_groups <= 5 else "bar"
            reason = f"{total_groups} groups: {suggestion}"
        return {
            "success": True,
            "group_by": call.group_by,
            "total_groups": total_groups,
            "section_type": section_type,
            "chart_type": chart_type,
            "reason": reason,
        }

    # Report construction

    def _new_draft(self, name: str, description: Optional[str] = None, theme: str = "blue", date_range: str = "last30") -> ReportDraft:
        self.draft = ReportDraft(
            name=name,
            description=description,
            theme=theme,
            date_range=resolve_date_range(date_range),
            customer_id=self.customer_id,
        )
        return self.draft

    def _create_report_draft(self, call: CreateReportDraftInput) -> Dict[str, Any]:
        draft = self._new_draft(call.name or "Untitled Report", call.description, call.theme, call.date_range)
        return {"success": True, "report_id": draft.id, "message": f'Created: "{draft.name}"'}

    def _set_report_metadata(self, call: SetReportMetadataInput) -> Dict[str, Any]:
        draft = self.draft or self._new_draft("Generated Report")
        if call.name:
            draft.name = call.name
        if call.description is not None:
            draft.description = call.description
        if call.theme:
            draft.theme = call.theme
        if call.date_range:
            draft.date_range = resolve_date_range(call.date_range)
        return {
            "success": True,
            "report_id": draft.id,
            "name": draft.name,
            "theme": draft.theme,
            "date_range": draft.date_range.model_dump(exclude_none=True),
        }

    async def _populate_section(self, section: ReportSection) -> Optional[str]:
        group_by = section.config.get("groupBy")
        metric_field, aggregation = _section_metric(section.config)
        if not isinstance(group_by, str) or not metric_field:
            return None
        try:
            preview = await self._preview_aggregation(
                PreviewAggregationInput(group_by=group_by, metric=metric_field, aggregation=aggregation, limit=10)
            )
        except DataQueryError as exc:
            return exc.message
        except ValidationError:
            return f"Unsupported aggregation '{aggregation}'"
        rows = preview.get("results") or []
        section.data = rows
        section.insight = section_insight(section.type, rows, section.title) or None
        return None

    async def _add_section(self, call: AddSectionInput) -> Dict[str, Any]:
        draft = self.draft or self._new_draft("Generated Report")
        section = ReportSection(type=call.section_type.value, title=call.title, config=dict(call.config))
        preview_error = await self._populate_section(section)
        draft.sections.append(section)
        result: Dict[str, Any] = {
            "success": True,
            "section_index": len(draft.sections) - 1,
            "total_sections": len(draft.sections),
            "has_data": section.data is not None,
            "insight": section.insight,
        }
        if preview_error:
            result["preview_error"] = preview_error
        return result

    def _modify_section(self, call: ModifySectionInput) -> Dict[str, Any]:
        if self.draft is None:
            return {"success": False, "error": "No report draft"}
        if call.section_index >= len(self.draft.sections):
            return {"success": False, "error": "Invalid index"}
        current = self.draft.sections[call.section_index].model_dump(by_alias=True)
        try:
            updated = ReportSection.model_validate({**current, **call.updates})
        except ValidationError as exc:
            return {"success": False, "error": f"Invalid section update: {exc.errors()[0].get('msg')}"}
        self.draft.sections[call.section_index] = updated
        return {"success": True, "section_index": call.section_index}

    def _remove_section(self, call: RemoveSectionInput) -> Dict[str, Any]:
        if self.draft is None:
            return {"success": False, "error": "No report draft"}
        if call.section_index >= len(self.draft.sections):
            return {"success": False, "error": "Invalid index"}
        del self.draft.sections[call.section_index]
        return {"success": True, "remaining": len(self.draft.sections)}

    def _reorder_sections(self, call: ReorderSectionsInput) -> Dict[str, Any]:
        if self.draft is None:
            return {"success": False, "error": "No report draft"}
        if sorted(call.new_order) != list(range(len(self.draft.sections))):
            return {"success": False, "error": "New order must include all section indices"}
        self.draft.sections = [self.draft.sections[index] for index in call.new_order]
        return {"success": True, "new_order": call.new_order}

    async def _preview_report(self, call: PreviewReportInput) -> Dict[str, Any]:
        if self.draft is None:
            return {"success": False, "error": "No report draft"}
        for section in self.draft.sections:
            if section.data is None:
                await self._populate_section(section)
        return {
            "success": True,
            "report_name": self.draft.name,
            "theme": self.draft.theme,
            "total_sections": len(self.draft.sections),
            "sections": [
                {"index": index, "type": section.type, "title": section.title, "has_data": section.data is not None}
                for index, section in enumerate(self.draft.sections)
            ],
            "ready_to_finalize": True,
        }

    def _finalize_report(self, call: FinalizeReportInput) -> Dict[str, Any]:
        if call.report is not None:
            report = dict(call.report)
        elif self.draft is not None:
            report = self.draft.model_dump(mode="json", by_alias=True)
        else:
            return {"success": False, "error": "No report provided and no draft exists"}

        report.setdefault("id", self.draft.id if self.draft else None)
        report["customerId"] = self.customer_id

        errors = validate_report(report, self.data.available_fields(self.scope), self.policy)
        finalized: Optional[ReportDraft] = None
        if not errors:
            try:
                finalized = ReportDraft.model_validate({key: value for key, value in report.items() if value is not None})
            except ValidationError as exc:
                errors.append(f"Report structure invalid: {exc.errors()[0].get('msg')}")

        valid = not errors
        if finalized is not None and valid:
            self.final_report = finalized
            report = finalized.model_dump(mode="json", by_alias=True)
        else:
            logger.info("Report failed validation", customer_id=self.customer_id, errors=errors)

        return {
            "success": valid,
            "report": report,
            "summary": call.summary,
            "validation": {"valid": valid, "errors": errors},
            "ready_to_save": valid,
        }

    # Customer memory

    def _learn_terminology(self, call: LearnTerminologyInput) -> Dict[str, Any]:
        score = confidence_score(call.confidence)
        self.knowledge.upsert_knowledge(
            customer_id=self.customer_id,
            knowledge_type="term",
            key=normalize_key(call.term),
            label=call.term,
            definition=call.meaning,
            source="learned",
            confidence=score,
            needs_review=score < AUTO_ACTIVATE_CONFIDENCE,
            is_active=score >= AUTO_ACTIVATE_CONFIDENCE,
            metadata={"maps_to_field": call.maps_to_field, "maps_to_filter": call.maps_to_filter},
        )
        self.learnings.append(
            LearningExtraction(
                type="terminology",
                key=normalize_key(call.term),
                value=call.meaning,
                confidence=score,
                source="tool",
                maps_to_field=call.maps_to_field,
            )
        )
        return {
            "success": True,
            "term": call.term,
            "meaning": call.meaning,
            "message": f'Learned: "{call.term}" = "{call.meaning}"',
        }

    def _learn_preference(self, call: LearnPreferenceInput) -> Dict[str, Any]:
        key = normalize_key(f"{call.preference_type}:{call.key}", keep=":")
        score = confidence_score(call.confidence)
        self.knowledge.upsert_knowledge(
            customer_id=self.customer_id,
            knowledge_type="preference",
            key=key,
            label=f"{call.preference_type}: {call.key}",
            definition=call.value,
            source="learned",
            confidence=score,
            needs_review=score < AUTO_ACTIVATE_CONFIDENCE,
            is_active=score >= AUTO_ACTIVATE_CONFIDENCE,
            metadata={"preference_type": call.preference_type, "context": call.context},
        )
        self.learnings.append(
            LearningExtraction(type="preference", key=key, value=call.value, confidence=score, source="tool")
        )
        return {"success": True, "message": f"Learned preference: {call.key} = {call.value}"}

    def _record_correction(self, call: RecordCorrectionInput) -> Dict[str, Any]:
        key = correction_key()
        self.knowledge.upsert_knowledge(
            customer_id=self.customer_id,
            knowledge_type="correction",
            key=key,
            label=f"Correction: {call.original[:50]}",
            definition=call.corrected,
            source="correction",
            confidence=1.0,
            needs_review=True,
            is_active=False,
            metadata={"original": call.original, "corrected": call.corrected, "context": call.context},
        )
        self.learnings.append(
            LearningExtraction(type="correction", key=key, value=call.corrected, confidence=1.0, source="tool")
        )
        return {
            "success": True,
            "original": call.original,
            "corrected": call.corrected,
            "message": "Correction recorded for review",
        }

    def _get_customer_memory(self, call: GetCustomerMemoryInput) -> Dict[str, Any]:
        items = self.knowledge.list_knowledge(self.customer_id)
        memory: Dict[str, Any] = {}
        if call.include_terminology:
            memory["terminology"] = [item for item in items if item["knowledge_type"] == "term"]
        if call.include_preferences:
            memory["preferences"] = [item for item in items if item["knowledge_type"] == "preference"]
        if call.include_history:
            memory["corrections"] = [item for item in items if item["knowledge_type"] == "correction"]
        return {"success": True, "customer_id": self.customer_id, "memory": memory, "total_items": len(items)}

    def _ask_clarification(self, call: AskClarificationInput) -> Dict[str, Any]:
        self.clarification = {"question": call.question, "options": list(call.options), "context": call.context}
        return {"success": True, **self.clarification}
