"""Tests for tool dispatch, draft mutation and finalize validation."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from report_agent.models.report import AccessPolicy  # noqa: E402
from report_agent.services.learning import extract_learnings, persist_learnings  # noqa: E402
from report_agent.services.sanitizer import DEFAULT_RESTRICTED_FIELDS  # noqa: E402
from report_agent.services.shipment_dataset import DemoShipmentDataset  # noqa: E402
from report_agent.services.state_store import StateStore  # noqa: E402
from report_agent.services.tool_executor import ToolExecutor  # noqa: E402


DATASET = DemoShipmentDataset(seed=7, rows_per_customer=400)
COST_REPORT = {
    "name": "Average cost by carrier",
    "sections": [
        {
            "type": "chart",
            "title": "Average cost by carrier",
            "config": {"chartType": "bar", "groupBy": "carrier_name", "metric": {"field": "cost", "aggregation": "avg"}},
        }
    ],
}


@pytest.fixture()
def store(tmp_path):
    state = StateStore(str(tmp_path / "executor.db"))
    yield state
    state.close()


def _executor(store: StateStore, is_admin: bool = False) -> ToolExecutor:
    policy = AccessPolicy(is_admin=is_admin, restricted_fields=DEFAULT_RESTRICTED_FIELDS)
    return ToolExecutor(DATASET, store, "1001", policy)


def _run(executor: ToolExecutor, name: str, arguments=None) -> dict:
    return asyncio.run(executor.execute_batch([(name, arguments)]))[0].result


def test_finalize_rejects_restricted_field_for_customer(store):
    executor = _executor(store)
    result = _run(executor, "finalize_report", {"report": COST_REPORT, "summary": "Average cost"})

    assert result["success"] is False
    assert result["validation"]["valid"] is False
    assert result["validation"]["errors"] == ["Report contains restricted field: cost"]
    assert executor.final_report is None


def test_finalize_accepts_same_report_for_admin(store):
    executor = _executor(store, is_admin=True)
    result = _run(executor, "finalize_report", {"report": COST_REPORT, "summary": "Average cost"})

    assert result["success"] is True
    assert result["ready_to_save"] is True
    assert executor.final_report is not None
    assert executor.final_report.customer_id == "1001"
    assert executor.final_report.sections[0].config["metric"]["field"] == "cost"


def test_finalize_reports_structural_errors(store):
    executor = _executor(store, is_admin=True)
    report = {
        "name": "",
        "sections": [
            {"type": "chart", "config": {"chartType": "donut", "groupBy": "bogus_field", "metric": "retail"}},
            {"type": "sparkline", "config": {}},
            {"type": "map", "config": {"mapType": "globe"}},
        ],
    }
    errors = _run(executor, "finalize_report", {"report": report})["validation"]["errors"]

    assert "Report name is required" in errors
    assert "Section 0: invalid chart type 'donut'" in errors
    assert "Section 0: unknown field 'bogus_field'" in errors
    assert "Section 1: invalid type 'sparkline'" in errors
    assert "Section 2: invalid map type 'globe'" in errors
    assert executor.final_report is None


def test_finalize_without_report_or_draft_fails(store):
    result = _run(_executor(store), "finalize_report", {})
    assert result == {"success": False, "error": "No report provided and no draft exists"}


def test_add_section_previews_data_and_finalizes_draft(store):
    executor = _executor(store)
    created = _run(executor, "create_report_draft", {"name": "Carrier spend", "theme": "teal"})
    assert created["success"] is True

    added = _run(
        executor,
        "add_section",
        {
            "section_type": "chart",
            "title": "Spend by carrier",
            "config": {"chartType": "bar", "groupBy": "carrier_name", "metric": {"field": "retail", "aggregation": "sum"}},
        },
    )
    assert added["success"] is True
    assert added["has_data"] is True
    assert "leads with" in added["insight"]

    section = executor.draft.sections[0]
    values = [row["value"] for row in section.data]
    assert values == sorted(values, reverse=True)

    final = _run(executor, "finalize_report", {"summary": "Done"})
    assert final["success"] is True
    assert executor.final_report.name == "Carrier spend"
    assert executor.final_report.theme == "teal"


def test_add_section_on_hidden_field_keeps_section_without_data(store):
    executor = _executor(store)
    added = _run(
        executor,
        "add_section",
        {"section_type": "chart", "config": {"groupBy": "carrier_name", "metric": {"field": "margin"}}},
    )

    assert added["success"] is True
    assert added["has_data"] is False
    assert added["preview_error"] == "Field 'margin' is restricted and not available"
    assert executor.draft.name == "Generated Report"


def test_section_management_tools(store):
    executor = _executor(store)
    for title in ["First", "Second", "Third"]:
        _run(executor, "add_section", {"section_type": "header", "title": title})

    assert _run(executor, "reorder_sections", {"new_order": [2, 0, 1]})["success"] is True
    assert [section.title for section in executor.draft.sections] == ["Third", "First", "Second"]

    bad_order = _run(executor, "reorder_sections", {"new_order": [0, 0, 1]})
    assert bad_order == {"success": False, "error": "New order must include all section indices"}

    assert _run(executor, "modify_section", {"section_index": 1, "updates": {"title": "Renamed"}})["success"] is True
    assert executor.draft.sections[1].title == "Renamed"

    assert _run(executor, "remove_section", {"section_index": 0}) == {"success": True, "remaining": 2}
    assert _run(executor, "remove_section", {"section_index": 9}) == {"success": False, "error": "Invalid index"}

    preview = _run(executor, "preview_report")
    assert preview["total_sections"] == 2
    assert [item["title"] for item in preview["sections"]] == ["Renamed", "Second"]


def test_unknown_tool_and_bad_input_come_back_as_errors(store):
    executor = _executor(store)

    assert _run(executor, "drop_tables", {}) == {"success": False, "error": "Unknown tool: drop_tables"}

    missing = _run(executor, "explore_field", {})
    assert missing["success"] is False
    assert "field_name is required" in missing["error"]

    hidden = _run(executor, "explore_field", {"field": "cost"})
    assert hidden == {"success": False, "error": "Field 'cost' is restricted and not available"}

    assert len(executor.executions) == 3


def test_explore_field_and_preview_quality_labels(store):
    executor = _executor(store)

    explored = _run(executor, "explore_field", {"field": "carrier_name", "sample_size": 3})
    assert explored["success"] is True
    assert explored["populated_percent"] == 100
    assert explored["data_quality"] == "excellent"
    assert explored["recommendation"] == "Good for analysis"
    assert len(explored["values"]) == 3

    sparse = _run(executor, "explore_field", {"field_name": "delivery_date"})
    assert sparse["data_quality"] in {"good", "moderate"}

    preview = _run(executor, "preview_grouping", {"group_by": "carrier_name", "metric": "retail"})
    assert executor.executions[-1].tool_name == "preview_aggregation"
    assert preview["total_groups"] == 8
    assert preview["quality"] == "good"
    assert preview["visualization_suggestion"] == "bar chart"
    assert preview["warning"] is None


def test_batch_results_keep_call_order(store):
    executor = _executor(store)
    calls = [
        ("explore_field", {"field": "carrier_name"}),
        ("preview_aggregation", {"group_by": "origin_state", "metric": "miles"}),
        ("add_section", {"section_type": "header", "title": "Overview"}),
        ("discover_tables", {}),
        ("ask_clarification", {"question": "Which lanes?", "options": ["Florida", "Texas"]}),
    ]
    executions = asyncio.run(executor.execute_batch(calls))

    assert [item.tool_name for item in executions] == [name for name, _ in calls]
    assert all(item.result["success"] for item in executions)
    assert executor.clarification["options"] == ["Florida", "Texas"]
    assert executor.executions == executions


def test_anomalies_and_visualization_suggestions(store):
    executor = _executor(store)

    anomalies = _run(executor, "detect_anomalies", {"metric": "miles", "sensitivity": "high"})
    assert anomalies["success"] is True
    assert anomalies["statistics"]["threshold"] == 1.5

    geo = _run(executor, "suggest_visualization", {"group_by": "destination_state", "metric": "retail"})
    assert geo["section_type"] == "map"

    timeline = _run(executor, "suggest_visualization", {"group_by": "pickup_date"})
    assert timeline["chart_type"] == "line"


def test_learning_tools_write_to_knowledge_store(store):
    executor = _executor(store)

    learned = _run(
        executor,
        "learn_terminology",
        {"term": "Florida lanes", "meaning": "origin_state = FL", "confidence": "high", "maps_to_field": "origin_state"},
    )
    assert learned["success"] is True
    _run(executor, "emit_learning", {"key": "hot loads", "value": "expedited", "confidence": "low"})
    _run(executor, "record_correction", {"original": "revenue", "corrected": "use retail, not cost"})

    terms = {item["key"]: item for item in store.list_knowledge("1001", knowledge_types=["term"])}
    assert terms["florida_lanes"]["is_active"] is True
    assert terms["florida_lanes"]["confidence"] == 0.9
    assert terms["hot_loads"]["is_active"] is False
    assert terms["hot_loads"]["needs_review"] is True

    pending = store.list_pending_knowledge("1001")
    assert {item["knowledge_type"] for item in pending} == {"term", "correction"}

    memory = _run(executor, "get_customer_memory", {"include_history": True})
    assert memory["total_items"] == 3
    assert len(memory["memory"]["corrections"]) == 1
    assert [item.type for item in executor.learnings] == ["terminology", "terminology", "correction"]


def test_corrections_in_one_batch_are_all_kept(store):
    executor = _executor(store)
    asyncio.run(
        executor.execute_batch(
            [
                ("record_correction", {"original": "revenue", "corrected": "use retail"}),
                ("record_correction", {"original": "all loads", "corrected": "delivered loads only"}),
            ]
        )
    )

    corrections = store.list_knowledge("1001", knowledge_types=["correction"])
    assert sorted(item["definition"] for item in corrections) == ["delivered loads only", "use retail"]
    assert len({item.key for item in executor.learnings}) == 2


def test_conversation_learnings_do_not_demote_a_tool_learned_term(store):
    executor = _executor(store)
    _run(executor, "learn_terminology", {"term": "hot loads", "meaning": "expedited", "confidence": "high"})

    extracted = extract_learnings([], "When I say hot loads I mean expedited shipments")
    assert persist_learnings(store, "1001", extracted) == 0

    active = store.list_knowledge("1001", knowledge_types=["term"], active_only=True)
    assert [(item["key"], item["definition"]) for item in active] == [("hot_loads", "expedited")]


def test_low_confidence_relearn_keeps_an_active_term_active(store):
    executor = _executor(store)
    _run(executor, "learn_terminology", {"term": "hot loads", "meaning": "expedited", "confidence": "high"})
    _run(executor, "learn_terminology", {"term": "hot loads", "meaning": "rush orders", "confidence": "low"})

    term = store.list_knowledge("1001", knowledge_types=["term"])[0]
    assert term["definition"] == "expedited"
    assert term["is_active"] is True
    assert term["needs_review"] is False


def test_preference_confidence_decides_activation(store):
    executor = _executor(store)
    _run(executor, "learn_preference", {"preference_type": "chart_type", "key": "default", "value": "pie"})
    _run(
        executor,
        "learn_preference",
        {"preference_type": "sort_order", "key": "default", "value": "desc", "confidence": "low"},
    )

    prefs = {item["key"]: item for item in store.list_knowledge("1001", knowledge_types=["preference"])}
    assert prefs["chart_type:default"]["is_active"] is True
    assert prefs["chart_type:default"]["confidence"] == 0.9
    assert prefs["sort_order:default"]["is_active"] is False
    assert prefs["sort_order:default"]["confidence"] == 0.5
