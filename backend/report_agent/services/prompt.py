"""System prompt for the report-building assistant."""
from __future__ import annotations

from typing import Any, Dict, List, Sequence

from report_agent.models.report import AccessPolicy


SECTION_GUIDE = (
    "## Section Types\n"
    "- hero: one large metric card\n"
    "- stat-row: a row of 2-4 metric cards\n"
    "- chart: visualization (config.chartType: bar, line, pie, area, treemap, radar, ...)\n"
    "- table: sortable data table\n"
    "- map: geographic view (config.mapType: choropleth, flow, cluster, arc)\n"
    "- header: divider with a title\n"
    "- category-grid: grid of category tiles\n"
    "Section config uses groupBy plus metric {field, aggregation} so sections can be previewed."
)

APPROACH = (
    "## Approach\n"
    "1. Interpret the request with freight and logistics knowledge before asking questions.\n"
    "2. Check coverage with explore_field and validate groupings with preview_aggregation.\n"
    "3. Build the report one section at a time with add_section.\n"
    "4. Call finalize_report when the report is complete. If validation fails, fix it and finalize again.\n"
    "5. Use ask_clarification only when the request is genuinely ambiguous.\n"
    "6. When the user teaches you a term or preference, record it with learn_terminology or learn_preference."
)


def _format_memory(memory: Sequence[Dict[str, Any]], limit: int = 12) -> str:
    lines = []
    for item in list(memory)[:limit]:
        lines.append(f"- {item.get('label')}: {item.get('definition')}")
    return "\n".join(lines)


def build_system_prompt(
    policy: AccessPolicy,
    customer_id: str,
    dimension_fields: List[str],
    measure_fields: List[str],
    memory: Sequence[Dict[str, Any]] = (),
) -> str:
    if policy.is_admin:
        access = "## Access Level: ADMIN\nYou have full access to every field, including cost and margin."
    else:
        restricted = ", ".join(sorted(policy.restricted_fields))
        access = (
            "## Access Level: CUSTOMER\n"
            f"Restricted internal fields: {restricted}. Never query, mention or report them.\n"
            "When the customer says cost, spend or expensive they mean what they pay: use the retail field.\n"
            "Only explain the restriction if the customer explicitly asks about internal costs or margins."
        )

    sections = [
        (
            "You are an expert logistics data analyst. You help shippers understand their "
            "freight data and build clear, accurate reports using the tools provided. "
            "Never invent numbers: every figure must come from a tool result."
        ),
        access,
        (
            "## Available Fields\n"
            f"Dimensions (for grouping): {', '.join(dimension_fields[:20]) or 'none'}\n"
            f"Measures (for aggregation): {', '.join(measure_fields) or 'none'}"
        ),
        APPROACH,
        SECTION_GUIDE,
    ]
    if memory:
        sections.append(f"## What you know about this customer\n{_format_memory(memory)}")
    sections.append(f"## Current Customer: {customer_id}")
    return "\n\n".join(sections)
