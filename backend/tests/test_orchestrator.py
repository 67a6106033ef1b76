"""Termination and governance tests for the report conversation loop."""
from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from report_agent.core.errors import CircuitOpenError, UpstreamApiError  # noqa: E402
from report_agent.models.report import AccessPolicy, ConversationMessage  # noqa: E402
from report_agent.services.budget import EXHAUSTED_MESSAGE, BudgetConfig, TokenBudget  # noqa: E402
from report_agent.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState  # noqa: E402
from report_agent.services.llm_client import LLMResponse, LLMToolCall  # noqa: E402
from report_agent.services.orchestrator import ConversationOrchestrator, Outcome  # noqa: E402
from report_agent.services.sanitizer import DEFAULT_RESTRICTED_FIELDS, OutputSanitizer  # noqa: E402
from report_agent.services.shipment_dataset import DemoShipmentDataset  # noqa: E402
from report_agent.services.state_store import StateStore  # noqa: E402
from report_agent.services.tool_executor import ToolExecutor  # noqa: E402


DATASET = DemoShipmentDataset(seed=11, rows_per_customer=200)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class ScriptedLLM:
    """Replays canned responses and records the transcript of every call."""

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[List[Dict[str, Any]]] = []

    async def complete(self, system_prompt, messages, tools=None) -> LLMResponse:
        self.calls.append(list(messages))
        if not self.responses:
            raise AssertionError("unexpected LLM call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _text(text: str, input_tokens: int = 100, output_tokens: int = 40) -> LLMResponse:
    return LLMResponse(text=text, input_tokens=input_tokens, output_tokens=output_tokens)


def _tools(*calls, text: str = "", input_tokens: int = 100, output_tokens: int = 40) -> LLMResponse:
    return LLMResponse(
        text=text,
        tool_calls=[LLMToolCall(id=f"call_{index}", name=name, arguments=args) for index, (name, args) in enumerate(calls)],
        stop_reason="tool_calls",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


@pytest.fixture()
def store(tmp_path):
    state = StateStore(str(tmp_path / "orchestrator.db"))
    yield state
    state.close()


def _setup(store, responses, is_admin=False, budget_config=None, breaker=None):
    llm = ScriptedLLM(responses)
    breaker = breaker or CircuitBreaker(CircuitBreakerConfig(), clock=FakeClock())
    orchestrator = ConversationOrchestrator(llm, breaker, OutputSanitizer())
    policy = AccessPolicy(is_admin=is_admin, restricted_fields=DEFAULT_RESTRICTED_FIELDS)
    executor = ToolExecutor(DATASET, store, "2002", policy)
    budget = TokenBudget(budget_config or BudgetConfig())
    return llm, orchestrator, executor, budget


def _run(orchestrator, executor, budget, prompt="Build me a report", history=()):
    return asyncio.run(orchestrator.run(prompt, list(history), executor, budget, "system prompt"))


def test_plain_answer_ends_the_loop(store):
    llm, orchestrator, executor, budget = _setup(store, [_text("You moved 200 loads last year.")])
    result = _run(orchestrator, executor, budget)

    assert result.outcome == Outcome.SUCCESS
    assert result.message == "You moved 200 loads last year."
    assert result.report is None
    assert len(llm.calls) == 1
    assert budget.turn_count == 1
    assert result.llm_calls == 1
    assert budget.tokens_used == 140


def test_restricted_report_is_never_finalized_for_customer(store):
    cost_report = {
        "name": "Average cost by carrier",
        "sections": [
            {
                "type": "chart",
                "title": "Average cost by carrier",
                "config": {"chartType": "bar", "groupBy": "carrier_name", "metric": {"field": "cost", "aggregation": "avg"}},
            }
        ],
    }
    llm, orchestrator, executor, budget = _setup(
        store,
        [
            _tools(("finalize_report", {"report": cost_report, "summary": "Average cost by carrier"})),
            _text("I can't show cost details, but here is your spend by carrier instead."),
        ],
    )
    result = _run(orchestrator, executor, budget, prompt="average cost by carrier")

    assert executor.final_report is None
    assert result.report is None
    assert len(llm.calls) == 2

    tool_message = llm.calls[1][-1]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call_0"
    payload = json.loads(tool_message["content"])
    assert payload["validation"]["errors"] == ["Report contains restricted field: cost"]


def test_valid_finalize_stops_further_llm_calls(store):
    llm, orchestrator, executor, budget = _setup(
        store,
        [
            _tools(
                ("create_report_draft", {"name": "Lane volume"}),
                (
                    "add_section",
                    {"section_type": "chart", "title": "Loads by origin", "config": {"groupBy": "origin_state", "metric": {"field": "*", "aggregation": "count"}}},
                ),
                ("finalize_report", {"summary": "Volume by origin state"}),
            ),
            _text("this response must never be requested"),
        ],
    )
    result = _run(orchestrator, executor, budget)

    assert result.outcome == Outcome.SUCCESS
    assert len(llm.calls) == 1
    assert result.report is not None
    assert result.report.name == "Lane volume"
    assert result.message == "Volume by origin state"
    assert [item.tool_name for item in result.tool_executions] == ["create_report_draft", "add_section", "finalize_report"]


def test_clarification_stops_the_loop(store):
    llm, orchestrator, executor, budget = _setup(
        store,
        [
            _tools(("ask_clarification", {"question": "Which time period?", "options": ["Last 30 days", "This year"]})),
            _text("never"),
        ],
    )
    result = _run(orchestrator, executor, budget)

    assert result.outcome == Outcome.CLARIFICATION
    assert result.message == "Which time period?"
    assert result.clarification_options == ["Last 30 days", "This year"]
    assert len(llm.calls) == 1


def test_turn_ceiling_ends_with_last_text_and_no_report(store):
    responses = [_tools(("discover_tables", {}), text=f"Still looking ({index})") for index in range(5)]
    llm, orchestrator, executor, budget = _setup(store, responses, budget_config=BudgetConfig(max_turns=3))
    result = _run(orchestrator, executor, budget)

    assert result.outcome == Outcome.EXHAUSTED
    assert len(llm.calls) == 3
    assert result.llm_calls == 3
    assert result.message == "Still looking (2)"
    assert result.report is None
    assert len(result.tool_executions) == 3


def test_budget_denial_stops_before_the_next_call(store):
    config = BudgetConfig(max_total_tokens=5000, estimated_tokens_per_turn=4000)
    llm, orchestrator, executor, budget = _setup(
        store,
        [
            _tools(("explore_field", {"field": "carrier_name"}), input_tokens=1500, output_tokens=500),
            _text("never"),
        ],
        budget_config=config,
    )
    result = _run(orchestrator, executor, budget)

    assert result.outcome == Outcome.EXHAUSTED
    assert result.message == EXHAUSTED_MESSAGE
    assert len(llm.calls) == 1
    assert result.llm_calls == 1
    assert [item.tool_name for item in result.tool_executions] == ["explore_field"]


def test_open_circuit_refuses_without_calling_the_llm(store):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=30), clock=FakeClock())
    breaker.record_failure(RuntimeError("down"))
    llm, orchestrator, executor, budget = _setup(store, [_text("never")], breaker=breaker)

    with pytest.raises(CircuitOpenError) as caught:
        _run(orchestrator, executor, budget)

    assert caught.value.retry_after_seconds == 30
    assert llm.calls == []


def test_llm_failure_is_recorded_against_the_breaker(store):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2), clock=FakeClock())
    llm, orchestrator, executor, budget = _setup(store, [RuntimeError("connection reset")], breaker=breaker)

    with pytest.raises(UpstreamApiError):
        _run(orchestrator, executor, budget)

    assert breaker.recent_failures() == 1
    assert breaker.get_state() == CircuitState.CLOSED
    assert budget.turn_count == 0


def test_tool_results_are_appended_in_call_order(store):
    llm, orchestrator, executor, budget = _setup(
        store,
        [
            _tools(
                ("explore_field", {"field": "commodity"}),
                ("not_a_tool", {}),
                ("preview_aggregation", {"group_by": "mode_name", "metric": "miles"}),
            ),
            _text("Done."),
        ],
    )
    _run(orchestrator, executor, budget)

    second_call = llm.calls[1]
    assistant = second_call[-4]
    assert assistant["role"] == "assistant"
    assert [call["id"] for call in assistant["tool_calls"]] == ["call_0", "call_1", "call_2"]
    tool_messages = second_call[-3:]
    assert [message["tool_call_id"] for message in tool_messages] == ["call_0", "call_1", "call_2"]
    assert json.loads(tool_messages[1]["content"]) == {"success": False, "error": "Unknown tool: not_a_tool"}


def test_customer_reply_is_sanitized_and_learnings_extracted(store):
    llm, orchestrator, executor, budget = _setup(store, [_text("The carrier cost is $500 on that load.")])
    history = [ConversationMessage(role="user", content="When I say 'hot loads' I mean expedited shipments.")]
    result = _run(orchestrator, executor, budget, prompt="What did the Tampa load cost?", history=history)

    assert "$500" not in result.message
    assert "[REDACTED]" in result.message
    assert [(item.type, item.key) for item in result.extracted_learnings] == [("terminology", "hot_loads")]
    assert llm.calls[0][0] == {"role": "user", "content": history[0].content}


def test_admin_reply_is_left_alone(store):
    llm, orchestrator, executor, budget = _setup(store, [_text("The carrier cost is $500 on that load.")], is_admin=True)
    result = _run(orchestrator, executor, budget)
    assert result.message == "The carrier cost is $500 on that load."
