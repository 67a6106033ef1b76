"""Turn-bounded tool-calling loop that builds one report per request.

Each turn asks the budget, then the circuit breaker, before calling the model.
The loop ends on a plain-text answer, a validated ``finalize_report``, an
``ask_clarification`` call, budget exhaustion or the turn ceiling.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from report_agent.core.errors import CircuitOpenError, UpstreamApiError
from report_agent.core.logging import logger
from report_agent.models.report import ConversationMessage, LearningExtraction, ReportDraft, ToolExecution
from report_agent.models.tools import tool_definitions
from report_agent.services.budget import TokenBudget
from report_agent.services.circuit_breaker import CircuitBreaker
from report_agent.services.learning import extract_learnings, strip_learning_flags
from report_agent.services.llm_client import LLMClient, LLMResponse
from report_agent.services.sanitizer import OutputSanitizer
from report_agent.services.tool_executor import ToolExecutor


REPORT_READY_MESSAGE = "Your report is ready."
NO_ANSWER_MESSAGE = "I wasn't able to finish the analysis in the time available. Try narrowing the request."


class LoopState(str, Enum):
    RUNNING = "running"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"
    TERMINATED = "terminated"


class Outcome(str, Enum):
    SUCCESS = "success"
    CLARIFICATION = "clarification"
    EXHAUSTED = "exhausted"
    ERROR = "error"


@dataclass
class OrchestrationResult:
    outcome: Outcome
    message: str
    report: Optional[ReportDraft] = None
    tool_executions: List[ToolExecution] = field(default_factory=list)
    learnings: List[LearningExtraction] = field(default_factory=list)
    extracted_learnings: List[LearningExtraction] = field(default_factory=list)
    clarification_options: Optional[List[str]] = None
    llm_calls: int = 0


def _assistant_message(response: LLMResponse) -> Dict[str, Any]:
    if response.assistant_message:
        return response.assistant_message
    return {
        "role": "assistant",
        "content": response.text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in response.tool_calls
        ],
    }


class ConversationOrchestrator:
    """Runs the model/tool loop for a single request.

    The circuit breaker is shared across requests; the budget and executor
    passed to ``run`` belong to this request only.
    """

    def __init__(self, llm: LLMClient, breaker: CircuitBreaker, sanitizer: OutputSanitizer) -> None:
        self.llm = llm
        self.breaker = breaker
        self.sanitizer = sanitizer

    async def run(
        self,
        prompt: str,
        history: Sequence[ConversationMessage],
        executor: ToolExecutor,
        budget: TokenBudget,
        system_prompt: str,
        use_tools: bool = True,
    ) -> OrchestrationResult:
        messages: List[Dict[str, Any]] = [{"role": item.role, "content": item.content} for item in history]
        messages.append({"role": "user", "content": prompt})
        tools = tool_definitions() if use_tools else None

        state = LoopState.RUNNING
        outcome: Optional[Outcome] = None
        message = ""
        last_text = ""
        options: Optional[List[str]] = None
        llm_calls = 0

        for turn in range(budget.config.max_turns):
            decision = budget.can_proceed()
            if not decision.allowed:
                outcome = Outcome.EXHAUSTED
                message = budget.get_status_message()
                break

            if not self.breaker.can_execute():
                retry_after = math.ceil(self.breaker.get_time_until_retry())
                logger.warning("LLM circuit open; refusing turn", turn=turn + 1, retry_after_seconds=retry_after)
                raise CircuitOpenError(retry_after)

            logger.info("Report turn started", turn=turn + 1, customer_id=executor.customer_id)
            try:
                llm_calls += 1
                response = await self.llm.complete(system_prompt, messages, tools)
            except UpstreamApiError as exc:
                self.breaker.record_failure(exc)
                logger.error("LLM call failed", turn=turn + 1, error=exc.message)
                raise
            except Exception as exc:
                self.breaker.record_failure(exc)
                logger.error("LLM call failed", turn=turn + 1, error=str(exc))
                raise UpstreamApiError(f"LLM request failed: {exc}") from exc

            self.breaker.record_success()
            budget.record_usage(response.input_tokens, response.output_tokens)
            if response.text:
                last_text = response.text

            if not response.tool_calls:
                outcome = Outcome.SUCCESS
                message = response.text
                break

            state = LoopState.AWAITING_TOOL_RESULTS
            executions = await executor.execute_batch([(call.name, call.arguments) for call in response.tool_calls])
            messages.append(_assistant_message(response))
            for call, execution in zip(response.tool_calls, executions):
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(execution.result, ensure_ascii=True, default=str),
                    }
                )

            if executor.final_report is not None:
                outcome = Outcome.SUCCESS
                summary = next(
                    (
                        execution.result.get("summary")
                        for execution in reversed(executions)
                        if execution.tool_name == "finalize_report" and execution.result.get("success")
                    ),
                    "",
                )
                message = response.text or summary or REPORT_READY_MESSAGE
                break
            if executor.clarification is not None:
                outcome = Outcome.CLARIFICATION
                message = executor.clarification["question"]
                options = list(executor.clarification.get("options") or [])
                break
            state = LoopState.RUNNING
        else:
            outcome = Outcome.EXHAUSTED
            message = last_text or budget.get_status_message() or NO_ANSWER_MESSAGE

        state = LoopState.TERMINATED
        assert outcome is not None

        extracted = extract_learnings(history, prompt, message)
        message = strip_learning_flags(message)
        policy = executor.policy
        checked = self.sanitizer.validate(message, policy.is_admin)
        report = executor.final_report if outcome == Outcome.SUCCESS else None
        report, dropped = self.sanitizer.filter_sections(report, policy.is_admin)

        logger.info(
            "Report conversation finished",
            state=state.value,
            outcome=outcome.value,
            turns=budget.turn_count,
            tool_calls=len(executor.executions),
            has_report=report is not None,
            dropped_sections=len(dropped),
            severity=checked.severity.value,
        )
        return OrchestrationResult(
            outcome=outcome,
            message=checked.sanitized_message,
            report=report,
            tool_executions=list(executor.executions),
            learnings=[*executor.learnings, *extracted],
            extracted_learnings=extracted,
            clarification_options=options,
            llm_calls=llm_calls,
        )
