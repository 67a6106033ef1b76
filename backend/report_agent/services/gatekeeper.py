"""Entry sequence for report requests.

Order: resolve the access policy, check the customer's AI switch, check the
rate limit, check the daily spend cap, then hand off to the orchestrator.
Exactly one usage record is written per request, whatever the outcome.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from report_agent.core.auth import CallerContext
from report_agent.core.config import Settings
from report_agent.core.errors import (
    AiDisabledError,
    CircuitOpenError,
    DailyBudgetExceededError,
    RateLimitExceededError,
    ReportAgentError,
)
from report_agent.core.logging import logger
from report_agent.models.report import AccessPolicy, GenerateReportRequest, GenerateReportResponse, UsageSummary
from report_agent.services.budget import BudgetConfig, TokenBudget
from report_agent.services.circuit_breaker import CircuitBreaker
from report_agent.services.learning import persist_learnings
from report_agent.services.llm_client import LLMClient
from report_agent.services.orchestrator import ConversationOrchestrator, Outcome
from report_agent.services.prompt import build_system_prompt
from report_agent.services.query_service import DataQueryService
from report_agent.services.rate_limiter import RateLimiter
from report_agent.services.sanitizer import OutputSanitizer
from report_agent.services.state_store import StateStore, UsageRecord
from report_agent.services.tool_executor import ToolExecutor


def resolve_access_policy(
    caller: CallerContext,
    requested_is_admin: Optional[bool],
    restricted_fields: frozenset[str],
) -> AccessPolicy:
    """Admin only for a verified admin; an admin may ask for the customer view."""
    is_admin = caller.is_admin and requested_is_admin is not False
    if requested_is_admin and not caller.is_admin:
        logger.warning("Ignoring admin flag from non-admin caller", user_id=caller.user_id, role=caller.role)
    return AccessPolicy(is_admin=is_admin, restricted_fields=restricted_fields)


def budget_config_from_settings(settings: Settings) -> BudgetConfig:
    return BudgetConfig(
        max_turns=settings.budget_max_turns,
        max_total_tokens=settings.budget_max_total_tokens,
        max_cost_usd=settings.budget_max_cost_usd,
        warning_threshold_percent=settings.budget_warning_threshold_percent,
        input_token_cost_usd=settings.input_token_cost_usd,
        output_token_cost_usd=settings.output_token_cost_usd,
        estimate_input_share=settings.estimate_input_share,
        estimated_tokens_per_turn=settings.budget_estimated_tokens_per_turn,
    )


class ReportGatekeeper:
    """Runs the pre-flight checks and the orchestrator for one request at a time.

    Built once per process; the breaker and rate limiter it holds are shared by
    every request, everything else it builds is request-scoped.
    """

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        data: DataQueryService,
        llm: LLMClient,
        sanitizer: OutputSanitizer,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.settings = settings
        self.store = store
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.data = data
        self.orchestrator = ConversationOrchestrator(llm, breaker, sanitizer)
        self._clock = clock

    def _target_customer(self, caller: CallerContext, request: GenerateReportRequest) -> str:
        requested = (request.customer_id or "").strip()
        if requested and caller.is_admin:
            return requested
        return caller.customer_id

    def _write_usage(self, record: UsageRecord) -> None:
        try:
            self.store.record_usage(record)
        except Exception as exc:
            logger.error(
                "Failed to write usage record",
                customer_id=record.customer_id,
                status=record.status,
                error=str(exc),
            )

    def _check_ai_enabled(self, customer_id: str) -> float:
        """Raise when AI is off for the customer; otherwise return its daily cap."""
        customer = self.store.get_customer_settings(customer_id)
        enabled = customer.ai_enabled if customer else self.settings.ai_enabled_by_default
        if not enabled:
            raise AiDisabledError(customer_id)
        return customer.daily_cap_usd if customer else self.settings.default_daily_cap_usd

    def _check_rate_limit(self, user_id: str) -> None:
        status = self.rate_limiter.check_limit(user_id)
        if not status.allowed:
            raise RateLimitExceededError(status.limit_type or "minute", status.retry_after_seconds or 1)

    def _check_daily_cap(self, customer_id: str, daily_cap: float) -> None:
        spent = self.store.spent_today(customer_id)
        if spent >= daily_cap:
            raise DailyBudgetExceededError(spent, daily_cap)

    async def _system_prompt(self, policy: AccessPolicy, executor: ToolExecutor) -> str:
        fields = await self.data.discover_fields(executor.scope, "shipment", include_samples=False)
        dimensions = [item["field_name"] for item in fields if item.get("is_groupable")]
        measures = [item["field_name"] for item in fields if item.get("is_aggregatable")]
        memory = self.store.list_knowledge(executor.customer_id, active_only=True)
        return build_system_prompt(policy, executor.customer_id, dimensions, measures, memory)

    async def generate(self, caller: CallerContext, request: GenerateReportRequest) -> GenerateReportResponse:
        started = self._clock()
        customer_id = self._target_customer(caller, request)
        user_id = caller.user_id
        policy = resolve_access_policy(caller, request.is_admin, self.settings.restricted_field_set())
        budget = TokenBudget(budget_config_from_settings(self.settings))
        record = UsageRecord(
            user_id=user_id,
            customer_id=customer_id,
            session_id=request.session_id,
            status="error",
        )

        def finish(status: str, error_message: Optional[str] = None) -> None:
            record.status = status
            record.error_message = error_message
            record.input_tokens = budget.input_tokens
            record.output_tokens = budget.output_tokens
            record.cost_usd = budget.cost_usd
            record.tool_turns = budget.turn_count
            record.latency_ms = round((self._clock() - started) * 1000, 2)
            self._write_usage(record)

        try:
            daily_cap = self._check_ai_enabled(customer_id)
            self._check_rate_limit(user_id)
            self._check_daily_cap(customer_id, daily_cap)
        except (AiDisabledError, RateLimitExceededError, DailyBudgetExceededError) as exc:
            status = {
                AiDisabledError: "ai_disabled",
                RateLimitExceededError: "rate_limited",
                DailyBudgetExceededError: "daily_budget_exceeded",
            }[type(exc)]
            logger.info("Report request rejected", customer_id=customer_id, user_id=user_id, reason=status)
            finish(status, exc.message)
            raise

        self.rate_limiter.record_request(user_id, customer_id)
        logger.info(
            "Report request accepted",
            customer_id=customer_id,
            user_id=user_id,
            is_admin=policy.is_admin,
            session_id=request.session_id,
        )

        executor = ToolExecutor(self.data, self.store, customer_id, policy)
        try:
            system_prompt = await self._system_prompt(policy, executor)
            result = await self.orchestrator.run(
                request.prompt,
                request.conversation_history,
                executor,
                budget,
                system_prompt,
                use_tools=request.use_tools,
            )
        except CircuitOpenError as exc:
            finish("circuit_open", exc.message)
            raise
        except ReportAgentError as exc:
            finish("error", exc.message)
            raise
        except Exception as exc:
            logger.error("Report generation failed", customer_id=customer_id, error=str(exc))
            finish("error", str(exc))
            raise

        if result.extracted_learnings:
            persist_learnings(self.store, customer_id, result.extracted_learnings)

        finish(result.outcome.value)
        return GenerateReportResponse(
            report=result.report,
            message=result.message,
            tool_executions=result.tool_executions,
            learnings=result.learnings or None,
            needs_clarification=True if result.outcome == Outcome.CLARIFICATION else None,
            clarification_options=result.clarification_options,
            outcome=result.outcome.value,
            usage=UsageSummary(
                input_tokens=budget.input_tokens,
                output_tokens=budget.output_tokens,
                total_tokens=budget.tokens_used,
                cost_usd=round(budget.cost_usd, 6),
                latency_ms=record.latency_ms,
            ),
        )
