"""Request-scoped token, cost and turn budget for one report conversation."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from report_agent.core.logging import logger


EXHAUSTED_MESSAGE = (
    "I've gathered enough information to give you a solid answer. "
    "Want me to dig deeper into any specific area?"
)
WRAPPING_UP_MESSAGE = (
    "I'm wrapping up my analysis. Let me know if you need more detail on anything specific."
)


@dataclass(frozen=True)
class BudgetConfig:
    max_turns: int = 10
    max_total_tokens: int = 50000
    max_cost_usd: float = 0.50
    warning_threshold_percent: float = 80.0
    input_token_cost_usd: float = 0.000003
    output_token_cost_usd: float = 0.000015
    estimate_input_share: float = 0.3
    estimated_tokens_per_turn: int = 4000


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    reason: Optional[str] = None


class TokenBudget:
    """Tracks consumption for a single request and gates the next LLM turn.

    A fresh instance is built per request and thrown away afterwards. Counters
    only ever grow.
    """

    def __init__(self, config: Optional[BudgetConfig] = None) -> None:
        self.config = config or BudgetConfig()
        self.input_tokens = 0
        self.output_tokens = 0
        self.cost_usd = 0.0
        self.turn_count = 0
        self._denied_reason: Optional[str] = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    def cost_of(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.config.input_token_cost_usd
            + output_tokens * self.config.output_token_cost_usd
        )

    def projected_cost(self, estimated_tokens: int) -> float:
        input_share = self.config.estimate_input_share
        return (
            estimated_tokens * self.config.input_token_cost_usd * input_share
            + estimated_tokens * self.config.output_token_cost_usd * (1 - input_share)
        )

    def can_proceed(self, estimated_tokens: Optional[int] = None) -> BudgetDecision:
        """Decide whether another LLM turn may start; never interrupts one in flight."""
        estimate = self.config.estimated_tokens_per_turn if estimated_tokens is None else max(0, estimated_tokens)

        reason: Optional[str] = None
        if self.turn_count >= self.config.max_turns:
            reason = f"Maximum turns reached ({self.config.max_turns})"
        elif self.tokens_used + estimate > self.config.max_total_tokens:
            reason = "Token budget exhausted"
        elif self.cost_usd + self.projected_cost(estimate) > self.config.max_cost_usd:
            reason = "Cost budget exhausted"

        if reason is None:
            return BudgetDecision(allowed=True)

        self._denied_reason = reason
        logger.info(
            "Budget denied next turn",
            reason=reason,
            turns=self.turn_count,
            tokens_used=self.tokens_used,
            cost_usd=round(self.cost_usd, 6),
        )
        return BudgetDecision(allowed=False, reason=reason)

    def record_usage(self, input_tokens: int, output_tokens: int) -> float:
        """Account for one completed LLM call and return its cost."""
        input_tokens = max(0, int(input_tokens or 0))
        output_tokens = max(0, int(output_tokens or 0))
        cost = self.cost_of(input_tokens, output_tokens)
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost_usd += cost
        self.turn_count += 1
        return cost

    def percent_used(self) -> float:
        token_percent = self.tokens_used / self.config.max_total_tokens * 100 if self.config.max_total_tokens else 100.0
        cost_percent = self.cost_usd / self.config.max_cost_usd * 100 if self.config.max_cost_usd else 100.0
        turn_percent = self.turn_count / self.config.max_turns * 100 if self.config.max_turns else 100.0
        return max(token_percent, cost_percent, turn_percent)

    def get_status_message(self) -> str:
        percent = self.percent_used()
        if percent >= 100 or self._denied_reason is not None:
            return EXHAUSTED_MESSAGE
        if percent >= self.config.warning_threshold_percent:
            return WRAPPING_UP_MESSAGE
        return ""
