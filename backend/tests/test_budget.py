"""Unit tests for the per-request token and cost budget."""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from report_agent.services.budget import (  # noqa: E402
    EXHAUSTED_MESSAGE,
    WRAPPING_UP_MESSAGE,
    BudgetConfig,
    TokenBudget,
)


def test_record_usage_prices_tokens_and_counts_turns():
    budget = TokenBudget(BudgetConfig(input_token_cost_usd=0.001, output_token_cost_usd=0.002))
    cost = budget.record_usage(100, 50)

    assert abs(cost - 0.2) < 1e-9
    assert budget.tokens_used == 150
    assert budget.turn_count == 1
    assert abs(budget.cost_usd - 0.2) < 1e-9


def test_counters_never_decrease():
    budget = TokenBudget()
    snapshots = []
    for input_tokens, output_tokens in [(10, 5), (0, 0), (-5, -5), (200, 40)]:
        budget.record_usage(input_tokens, output_tokens)
        snapshots.append((budget.tokens_used, budget.cost_usd, budget.turn_count))

    for previous, current in zip(snapshots, snapshots[1:]):
        assert all(now >= before for before, now in zip(previous, current))


def test_denies_when_turn_ceiling_reached():
    budget = TokenBudget(BudgetConfig(max_turns=2))
    budget.record_usage(10, 10)
    assert budget.can_proceed().allowed is True
    budget.record_usage(10, 10)

    decision = budget.can_proceed()
    assert decision.allowed is False
    assert decision.reason == "Maximum turns reached (2)"


def test_denies_when_projected_tokens_exceed_ceiling():
    budget = TokenBudget(BudgetConfig(max_total_tokens=10000, estimated_tokens_per_turn=4000))
    budget.record_usage(3000, 2000)
    assert budget.can_proceed().allowed is True

    budget.record_usage(1000, 500)
    decision = budget.can_proceed()
    assert decision.allowed is False
    assert decision.reason == "Token budget exhausted"
    assert budget.can_proceed(estimated_tokens=100).allowed is True


def test_denies_when_projected_cost_exceeds_ceiling():
    config = BudgetConfig(
        max_total_tokens=10_000_000,
        max_cost_usd=0.045,
        input_token_cost_usd=0.00001,
        output_token_cost_usd=0.00001,
        estimated_tokens_per_turn=1000,
    )
    budget = TokenBudget(config)
    budget.record_usage(2000, 2000)

    decision = budget.can_proceed()
    assert decision.allowed is False
    assert decision.reason == "Cost budget exhausted"


def test_status_message_follows_warning_threshold():
    budget = TokenBudget(BudgetConfig(max_turns=10, max_total_tokens=1_000_000, max_cost_usd=100.0))
    assert budget.get_status_message() == ""

    for _ in range(7):
        budget.record_usage(1, 1)
    assert budget.get_status_message() == ""

    budget.record_usage(1, 1)
    assert budget.get_status_message() == WRAPPING_UP_MESSAGE

    budget.record_usage(1, 1)
    budget.record_usage(1, 1)
    assert budget.get_status_message() == EXHAUSTED_MESSAGE


def test_status_message_is_terminal_after_a_denial():
    budget = TokenBudget(BudgetConfig(max_total_tokens=1000, estimated_tokens_per_turn=4000))
    assert budget.can_proceed().allowed is False
    assert budget.get_status_message() == EXHAUSTED_MESSAGE
