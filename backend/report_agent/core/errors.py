"""Error taxonomy for the report generation service.

Every error a caller can see inherits from ``ReportAgentError`` and carries the
HTTP status and machine-readable code it maps to, so routers never have to
translate exceptions by hand.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ReportAgentError(Exception):
    """Base exception for all report agent errors."""

    status_code: int = 500
    error_code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.details}


class RateLimitExceededError(ReportAgentError):
    """Caller exceeded one of the rolling request windows."""

    status_code = 429
    error_code = "rate_limit_exceeded"
    retryable = True

    def __init__(self, limit_type: str, retry_after_seconds: int) -> None:
        super().__init__(
            f"Rate limit exceeded for the {limit_type} window",
            details={"limitType": limit_type, "retryAfterSeconds": retry_after_seconds},
        )
        self.limit_type = limit_type
        self.retry_after_seconds = retry_after_seconds


class DailyBudgetExceededError(ReportAgentError):
    """Customer spent its daily AI budget."""

    status_code = 429
    error_code = "daily_budget_exceeded"
    retryable = True

    def __init__(self, spent_today: float, daily_cap: float) -> None:
        super().__init__(
            "Daily AI budget reached for this customer",
            details={"spentToday": round(spent_today, 6), "dailyCap": daily_cap},
        )
        self.spent_today = spent_today
        self.daily_cap = daily_cap


class AiDisabledError(ReportAgentError):
    """AI report generation is switched off for the customer."""

    status_code = 403
    error_code = "ai_disabled"

    def __init__(self, customer_id: str) -> None:
        super().__init__(
            "AI report generation is disabled for this customer",
            details={"customerId": customer_id},
        )


class CircuitOpenError(ReportAgentError):
    """The LLM circuit is open; no upstream call was attempted."""

    status_code = 503
    error_code = "service_unavailable"
    retryable = True

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "The AI service is temporarily unavailable. Please try again shortly.",
            details={"retryAfterSeconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class UpstreamApiError(ReportAgentError):
    """Transport or API failure while calling the LLM."""

    status_code = 500
    error_code = "upstream_error"

    def __init__(self, message: str, upstream_status: Optional[int] = None) -> None:
        details: Dict[str, Any] = {}
        if upstream_status is not None:
            details["upstreamStatus"] = upstream_status
        super().__init__(message, details=details)
        self.upstream_status = upstream_status


class ToolInputError(ReportAgentError):
    """A tool call carried missing or malformed input."""

    status_code = 400
    error_code = "invalid_tool_input"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message, details={"tool": tool_name})
        self.tool_name = tool_name


class DataQueryError(ReportAgentError):
    """The data-query layer rejected a request (unknown table, hidden field...)."""

    status_code = 400
    error_code = "data_query_error"

