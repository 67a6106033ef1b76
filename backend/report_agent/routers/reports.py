"""API routes for conversational report generation."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from report_agent.core.auth import CallerContext, get_caller_context, require_roles
from report_agent.models.report import CircuitStatus, GenerateReportRequest, GenerateReportResponse
from report_agent.services.circuit_breaker import CircuitBreaker
from report_agent.services.gatekeeper import ReportGatekeeper
from report_agent.services.rate_limiter import RateLimiter


router = APIRouter(prefix="/reports", tags=["reports"])


def get_gatekeeper(request: Request) -> ReportGatekeeper:
    return request.app.state.gatekeeper


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_circuit_breaker(request: Request) -> CircuitBreaker:
    return request.app.state.circuit_breaker


@router.post("/generate", response_model=GenerateReportResponse, response_model_by_alias=True, response_model_exclude_none=True)
async def generate_report(
    request: GenerateReportRequest,
    context: CallerContext = Depends(get_caller_context),
    gatekeeper: ReportGatekeeper = Depends(get_gatekeeper),
):
    return await gatekeeper.generate(context, request)


@router.get("/limits")
def get_limits(
    context: CallerContext = Depends(get_caller_context),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    status = limiter.check_limit(context.user_id, include_current=False)
    return {
        "userId": context.user_id,
        "status": status.model_dump(mode="json", by_alias=True),
        "windows": limiter.current_usage(context.user_id),
    }


@router.get("/circuit", response_model=CircuitStatus, response_model_by_alias=True)
def get_circuit(
    context: CallerContext = Depends(require_roles("admin")),
    breaker: CircuitBreaker = Depends(get_circuit_breaker),
):
    return CircuitStatus(
        state=breaker.get_state().value,
        recent_failures=breaker.recent_failures(),
        retry_after_seconds=round(breaker.get_time_until_retry(), 2),
    )
