"""Report Agent - conversational report generation API"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from report_agent.core.config import Settings, get_settings
from report_agent.core.errors import ReportAgentError
from report_agent.core.logging import configure_logging, logger
from report_agent.routers import knowledge, reports
from report_agent.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from report_agent.services.gatekeeper import ReportGatekeeper
from report_agent.services.llm_client import OpenAIChatClient
from report_agent.services.query_service import DataQueryService
from report_agent.services.rate_limiter import RateLimitConfig, RateLimiter
from report_agent.services.sanitizer import OutputSanitizer
from report_agent.services.shipment_dataset import DemoShipmentDataset
from report_agent.services.state_store import StateStore


def resolve_data_service(settings: Settings, injected: Optional[DataQueryService] = None) -> DataQueryService:
    """Pick the shipment data source: an injected service, or the seeded demo rows in demo mode."""
    if injected is not None:
        return injected
    mode = settings.normalized_app_mode()
    if mode != "demo":
        raise RuntimeError(
            f"APP_MODE={mode} needs a DataQueryService on app.state.data_service; "
            "the synthetic demo dataset only runs with APP_MODE=demo"
        )
    return DemoShipmentDataset(
        seed=settings.demo_dataset_seed,
        rows_per_customer=settings.demo_dataset_rows,
        restricted_fields=settings.restricted_field_set(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)

    dataset = resolve_data_service(settings, getattr(app.state, "data_service", None))
    restricted = settings.restricted_field_set()
    store = StateStore(settings.state_db_path)
    breaker = CircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            failure_window_seconds=settings.circuit_failure_window_seconds,
            reset_timeout_seconds=settings.circuit_reset_timeout_seconds,
            half_open_successes=settings.circuit_half_open_successes,
            half_open_max_probes=settings.circuit_half_open_max_probes,
        )
    )
    limiter = RateLimiter(
        store,
        RateLimitConfig(
            per_minute=settings.rate_limit_per_minute,
            per_hour=settings.rate_limit_per_hour,
            per_day=settings.rate_limit_per_day,
        ),
    )
    llm = OpenAIChatClient(settings)

    app.state.state_store = store
    app.state.circuit_breaker = breaker
    app.state.rate_limiter = limiter
    app.state.gatekeeper = ReportGatekeeper(
        settings=settings,
        store=store,
        rate_limiter=limiter,
        breaker=breaker,
        data=dataset,
        llm=llm,
        sanitizer=OutputSanitizer(restricted),
    )
    logger.info(
        "Report Agent API starting",
        version="0.1.0",
        app_mode=settings.normalized_app_mode(),
        llm_model=settings.llm_model,
        llm_configured=llm.is_configured(),
    )
    yield
    # Shutdown
    store.close()
    logger.info("Report Agent API shutting down")


app = FastAPI(
    title="Report Agent API",
    description="LLM-driven report builder with budget, rate-limit and circuit-breaker governance",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReportAgentError)
async def report_agent_error_handler(request: Request, exc: ReportAgentError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.error_code, message=exc.message)
    headers = {}
    retry_after = exc.details.get("retryAfterSeconds")
    if exc.retryable and retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal server error"})


# Include routers
app.include_router(reports.router)
app.include_router(knowledge.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Report Agent API",
        "version": "0.1.0",
        "description": "Conversational report generation",
        "endpoints": {
            "reports": "/reports",
            "knowledge": "/knowledge",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
