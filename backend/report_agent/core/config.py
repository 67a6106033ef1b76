"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # LLM (any OpenAI-compatible chat completions endpoint)
    openai_api_key: str = ""
    openai_base_url: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 4096
    llm_timeout_seconds: float = 60.0

    # Application
    log_level: str = "INFO"
    app_mode: str = "demo"
    state_db_path: str = "./data/report_agent.db"
    auth_enabled: bool = False
    # `token:customer_id:role[:user_id]` comma-separated
    caller_tokens: str = ""
    default_customer_id: str = "1001"
    demo_dataset_seed: int = 42
    demo_dataset_rows: int = 400

    # Per-request budget governor
    budget_max_turns: int = 10
    budget_max_total_tokens: int = 50000
    budget_max_cost_usd: float = 0.50
    budget_warning_threshold_percent: float = 80.0
    budget_estimated_tokens_per_turn: int = 4000
    input_token_cost_usd: float = 0.000003
    output_token_cost_usd: float = 0.000015
    estimate_input_share: float = 0.3

    # Circuit breaker around the LLM endpoint
    circuit_failure_threshold: int = 5
    circuit_failure_window_seconds: float = 60.0
    circuit_reset_timeout_seconds: float = 30.0
    circuit_half_open_successes: int = 2
    circuit_half_open_max_probes: int = 3

    # Rate limiter windows
    rate_limit_per_minute: int = 10
    rate_limit_per_hour: int = 100
    rate_limit_per_day: int = 500

    # Gatekeeper defaults for customers without an explicit settings row
    default_daily_cap_usd: float = 5.0
    ai_enabled_by_default: bool = True

    # Fields hidden from non-admin callers
    restricted_fields: str = "cost,margin,margin_percent,carrier_cost,cost_per_mile,carrier_pay"

    def resolved_openai_api_key(self) -> str | None:
        """
        Resolve API key for OpenAI-compatible clients.

        Local endpoints (e.g. Ollama) often do not require a real key, but the
        OpenAI SDK still expects a non-empty value.
        """
        key = (self.openai_api_key or "").strip()
        if key and key != "sk-your-key-here":
            return key
        if self._is_local_base_url():
            return "local-dev"
        return None

    def _is_local_base_url(self) -> bool:
        if not self.openai_base_url:
            return False
        try:
            host = (urlparse(self.openai_base_url).hostname or "").lower()
        except ValueError:
            return False
        return host in {"localhost", "127.0.0.1", "::1"} or host.endswith(".local")

    def restricted_field_set(self) -> frozenset[str]:
        return frozenset(
            item.strip().lower() for item in self.restricted_fields.split(",") if item.strip()
        )

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
