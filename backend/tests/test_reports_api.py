"""API-level tests for report generation, gatekeeping and knowledge review."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, List

import pytest
from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_reports"
TMP.mkdir(parents=True, exist_ok=True)
for stale in TMP.glob("reports.db*"):
    stale.unlink()
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""
os.environ["APP_MODE"] = "demo"
os.environ["AUTH_ENABLED"] = "false"
os.environ["STATE_DB_PATH"] = str(TMP / "reports.db")
os.environ["RATE_LIMIT_PER_MINUTE"] = "3"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from report_agent.core.config import get_settings  # noqa: E402
from report_agent.main import app  # noqa: E402
from report_agent.services.llm_client import LLMResponse, LLMToolCall  # noqa: E402

get_settings.cache_clear()


class ScriptedLLM:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls = 0

    async def complete(self, system_prompt, messages, tools=None) -> LLMResponse:
        self.calls += 1
        if not self.responses:
            raise AssertionError("unexpected LLM call")
        return self.responses.pop(0)


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as test_client:
        yield test_client


def _script(client: TestClient, *responses: LLMResponse) -> ScriptedLLM:
    llm = ScriptedLLM(list(responses))
    client.app.state.gatekeeper.orchestrator.llm = llm
    return llm


def _headers(user_id: str, customer_id: str = "1001", role: str = "customer") -> dict:
    return {"X-User-ID": user_id, "X-Customer-ID": customer_id, "X-Actor-Role": role}


def _answer(text: str) -> LLMResponse:
    return LLMResponse(text=text, input_tokens=120, output_tokens=30)


def test_health_and_root(client):
    assert client.get("/health").json() == {"status": "healthy"}
    root = client.get("/").json()
    assert root["endpoints"]["reports"] == "/reports"


def test_generate_builds_and_returns_a_report(client):
    llm = _script(
        client,
        LLMResponse(
            text="",
            tool_calls=[
                LLMToolCall(id="a", name="create_report_draft", arguments={"name": "Carrier volume"}),
                LLMToolCall(
                    id="b",
                    name="add_section",
                    arguments={
                        "section_type": "chart",
                        "title": "Loads by carrier",
                        "config": {"chartType": "bar", "groupBy": "carrier_name", "metric": {"field": "*", "aggregation": "count"}},
                    },
                ),
                LLMToolCall(id="c", name="finalize_report", arguments={"summary": "Here is your carrier volume report."}),
            ],
            input_tokens=900,
            output_tokens=200,
        ),
    )
    response = client.post(
        "/reports/generate",
        json={"prompt": "Show loads by carrier", "sessionId": "s-1"},
        headers=_headers("api-user-1"),
    )

    assert response.status_code == 200
    body = response.json()
    assert llm.calls == 1
    assert body["outcome"] == "success"
    assert body["message"] == "Here is your carrier volume report."
    assert body["report"]["name"] == "Carrier volume"
    assert body["report"]["customerId"] == "1001"
    assert body["report"]["sections"][0]["data"]
    assert [item["toolName"] for item in body["toolExecutions"]] == ["create_report_draft", "add_section", "finalize_report"]
    assert body["usage"]["inputTokens"] == 900
    assert body["usage"]["totalTokens"] == 1100
    assert body["usage"]["costUsd"] > 0

    usage = client.app.state.state_store.list_usage("1001", limit=1)[0]
    assert usage["status"] == "success"
    assert usage["session_id"] == "s-1"
    assert usage["input_tokens"] == 900


def test_customer_cannot_escalate_with_admin_flag(client):
    _script(client, _answer("The carrier cost is $500 on that load."))
    response = client.post(
        "/reports/generate",
        json={"prompt": "What did it cost?", "isAdmin": True},
        headers=_headers("api-user-2"),
    )

    assert response.status_code == 200
    message = response.json()["message"]
    assert "$500" not in message
    assert "[REDACTED]" in message


def test_admin_sees_unredacted_text(client):
    _script(client, _answer("The carrier cost is $500 on that load."))
    response = client.post(
        "/reports/generate",
        json={"prompt": "What did it cost?"},
        headers=_headers("api-admin-1", role="admin"),
    )
    assert response.json()["message"] == "The carrier cost is $500 on that load."


def test_ai_disabled_customer_is_rejected_and_audited(client):
    store = client.app.state.state_store
    store.set_customer_settings("3003", ai_enabled=False, daily_cap_usd=5.0)
    llm = _script(client, _answer("never"))

    response = client.post("/reports/generate", json={"prompt": "hello"}, headers=_headers("api-user-3", "3003"))

    assert response.status_code == 403
    assert response.json()["error"] == "ai_disabled"
    assert llm.calls == 0
    usage = store.list_usage("3003", limit=1)[0]
    assert usage["status"] == "ai_disabled"
    assert usage["input_tokens"] == 0
    assert usage["cost_usd"] == 0.0


def test_daily_cap_is_enforced(client):
    client.app.state.state_store.set_customer_settings("4004", ai_enabled=True, daily_cap_usd=0.0)
    _script(client, _answer("never"))

    response = client.post("/reports/generate", json={"prompt": "hello"}, headers=_headers("api-user-4", "4004"))

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "daily_budget_exceeded"
    assert body["dailyCap"] == 0.0
    assert body["spentToday"] == 0.0


def test_rate_limit_rejects_the_fourth_request_in_a_minute(client):
    _script(client, *[_answer(f"answer {index}") for index in range(3)])
    headers = _headers("api-user-5")
    for _ in range(3):
        assert client.post("/reports/generate", json={"prompt": "hi"}, headers=headers).status_code == 200

    limited = client.post("/reports/generate", json={"prompt": "hi"}, headers=headers)
    assert limited.status_code == 429
    body = limited.json()
    assert body["error"] == "rate_limit_exceeded"
    assert body["limitType"] == "minute"
    assert body["retryAfterSeconds"] > 0
    assert int(limited.headers["Retry-After"]) == body["retryAfterSeconds"]

    limits = client.get("/reports/limits", headers=headers).json()
    assert limits["status"]["allowed"] is False
    assert limits["windows"]["minute"]["remaining"] == 0


def test_open_circuit_returns_service_unavailable(client):
    breaker = client.app.state.circuit_breaker
    for _ in range(get_settings().circuit_failure_threshold):
        breaker.record_failure(RuntimeError("upstream down"))
    llm = _script(client, _answer("never"))

    try:
        response = client.post("/reports/generate", json={"prompt": "hi"}, headers=_headers("api-user-6", "6006"))
        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "service_unavailable"
        assert body["retryAfterSeconds"] > 0
        assert llm.calls == 0

        circuit = client.get("/reports/circuit", headers=_headers("api-admin-2", role="admin"))
        assert circuit.json()["state"] == "open"
        assert client.get("/reports/circuit", headers=_headers("api-user-6")).status_code == 403

        usage = client.app.state.state_store.list_usage("6006", limit=1)[0]
        assert usage["status"] == "circuit_open"
        assert usage["output_tokens"] == 0
    finally:
        breaker.reset()


def test_upstream_failure_is_a_500(client):
    class FailingLLM:
        async def complete(self, system_prompt, messages, tools=None):
            raise RuntimeError("socket closed")

    client.app.state.gatekeeper.orchestrator.llm = FailingLLM()
    response = client.post("/reports/generate", json={"prompt": "hi"}, headers=_headers("api-user-7", "7007"))

    assert response.status_code == 500
    assert response.json()["error"] == "upstream_error"
    assert client.app.state.state_store.list_usage("7007", limit=1)[0]["status"] == "error"
    client.app.state.circuit_breaker.reset()


def test_learned_terms_wait_for_review_then_activate(client):
    _script(client, _answer("Got it."))
    history = [{"role": "user", "content": "When I say 'hot loads' I mean expedited shipments."}]
    response = client.post(
        "/reports/generate",
        json={"prompt": "Show hot loads this month", "conversationHistory": history},
        headers=_headers("api-user-8", "8008"),
    )
    assert response.status_code == 200
    assert response.json()["learnings"][0]["key"] == "hot_loads"

    admin = _headers("api-admin-3", role="admin")
    pending = client.get("/knowledge/pending", params={"customerId": "8008"}, headers=admin).json()
    assert pending["count"] == 1
    item = pending["items"][0]
    assert item["isActive"] is False

    activated = client.post(f"/knowledge/{item['knowledgeId']}/activate", headers=admin)
    assert activated.status_code == 200
    assert activated.json()["isActive"] is True

    _script(client, _answer("Here are the hot loads by week."))
    replay = client.post(
        "/reports/generate",
        json={"prompt": "Now by week", "conversationHistory": history},
        headers=_headers("api-user-8", "8008"),
    )
    assert replay.status_code == 200
    assert client.get("/knowledge/pending", params={"customerId": "8008"}, headers=admin).json()["count"] == 0
    active = client.app.state.state_store.list_knowledge("8008", active_only=True)
    assert [item["key"] for item in active] == ["hot_loads"]

    assert client.post("/knowledge/999999/activate", headers=admin).status_code == 404
    assert client.get("/knowledge/pending", headers=_headers("api-user-8", "8008")).status_code == 403


def test_empty_prompt_is_rejected(client):
    response = client.post("/reports/generate", json={"prompt": ""}, headers=_headers("api-user-9"))
    assert response.status_code == 422


def test_limits_status_does_not_count_itself(client):
    limits = client.get("/reports/limits", headers=_headers("api-user-10")).json()

    assert limits["status"]["allowed"] is True
    assert limits["status"]["remaining"]["minute"] == 3
    assert limits["windows"]["minute"] == {"used": 0, "limit": 3, "remaining": 3}
