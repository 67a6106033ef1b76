"""Chat-completions client used by the report orchestrator."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import openai
from openai import AsyncOpenAI

from report_agent.core.config import Settings, get_settings
from report_agent.core.errors import UpstreamApiError
from report_agent.core.logging import logger


@dataclass(frozen=True)
class LLMToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class LLMResponse:
    """One model turn: optional text, requested tool calls and token usage."""

    text: str
    tool_calls: List[LLMToolCall] = field(default_factory=list)
    stop_reason: str = "stop"
    input_tokens: int = 0
    output_tokens: int = 0
    assistant_message: Dict[str, Any] = field(default_factory=dict)


class LLMClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMResponse: ...


def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAIChatClient:
    """OpenAI-compatible chat completions with function tools.

    Every transport or API failure surfaces as ``UpstreamApiError`` so the
    caller can record it against the circuit breaker.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self._client: Optional[AsyncOpenAI] = None

        key = self.settings.resolved_openai_api_key()
        if key:
            self._client = AsyncOpenAI(
                api_key=key,
                base_url=self.settings.openai_base_url or None,
                timeout=float(self.settings.llm_timeout_seconds),
                max_retries=0,
            )
        else:
            logger.info("LLM client not configured (missing OPENAI_API_KEY)")

    def is_configured(self) -> bool:
        return self._client is not None

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMResponse:
        if self._client is None:
            raise UpstreamApiError("LLM API key is not configured")

        request: Dict[str, Any] = {
            "model": self.settings.llm_model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "temperature": self.settings.llm_temperature,
            "max_tokens": self.settings.llm_max_tokens,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        try:
            completion = await self._client.chat.completions.create(**request)
        except openai.APIStatusError as exc:
            raise UpstreamApiError(f"LLM API error: {exc.status_code}", upstream_status=exc.status_code) from exc
        except openai.APIError as exc:
            raise UpstreamApiError(f"LLM request failed: {exc}") from exc

        if not completion.choices:
            raise UpstreamApiError("LLM returned no choices")

        choice = completion.choices[0]
        message = choice.message
        tool_calls = [
            LLMToolCall(
                id=call.id,
                name=str(call.function.name or ""),
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
            if getattr(call, "function", None) is not None
        ]
        usage = completion.usage
        return LLMResponse(
            text=str(message.content or "").strip(),
            tool_calls=tool_calls,
            stop_reason=str(choice.finish_reason or "stop"),
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            assistant_message=message.model_dump(mode="json", exclude_none=True),
        )
