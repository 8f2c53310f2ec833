# =============================================================================
# Multi-Provider LLM Abstraction — Tool Use + Plain Completion
# =============================================================================
#
# Two entry points, one Protocol:
#
#   converse()  one reasoning step of the research agent: messages + tool
#               schemas (+ an optional thinking budget) in, text blocks and
#               tool calls out, plus the provider-native assistant message
#               to append to the conversation
#   complete()  single-shot text completion (document answers, source
#               quality assessment)
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — native SDK; extended thinking
#   │                              (thinking={"type": "enabled", ...}),
#   │                              tool_result blocks in one user message
#   ├── OpenAICompatibleProvider — function calling; role="tool" results;
#   │                              the thinking budget is ignored
#   └── get_llm_provider()       — lazy singleton from settings
#
# DESIGN DECISION: Conversation messages stay provider-native. The
# orchestrator appends ConverseResult.assistant_message and
# tool_result_messages() verbatim, so thinking blocks (which must be
# echoed back unchanged) survive every round-trip.
#
# DESIGN DECISION: SDK clients are built with max_retries=0 and an explicit
# timeout. Every call takes an "llm" rate-limit slot and runs under the
# shared transient-retry policy, so retry behaviour is identical across
# providers.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from app.config import settings
from app.services.model_resolver import ModelResolver, as_model_source
from app.services.rate_limiter import get_rate_limiter
from app.services.retry import acall_with_retry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Standardised single-shot completion."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


@dataclass
class ToolSpec:
    """Provider-neutral tool definition (JSON Schema for the input)."""

    name: str
    description: str
    input_schema: dict


@dataclass
class ToolCall:
    id: str
    name: str
    input: dict


@dataclass
class ToolResult:
    tool_call_id: str
    content: str  # JSON-encoded result payload
    is_error: bool = False


@dataclass
class ConverseResult:
    text_blocks: list[str]
    tool_calls: list[ToolCall]
    assistant_message: dict
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(t for t in self.text_blocks if t)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    async def converse(
        self,
        messages: list[dict],
        tools: list[ToolSpec],
        system: str | None = None,
        thinking_budget: int | None = None,
        max_tokens: int | None = None,
    ) -> ConverseResult:
        """One model turn with tools available."""
        ...

    def tool_result_messages(self, results: list[ToolResult]) -> list[dict]:
        """Provider-native messages carrying tool results back to the model."""
        ...

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


def build_anthropic_client(api_key: str | None = None):
    """AsyncAnthropic with SDK retries disabled and the shared call timeout."""
    from anthropic import AsyncAnthropic

    resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
    if not resolved_key:
        raise ValueError(
            "No Anthropic API key configured. Set LLM_API_KEY or "
            "ANTHROPIC_API_KEY in .env"
        )
    return AsyncAnthropic(
        api_key=resolved_key,
        max_retries=0,
        timeout=settings.external_call_timeout_seconds,
    )


class AnthropicProvider:
    """
    Claude through the native SDK.

    The model comes from a ModelResolver (latest model of the configured
    family, cached with a TTL) unless a fixed model name is given.
    System prompts are the top-level `system=` kwarg, never a message.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | ModelResolver | None = None,
        client=None,
    ) -> None:
        self._client = client or build_anthropic_client(api_key)
        self._model = as_model_source(model)
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens
        logger.info("Initialized AnthropicProvider")

    async def _create(self, operation: str, **kwargs):
        get_rate_limiter("llm").acquire()
        return await acall_with_retry(
            lambda: self._client.messages.create(**kwargs),
            operation=operation,
        )

    async def converse(
        self,
        messages: list[dict],
        tools: list[ToolSpec],
        system: str | None = None,
        thinking_budget: int | None = None,
        max_tokens: int | None = None,
    ) -> ConverseResult:
        model = await self._model()
        budget = settings.llm_thinking_budget if thinking_budget is None else thinking_budget
        max_out = max_tokens or self._max_tokens

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "tools": [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ],
        }
        if system:
            kwargs["system"] = system
        if budget and budget > 0:
            # max_tokens must exceed the thinking budget; temperature must stay default
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
            kwargs["max_tokens"] = max(max_out, budget + 2000)
        else:
            kwargs["max_tokens"] = max_out
            kwargs["temperature"] = self._temperature

        response = await self._create("llm.converse", **kwargs)

        text_blocks: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_blocks.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, input=dict(block.input or {})))

        return ConverseResult(
            text_blocks=text_blocks,
            tool_calls=tool_calls,
            assistant_message={
                "role": "assistant",
                "content": [block.model_dump(exclude_none=True) for block in response.content],
            },
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
        )

    def tool_result_messages(self, results: list[ToolResult]) -> list[dict]:
        if not results:
            return []
        return [{
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": r.tool_call_id,
                    "content": r.content,
                    "is_error": r.is_error,
                }
                for r in results
            ],
        }]

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": await self._model(),
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._create("llm.complete", **kwargs)

        content = "".join(block.text for block in response.content if block.type == "text")
        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Any OpenAI-compatible chat API with function calling.

        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        client=None,
    ) -> None:
        resolved_base_url = base_url or settings.llm_base_url
        if client is None:
            from openai import AsyncOpenAI

            resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
            if not resolved_key:
                raise ValueError(
                    "No API key configured for OpenAI-compatible provider. "
                    "Set LLM_API_KEY in .env"
                )
            client_kwargs: dict = {
                "api_key": resolved_key,
                "max_retries": 0,
                "timeout": settings.external_call_timeout_seconds,
            }
            if resolved_base_url:
                client_kwargs["base_url"] = resolved_base_url
            client = AsyncOpenAI(**client_kwargs)

        self._client = client
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def _create(self, operation: str, **kwargs):
        get_rate_limiter("llm").acquire()
        return await acall_with_retry(
            lambda: self._client.chat.completions.create(**kwargs),
            operation=operation,
        )

    @staticmethod
    def _with_system(messages: list[dict], system: str | None) -> list[dict]:
        return ([{"role": "system", "content": system}] if system else []) + list(messages)

    async def converse(
        self,
        messages: list[dict],
        tools: list[ToolSpec],
        system: str | None = None,
        thinking_budget: int | None = None,
        max_tokens: int | None = None,
    ) -> ConverseResult:
        response = await self._create(
            "llm.converse",
            model=self._model,
            messages=self._with_system(messages, system),
            tools=[
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in tools
            ],
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature,
        )

        choice = response.choices[0]
        message = choice.message
        tool_calls: list[ToolCall] = []
        raw_calls: list[dict] = []
        for call in message.tool_calls or []:
            arguments = call.function.arguments or "{}"
            try:
                parsed = json.loads(arguments)
            except json.JSONDecodeError:
                logger.warning("Unparseable arguments for tool %s: %r", call.function.name, arguments)
                parsed = {}
            tool_calls.append(ToolCall(
                id=call.id,
                name=call.function.name,
                input=parsed if isinstance(parsed, dict) else {},
            ))
            raw_calls.append({
                "id": call.id,
                "type": "function",
                "function": {"name": call.function.name, "arguments": arguments},
            })

        assistant_message: dict = {"role": "assistant", "content": message.content or ""}
        if raw_calls:
            assistant_message["tool_calls"] = raw_calls

        usage = response.usage
        return ConverseResult(
            text_blocks=[message.content] if message.content else [],
            tool_calls=tool_calls,
            assistant_message=assistant_message,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            stop_reason=choice.finish_reason,
        )

    def tool_result_messages(self, results: list[ToolResult]) -> list[dict]:
        return [
            {"role": "tool", "tool_call_id": r.tool_call_id, "content": r.content}
            for r in results
        ]

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        response = await self._create(
            "llm.complete",
            model=self._model,
            messages=self._with_system(messages, system),
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Return the configured provider ("anthropic" or "openai_compatible").

    The Anthropic provider owns a ModelResolver, so the model list is
    fetched at most once per TTL for the life of the process.
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider(model=ModelResolver())
    return _provider


def dump_tool_payload(payload: Any) -> str:
    """JSON-encode a tool result; dates and enums fall back to str()."""
    return json.dumps(payload, default=str)

