"""
LLM_CLIENT
==========

Chat-completion clients with tool calling, over plain HTTP (``requests``).

Conversation messages are kept in OpenAI chat format inside schedCore::

    {"role": "system", "content": "..."}
    {"role": "user", "content": "..."}
    {"role": "assistant", "content": "...", "tool_calls": [{"id", "type", "function": {"name", "arguments"}}]}
    {"role": "tool", "tool_call_id": "...", "content": "<json>"}

``AnthropicClient`` converts to and from the Messages API on the wire.

Every transport-level problem (connection error, HTTP >= 400, unparseable
body) raises ``ModelInvocationError``. That is the only exception the agent
loop lets through.

Usage::

    client = create_llm_client(LLMConfig(provider="openai", model="openai/gpt-4o-mini"))
    response = client.complete_with_tools(messages=[...], tools=registry.list())
    for call in response.tool_calls:
        print(call.id, call.name, call.parameters)
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .errors import ConfigurationError, ModelInvocationError

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


# ============================================================================
# RESPONSE STRUCTURES
# ============================================================================

@dataclass
class ToolCall:
    """One tool call requested by the model."""
    id: str
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""
    parse_error: Optional[str] = None  # Set when arguments were not a JSON object


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: LLMUsage = field(default_factory=LLMUsage)
    stop_reason: Optional[str] = None
    model: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def parse_tool_arguments(raw: Any) -> tuple:
    """Return (parameters, parse_error) from a JSON string or dict."""
    if isinstance(raw, dict):
        return raw, None
    if raw is None or raw == "":
        return {}, None
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        return {}, f"arguments are not valid JSON: {e}"
    if not isinstance(parsed, dict):
        return {}, f"arguments must be a JSON object, got {type(parsed).__name__}"
    return parsed, None


def assistant_message(response: LLMResponse) -> Dict:
    """Conversation entry for a model reply (with its tool calls, if any)."""
    message: Dict[str, Any] = {"role": "assistant", "content": response.content or ""}
    if response.tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": call.raw_arguments or json.dumps(call.parameters),
                },
            }
            for call in response.tool_calls
        ]
    return message


def tool_message(call_id: str, content: str) -> Dict:
    return {"role": "tool", "tool_call_id": call_id, "content": content}


# ============================================================================
# CLIENTS
# ============================================================================

class BaseLLMClient(ABC):
    """A chat model that can request tool calls."""

    provider = "base"

    def __init__(self, model: str, temperature: float = 0.7, max_tokens: int = 2000):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @abstractmethod
    def complete_with_tools(
        self,
        messages: List[Dict],
        tools: Optional[List] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """
        Args:
            messages: Conversation in OpenAI chat format
            tools: ToolDefinition objects to advertise
            max_tokens: Per-call override

        Raises:
            ModelInvocationError: on any transport-level failure
        """


class _HTTPClient(BaseLLMClient):

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        timeout_seconds: float = 60,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(model, temperature, max_tokens)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def _post(self, path: str, payload: Dict, headers: Dict[str, str]) -> Dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.post(url, json=payload, headers=headers, timeout=self.timeout_seconds)
        except requests.exceptions.RequestException as e:
            raise ModelInvocationError(f"Model request to {url} failed: {e}") from e

        if resp.status_code >= 400:
            body = resp.text[:500] if resp.text else ""
            raise ModelInvocationError(f"Model HTTP {resp.status_code}: {body}", resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise ModelInvocationError(f"Model returned a non-JSON body: {e}") from e


class OpenAICompatibleClient(_HTTPClient):
    """``/chat/completions`` endpoints: OpenRouter, OpenAI, and compatibles."""

    provider = "openai"

    def __init__(self, model: str, api_key: str, base_url: str = DEFAULT_OPENAI_BASE_URL, **kwargs):
        super().__init__(model, api_key, base_url, **kwargs)

    def complete_with_tools(self, messages, tools=None, max_tokens=None) -> LLMResponse:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            payload["tools"] = [t.to_schema() for t in tools]
            payload["tool_choice"] = "auto"

        data = self._post(
            "/chat/completions",
            payload,
            {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )

        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelInvocationError(f"Malformed completion response: {str(data)[:300]}") from e

        calls = []
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            raw = function.get("arguments") or ""
            parameters, error = parse_tool_arguments(raw)
            calls.append(ToolCall(
                id=tc.get("id") or f"call_{len(calls)}",
                name=function.get("name", ""),
                parameters=parameters,
                raw_arguments=raw if isinstance(raw, str) else json.dumps(raw),
                parse_error=error,
            ))

        usage = data.get("usage") or {}
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=calls,
            usage=LLMUsage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)),
            stop_reason=choice.get("finish_reason"),
            model=data.get("model", self.model),
        )


class AnthropicClient(_HTTPClient):
    """Anthropic Messages API."""

    provider = "anthropic"

    def __init__(self, model: str, api_key: str, base_url: str = DEFAULT_ANTHROPIC_BASE_URL, **kwargs):
        super().__init__(model, api_key, base_url, **kwargs)

    @staticmethod
    def convert_messages(messages: List[Dict]) -> tuple:
        """Split out the system prompt and convert the rest to Messages API form."""
        system_parts, converted = [], []
        for message in messages:
            role = message.get("role")
            if role == "system":
                system_parts.append(message.get("content", ""))
            elif role == "user":
                converted.append({"role": "user", "content": message.get("content", "")})
            elif role == "assistant":
                blocks = []
                if message.get("content"):
                    blocks.append({"type": "text", "text": message["content"]})
                for tc in message.get("tool_calls") or []:
                    parameters, _ = parse_tool_arguments(tc["function"].get("arguments"))
                    blocks.append({
                        "type": "tool_use",
                        "id": tc["id"],
                        "name": tc["function"]["name"],
                        "input": parameters,
                    })
                converted.append({"role": "assistant", "content": blocks})
            elif role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message["tool_call_id"],
                    "content": message.get("content", ""),
                }
                previous = converted[-1] if converted else None
                # Results for one assistant turn share a single user message
                if (previous and previous["role"] == "user"
                        and isinstance(previous["content"], list)
                        and all(b.get("type") == "tool_result" for b in previous["content"])):
                    previous["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
            else:
                raise ValueError(f"Unsupported message role: {role!r}")
        return "\n\n".join(p for p in system_parts if p), converted

    def complete_with_tools(self, messages, tools=None, max_tokens=None) -> LLMResponse:
        system, converted = self.convert_messages(messages)
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
            "messages": converted,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [t.to_anthropic_schema() for t in tools]

        data = self._post(
            "/messages",
            payload,
            {
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )

        if not isinstance(data.get("content"), list):
            raise ModelInvocationError(f"Malformed messages response: {str(data)[:300]}")

        text_parts, calls = [], []
        for block in data["content"]:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                parameters, error = parse_tool_arguments(block.get("input"))
                calls.append(ToolCall(
                    id=block.get("id", f"toolu_{len(calls)}"),
                    name=block.get("name", ""),
                    parameters=parameters,
                    raw_arguments=json.dumps(block.get("input") or {}),
                    parse_error=error,
                ))

        usage = data.get("usage") or {}
        return LLMResponse(
            content="".join(text_parts),
            tool_calls=calls,
            usage=LLMUsage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
            stop_reason=data.get("stop_reason"),
            model=data.get("model", self.model),
        )


# ============================================================================
# FACTORY
# ============================================================================

def create_llm_client(llm_config, session: Optional[requests.Session] = None) -> BaseLLMClient:
    """Build a client from an ``LLMConfig``; the API key comes from the environment."""
    api_key = os.environ.get(llm_config.api_key_env, "")
    if not api_key:
        raise ConfigurationError(
            f"Missing API key: set the {llm_config.api_key_env} environment variable"
        )

    common = dict(
        temperature=llm_config.temperature,
        max_tokens=llm_config.max_tokens,
        timeout_seconds=llm_config.request_timeout_seconds,
        session=session,
    )
    if llm_config.provider == "anthropic":
        client = AnthropicClient(
            llm_config.model, api_key, llm_config.base_url or DEFAULT_ANTHROPIC_BASE_URL, **common
        )
    elif llm_config.provider in ("openai", "openrouter"):
        client = OpenAICompatibleClient(
            llm_config.model, api_key, llm_config.base_url or DEFAULT_OPENAI_BASE_URL, **common
        )
    else:
        raise ConfigurationError(f"Unknown LLM provider: {llm_config.provider!r}")

    logger.info("LLM client ready: provider=%s model=%s", client.provider, client.model)
    return client
