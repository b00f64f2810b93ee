"""Model provider abstraction and OpenAI-compatible HTTP provider."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from opendev_agent.exceptions import LLMAPIError, LLMError
from opendev_agent.logging import get_logger

log = get_logger(__name__)


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class LLMResponse:
    """One model turn."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning: str = ""
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def prompt_tokens(self) -> int:
        return int(self.usage.get("prompt_tokens", 0) or 0)

    @property
    def completion_tokens(self) -> int:
        return int(self.usage.get("completion_tokens", 0) or 0)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Calls the model for exactly one step of the tool-calling loop."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    async def close(self) -> None:
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Provider for any ``/chat/completions`` endpoint (OpenAI, LM Studio, Ollama)."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout: float = 600.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to chat-completions format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                })
            elif msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments),
                            },
                        }
                        for call in msg.tool_calls
                    ],
                })
            else:
                result.append({"role": msg.role, "content": msg.content or ""})
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Tool call arguments are not valid JSON", raw=str(raw)[:200])
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _parse_response(self, data: dict[str, Any]) -> LLMResponse:
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Malformed model response: no choices")
        message = choices[0].get("message") or {}

        tool_calls = [
            ToolCall(
                id=str(tc.get("id") or f"call_{idx}"),
                name=str((tc.get("function") or {}).get("name", "")),
                arguments=self._parse_arguments((tc.get("function") or {}).get("arguments")),
            )
            for idx, tc in enumerate(message.get("tool_calls") or [])
        ]

        raw_usage = data.get("usage") or {}
        usage = {
            "prompt_tokens": int(raw_usage.get("prompt_tokens", 0) or 0),
            "completion_tokens": int(raw_usage.get("completion_tokens", 0) or 0),
        }
        usage["total_tokens"] = usage["prompt_tokens"] + usage["completion_tokens"]

        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            reasoning=message.get("reasoning_content") or message.get("reasoning") or "",
            model=str(data.get("model") or self.model),
            usage=usage,
        )

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate one model turn."""
        url = f"{self.base_url}/chat/completions"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": False,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            log.debug("Calling model", model=self.model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=headers)
            if not response.is_success:
                raise LLMAPIError(
                    f"Model API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            return self._parse_response(response.json())
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Model HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Model response decode error: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openai_compatible",
    model: str = "gpt-4",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 4096,
    timeout: float = 600.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openai_compatible, openai, lmstudio, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Base URL of the chat-completions API
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: Transport timeout in seconds

    Returns:
        Configured LLMProvider instance
    """
    if provider in ("openai_compatible", "openai", "lmstudio", "ollama"):
        default_base = base_url or (
            "http://127.0.0.1:11434/v1" if provider == "ollama" else "https://api.openai.com/v1"
        )
        return OpenAICompatibleProvider(
            model=model,
            base_url=default_base,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use an OpenAI-compatible endpoint.")


def provider_from_config() -> LLMProvider:
    """Build a provider from the global configuration."""
    from opendev_agent.config import get_config

    cfg = get_config().model
    return create_provider(
        provider=cfg.provider,
        model=cfg.model,
        api_key=cfg.api_key or None,
        base_url=cfg.base_url or None,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
        timeout=cfg.request_timeout,
    )
