"""LLM providers - direct HTTP calls to OpenAI-compatible and Ollama chat APIs."""

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from gitwright.exceptions import LLMAPIError, LLMError
from gitwright.logging import get_logger
from gitwright.messages import Message, TextPart, ToolInvocationPart

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"
OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: Any


@dataclass
class LLMMessage:
    """A message in provider-neutral chat format."""

    role: str  # "system", "user", "assistant", "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class TextChunk:
    text: str


@dataclass
class ToolCallChunk:
    call: ToolCall


@dataclass
class UsageChunk:
    usage: dict[str, int]


StreamChunk = TextChunk | ToolCallChunk | UsageChunk


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def to_provider_messages(messages: Sequence[Message], system_prompt: str = "") -> list[LLMMessage]:
    """Convert a model-view log into provider chat messages.

    Every invocation in the input is expected to be terminal. An assistant
    message is split wherever text follows a tool invocation, so tool
    results always directly follow the call that produced them.
    """
    converted: list[LLMMessage] = []
    if system_prompt:
        converted.append(LLMMessage(role="system", content=system_prompt))

    for message in messages:
        if message.role != "assistant":
            text = message.text_content()
            if text:
                converted.append(LLMMessage(role=message.role, content=text))
            continue

        current = LLMMessage(role="assistant")
        results: list[LLMMessage] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                if current.tool_calls:
                    converted.append(current)
                    converted.extend(results)
                    current, results = LLMMessage(role="assistant"), []
                current.content += part.text
            elif isinstance(part, ToolInvocationPart):
                current.tool_calls.append(ToolCall(id=part.call_id, name=part.tool_name, arguments=part.args))
                results.append(LLMMessage(
                    role="tool",
                    content=_result_text(part.result),
                    tool_call_id=part.call_id,
                    tool_name=part.tool_name,
                ))
        if current.content or current.tool_calls:
            converted.append(current)
        converted.extend(results)
    return converted


def _convert_tools(tools: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Wrap registry tool definitions in the function-calling envelope."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description") or "",
                "parameters": tool.get("parameters") or {},
            },
        }
        for tool in tools
        if tool.get("name")
    ]


def _parse_arguments(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw if raw is not None else {}
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        log.warning("Tool call arguments are not valid JSON", raw=raw[:200])
        return raw


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def stream(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream text deltas, then complete tool calls, then usage."""
        pass

    async def close(self) -> None:
        return None


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions provider."""

    def __init__(
        self,
        model: str = "gpt-4o-2024-11-20",
        api_key: str | None = None,
        base_url: str = OPENAI_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(timeout=120.0, follow_redirects=True, transport=transport)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _convert_messages(messages: list[LLMMessage]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                result.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
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
                                "arguments": call.arguments if isinstance(call.arguments, str) else json.dumps(call.arguments),
                            },
                        }
                        for call in msg.tool_calls
                    ],
                })
            else:
                result.append({"role": msg.role, "content": msg.content})
        return result

    def _body(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }
        if tools:
            body["tools"] = _convert_tools(tools)
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body

    async def complete(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/chat/completions"
        body = self._body(messages, tools, temperature, max_tokens, stream=False)
        try:
            log.debug("Calling OpenAI-compatible API", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"OpenAI API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            data = response.json()
            message = (data.get("choices") or [{}])[0].get("message") or {}
            tool_calls = [
                ToolCall(
                    id=tc.get("id", ""),
                    name=tc.get("function", {}).get("name", ""),
                    arguments=_parse_arguments(tc.get("function", {}).get("arguments")),
                )
                for tc in message.get("tool_calls") or []
            ]
            return LLMResponse(
                content=message.get("content") or "",
                tool_calls=tool_calls,
                model=data.get("model", self.model),
                usage=dict(data.get("usage") or {}),
            )
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"OpenAI HTTP error: {e}") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"OpenAI response decode error: {e}") from e

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion over server-sent events."""
        url = f"{self.base_url}/chat/completions"
        body = self._body(messages, tools, temperature, max_tokens, stream=True)
        # Tool-call fragments arrive keyed by index; ids and names come once, arguments in pieces.
        pending: dict[int, dict[str, str]] = {}
        usage: dict[str, int] = {}
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"OpenAI API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if payload == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload)
                    except json.JSONDecodeError:
                        continue
                    if chunk.get("usage"):
                        usage = dict(chunk["usage"])
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield TextChunk(delta["content"])
                        for fragment in delta.get("tool_calls") or []:
                            slot = pending.setdefault(int(fragment.get("index", 0)), {"id": "", "name": "", "arguments": ""})
                            if fragment.get("id"):
                                slot["id"] = fragment["id"]
                            function = fragment.get("function") or {}
                            if function.get("name"):
                                slot["name"] = function["name"]
                            if function.get("arguments"):
                                slot["arguments"] += function["arguments"]
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"OpenAI streaming error: {e}") from e

        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallChunk(ToolCall(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"]),
            ))
        if usage:
            yield UsageChunk(usage)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=120.0, follow_redirects=True, transport=transport)

    @staticmethod
    def _convert_messages(messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.arguments}}
                    for call in msg.tool_calls
                ]
            if msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    def _body(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": 65536,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
            "options": options,
        }
        if tools:
            body["tools"] = _convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _tool_calls(message: dict[str, Any], offset: int = 0) -> list[ToolCall]:
        return [
            ToolCall(
                id=tc.get("id") or f"ollama_call_{offset + i}",
                name=tc.get("function", {}).get("name", ""),
                arguments=_parse_arguments(tc.get("function", {}).get("arguments", {})),
            )
            for i, tc in enumerate(message.get("tool_calls") or [])
        ]

    @staticmethod
    def _usage(data: dict[str, Any]) -> dict[str, int]:
        prompt = int(data.get("prompt_eval_count", 0) or 0)
        completion = int(data.get("eval_count", 0) or 0)
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        }

    async def complete(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._body(messages, tools, temperature, max_tokens, stream=False)
        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            data = response.json()
            message = data.get("message", {})
            return LLMResponse(
                content=message.get("content", ""),
                tool_calls=self._tool_calls(message),
                model=self.model,
                usage=self._usage(data),
            )
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}") from e

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._body(messages, tools, temperature, max_tokens, stream=True)
        calls: list[ToolCall] = []
        usage: dict[str, int] = {}
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    message = chunk.get("message") or {}
                    if message.get("content"):
                        yield TextChunk(message["content"])
                    calls.extend(self._tool_calls(message, offset=len(calls)))
                    if chunk.get("done"):
                        usage = self._usage(chunk)
                        break
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}") from e

        for call in calls:
            yield ToolCallChunk(call)
        if usage:
            yield UsageChunk(usage)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openai",
    model: str = "gpt-4o-2024-11-20",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openai, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name == "openai":
        return OpenAIProvider(
            model=model,
            api_key=api_key,
            base_url=base_url or OPENAI_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    if name == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'openai' or 'ollama'.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from gitwright.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            api_key=cfg.resolved_model_api_key() or None,
            base_url=cfg.model.base_url or None,
        )
    return _provider


def set_provider(provider: LLMProvider) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
