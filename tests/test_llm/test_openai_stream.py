import json

import httpx
import pytest

from gitwright.exceptions import LLMAPIError
from gitwright.llm import LLMMessage, OllamaProvider, OpenAIProvider, TextChunk, ToolCallChunk, UsageChunk


def _sse(*chunks) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_stream_yields_text_then_assembled_tool_calls():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream"},
            content=_sse(
                {"choices": [{"delta": {"content": "Let me "}}]},
                {"choices": [{"delta": {"content": "check."}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "id": "call_a", "function": {"name": "getWeatherInformation", "arguments": '{"ci'}},
                ]}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "function": {"arguments": 'ty": "Paris"}'}},
                    {"index": 1, "id": "call_b", "function": {"name": "getLocalTime", "arguments": "not json"}},
                ]}}]},
                {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}},
            ),
        )

    provider = OpenAIProvider(model="gpt-4o-mini", api_key="sk-test", transport=httpx.MockTransport(handler))
    try:
        chunks = [
            chunk
            async for chunk in provider.stream(
                [LLMMessage(role="user", content="weather?")],
                tools=[{"name": "getWeatherInformation", "description": "weather", "parameters": {"type": "object"}}],
            )
        ]
    finally:
        await provider.close()

    assert [c.text for c in chunks if isinstance(c, TextChunk)] == ["Let me ", "check."]
    calls = [c.call for c in chunks if isinstance(c, ToolCallChunk)]
    assert [(call.id, call.name, call.arguments) for call in calls] == [
        ("call_a", "getWeatherInformation", {"city": "Paris"}),
        ("call_b", "getLocalTime", "not json"),
    ]
    assert isinstance(chunks[-1], UsageChunk)
    assert chunks[-1].usage["total_tokens"] == 15

    body = bodies[0]
    assert body["stream"] is True
    assert body["model"] == "gpt-4o-mini"
    assert body["tools"][0] == {
        "type": "function",
        "function": {"name": "getWeatherInformation", "description": "weather", "parameters": {"type": "object"}},
    }


@pytest.mark.asyncio
async def test_stream_raises_api_error_on_http_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text='{"error": "bad key"}')

    provider = OpenAIProvider(api_key="sk-wrong", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(LLMAPIError, match="401") as excinfo:
            async for _ in provider.stream([LLMMessage(role="user", content="hi")]):
                pass
    finally:
        await provider.close()

    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_complete_parses_tool_calls():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "model": "gpt-4o-mini",
            "choices": [{"message": {
                "content": None,
                "tool_calls": [{
                    "id": "call_x",
                    "type": "function",
                    "function": {"name": "getLocalTime", "arguments": '{"location": "Oslo"}'},
                }],
            }}],
            "usage": {"total_tokens": 7},
        })

    provider = OpenAIProvider(transport=httpx.MockTransport(handler))
    try:
        response = await provider.complete([LLMMessage(role="user", content="time in Oslo?")])
    finally:
        await provider.close()

    assert response.content == ""
    assert response.tool_calls[0].arguments == {"location": "Oslo"}
    assert response.usage == {"total_tokens": 7}


@pytest.mark.asyncio
async def test_ollama_stream_collects_tool_calls_until_done():
    lines = [
        {"message": {"content": "Hi"}, "done": False},
        {"message": {"content": "", "tool_calls": [
            {"function": {"name": "getLocalTime", "arguments": {"location": "Oslo"}}},
        ]}, "done": False},
        {"message": {"content": ""}, "done": True, "prompt_eval_count": 3, "eval_count": 4},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat"
        return httpx.Response(200, content="\n".join(json.dumps(line) for line in lines).encode("utf-8"))

    provider = OllamaProvider(base_url="http://ollama.local", transport=httpx.MockTransport(handler))
    try:
        chunks = [chunk async for chunk in provider.stream([LLMMessage(role="user", content="hi")])]
    finally:
        await provider.close()

    assert isinstance(chunks[0], TextChunk)
    assert chunks[1].call.name == "getLocalTime"
    assert chunks[1].call.arguments == {"location": "Oslo"}
    assert chunks[1].call.id == "ollama_call_0"
    assert chunks[2].usage == {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}
