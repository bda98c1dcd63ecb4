import pytest

from gitwright.llm import OllamaProvider, OpenAIProvider, create_provider


@pytest.mark.asyncio
async def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434/",
    )
    try:
        assert isinstance(provider, OllamaProvider)
        assert provider.model == "llama3.2"
        assert provider.base_url == "http://localhost:11434"
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_create_provider_defaults_to_openai_endpoint():
    provider = create_provider(provider="OpenAI", model="gpt-4o-mini", api_key="sk-test")
    try:
        assert isinstance(provider, OpenAIProvider)
        assert provider.model == "gpt-4o-mini"
        assert provider.base_url == "https://api.openai.com/v1"
        assert provider._headers()["Authorization"] == "Bearer sk-test"
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_create_provider_honours_base_url_override():
    provider = create_provider(provider="openai", base_url="http://localhost:8000/v1")
    try:
        assert provider.base_url == "http://localhost:8000/v1"
        assert "Authorization" not in provider._headers()
    finally:
        await provider.close()


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(provider="carrier-pigeon")
