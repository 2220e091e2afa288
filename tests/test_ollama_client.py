"""Tests for the Ollama API client."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from mailfilter.integrations.ollama import OllamaClient, pick_instruct_model
from mailfilter.schemas.filtering import ClassifierResponse


def _mock_response(content: str = "Hello!", **extra) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.raise_for_status = MagicMock()
    mock_response.json.return_value = {
        "model": "test",
        "message": {"role": "assistant", "content": content},
        "done": True,
        **extra,
    }
    return mock_response


class TestChatPayload:
    """Test that chat() builds the request payload correctly."""

    async def test_system_and_user_messages(self):
        client = OllamaClient("http://localhost:11434")

        with patch.object(
            client._client, "post", new_callable=AsyncMock, return_value=_mock_response()
        ) as mock_post:
            await client.chat(model="test-model", system="You are helpful.", prompt="hello")

        assert mock_post.call_args.args[0] == "/api/chat"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["model"] == "test-model"
        assert payload["stream"] is False
        assert payload["messages"] == [
            {"role": "system", "content": "You are helpful."},
            {"role": "user", "content": "hello"},
        ]
        assert payload["options"] == {"temperature": 0.1}

        await client.close()

    async def test_format_omitted_by_default(self):
        client = OllamaClient("http://localhost:11434")

        with patch.object(
            client._client, "post", new_callable=AsyncMock, return_value=_mock_response()
        ) as mock_post:
            await client.chat(model="m", system="s", prompt="p")

        assert "format" not in mock_post.call_args.kwargs["json"]
        await client.close()

    async def test_schema_format_passed_through(self):
        client = OllamaClient("http://localhost:11434")
        schema = ClassifierResponse.model_json_schema()

        with patch.object(
            client._client, "post", new_callable=AsyncMock, return_value=_mock_response()
        ) as mock_post:
            await client.chat(model="m", system="s", prompt="p", format=schema)

        assert mock_post.call_args.kwargs["json"]["format"] == schema
        await client.close()

    async def test_keep_alive_defaults_to_client_setting(self):
        client = OllamaClient("http://localhost:11434", default_keep_alive="30m")

        with patch.object(
            client._client, "post", new_callable=AsyncMock, return_value=_mock_response()
        ) as mock_post:
            await client.chat(model="m", system="s", prompt="p")
            await client.chat(model="m", system="s", prompt="p", keep_alive="0")

        first, second = mock_post.call_args_list
        assert first.kwargs["json"]["keep_alive"] == "30m"
        assert second.kwargs["json"]["keep_alive"] == "0"
        await client.close()


class TestChatResponse:
    async def test_returns_content_and_raw(self):
        client = OllamaClient("http://localhost:11434")
        response = _mock_response('{"decisions": []}', eval_count=12)

        with patch.object(client._client, "post", new_callable=AsyncMock, return_value=response):
            content, raw = await client.chat(model="m", system="s", prompt="p")

        assert content == '{"decisions": []}'
        assert raw.done is True
        assert raw.eval_count == 12
        await client.close()

    async def test_http_error_propagates(self):
        client = OllamaClient("http://localhost:11434")
        response = MagicMock()
        request = httpx.Request("POST", "http://localhost:11434/api/chat")
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "Server error '503 Service Unavailable'",
            request=request,
            response=httpx.Response(503, request=request),
        )

        with patch.object(client._client, "post", new_callable=AsyncMock, return_value=response):
            with pytest.raises(httpx.HTTPStatusError):
                await client.chat(model="m", system="s", prompt="p")
        await client.close()

    async def test_context_manager_closes_client(self):
        async with OllamaClient("http://localhost:11434/") as client:
            inner = client._client
        assert inner.is_closed


class TestPickInstructModel:
    def test_prefers_instruct_models(self):
        models = [{"name": "llama3:8b"}, {"name": "qwen2.5:7b-instruct"}]
        assert pick_instruct_model(models) == "qwen2.5:7b-instruct"

    def test_matches_family_names(self):
        assert pick_instruct_model([{"name": "nomic-embed"}, {"name": "gemma3"}]) == "gemma3"

    def test_falls_back_to_first(self):
        assert pick_instruct_model([{"name": "llama3"}, {"name": "mistral"}]) == "llama3"

    def test_empty_returns_none(self):
        assert pick_instruct_model([]) is None

    async def test_client_method_uses_tags_endpoint(self):
        client = OllamaClient("http://localhost:11434")
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json.return_value = {"models": [{"name": "phi3"}, {"name": "qwen2.5"}]}

        with patch.object(client._client, "get", new_callable=AsyncMock, return_value=response) as mock_get:
            assert await client.pick_instruct_model() == "qwen2.5"

        mock_get.assert_awaited_once_with("/api/tags")
        await client.close()
