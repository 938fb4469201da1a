"""
Tests for the OpenRouter gateway in forkline/openrouter.py
"""

import json

import httpx
import pytest

from forkline.errors import EmptyCompletion, GatewayError, MissingCredential
from forkline.openrouter import (
    OpenRouterClient, normalize_assistant_content,
    get_api_key, set_api_key, clear_api_key,
    get_openrouter_client, invalidate_openrouter_client,
)

MESSAGES = [
    {"role": "system", "content": "You are a helpful AI assistant."},
    {"role": "user", "content": "Hello", "name": "Sam"},
]


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _client(handler):
    return OpenRouterClient("sk-test", base_url="https://openrouter.test/api/v1",
                            transport=httpx.MockTransport(handler))


class TestNormalizeAssistantContent:

    def test_string_passes_through(self):
        assert normalize_assistant_content("Hello there") == "Hello there"

    def test_parts_concatenated(self):
        parts = ["Hel", {"type": "text", "text": "lo"}, {"type": "image", "url": "x"}, 42]
        assert normalize_assistant_content(parts) == "Hello"

    def test_other_shapes_are_empty(self):
        assert normalize_assistant_content(None) == ""
        assert normalize_assistant_content({"text": "hi"}) == ""
        assert normalize_assistant_content(12) == ""


class TestSendChat:
    """Tests for OpenRouterClient.send_chat."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        """Test endpoint, auth header and wire parameter names."""
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion("Hi Sam."))

        text = await _client(handler).send_chat(
            "openrouter/test-model", MESSAGES,
            temperature=0.8, top_p=0.9, frequency_penalty=0.2, presence_penalty=0.1, max_tokens=300,
        )

        assert text == "Hi Sam."
        assert captured["url"] == "https://openrouter.test/api/v1/chat/completions"
        assert captured["auth"] == "Bearer sk-test"
        assert captured["body"] == {
            "model": "openrouter/test-model",
            "messages": MESSAGES,
            "temperature": 0.8,
            "top_p": 0.9,
            "frequency_penalty": 0.2,
            "presence_penalty": 0.1,
            "max_tokens": 300,
        }

    @pytest.mark.asyncio
    async def test_unset_parameters_omitted(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion("ok"))

        await _client(handler).send_chat("m", MESSAGES, temperature=0.5)

        assert set(captured["body"]) == {"model", "messages", "temperature"}

    @pytest.mark.asyncio
    async def test_reply_trimmed(self):
        client = _client(lambda request: httpx.Response(200, json=_completion("  Hello \n")))
        assert await client.send_chat("m", MESSAGES) == "Hello"

    @pytest.mark.asyncio
    async def test_part_list_reply(self):
        body = _completion([{"type": "text", "text": "Hello "}, {"type": "text", "text": "Sam"}])
        client = _client(lambda request: httpx.Response(200, json=body))
        assert await client.send_chat("m", MESSAGES) == "Hello Sam"

    @pytest.mark.asyncio
    async def test_whitespace_reply_is_empty_completion(self):
        client = _client(lambda request: httpx.Response(200, json=_completion("   ")))
        with pytest.raises(EmptyCompletion):
            await client.send_chat("m", MESSAGES)

    @pytest.mark.asyncio
    async def test_missing_choices_is_empty_completion(self):
        client = _client(lambda request: httpx.Response(200, json={"choices": []}))
        with pytest.raises(EmptyCompletion):
            await client.send_chat("m", MESSAGES)

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        body = {"error": {"message": "Rate limit exceeded", "code": 429}}
        client = _client(lambda request: httpx.Response(429, json=body))

        with pytest.raises(GatewayError) as exc_info:
            await client.send_chat("m", MESSAGES)

        assert str(exc_info.value) == "OpenRouter returned HTTP 429: Rate limit exceeded"

    @pytest.mark.asyncio
    async def test_error_body_with_ok_status(self):
        client = _client(lambda request: httpx.Response(200, json={"error": {"message": "No endpoints"}}))

        with pytest.raises(GatewayError, match="No endpoints"):
            await client.send_chat("m", MESSAGES)

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError, match="API Error"):
            await _client(handler).send_chat("m", MESSAGES)

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(GatewayError):
            await client.send_chat("m", MESSAGES)


class TestApiKey:
    """Tests for the stored credential and client cache."""

    def test_unset_key(self):
        assert get_api_key() is None
        with pytest.raises(MissingCredential):
            get_openrouter_client()

    def test_blank_key_counts_as_missing(self):
        set_api_key("   ")
        assert get_api_key() is None
        with pytest.raises(MissingCredential):
            get_openrouter_client()

    def test_key_trimmed(self):
        set_api_key("  sk-live  ")
        assert get_api_key() == "sk-live"

    def test_client_cached_per_key(self):
        set_api_key("sk-one")
        first = get_openrouter_client()
        assert get_openrouter_client() is first

        set_api_key("sk-two")
        second = get_openrouter_client()
        assert second is not first
        assert second.api_key == "sk-two"

    def test_clear_key(self):
        set_api_key("sk-one")
        assert clear_api_key() is True
        assert get_api_key() is None

    def test_invalidate_drops_cached_client(self):
        set_api_key("sk-one")
        first = get_openrouter_client()
        invalidate_openrouter_client()
        assert get_openrouter_client() is not first
