"""
Tests for the OpenAI-compatible and Gemini HTTP providers.

Requests are served by ``httpx.MockTransport`` so no network is used.
"""

import json

import httpx
import pytest

from chat_orchestrator.clients.base import (
    AuthenticationError,
    InvalidRequestError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)
from chat_orchestrator.clients.gemini import GeminiProvider
from chat_orchestrator.clients.openai import OpenAICompatibleProvider
from chat_orchestrator.core.models import ChatMessage, CompletionOptions, MessageRole


def conversation():
    return [
        ChatMessage(role=MessageRole.SYSTEM, content="Be brief."),
        ChatMessage(role=MessageRole.USER, content="Hi"),
        ChatMessage(role=MessageRole.ASSISTANT, content="Hello!"),
        ChatMessage(role=MessageRole.USER, content="How are you?"),
    ]


class Recorder:
    """Transport handler returning scripted responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def openai_provider(handler, **kwargs):
    kwargs.setdefault("max_retries", 0)
    return OpenAICompatibleProvider(
        "openai",
        api_key="sk-test",
        base_url="https://api.openai.test/v1",
        default_model="gpt-test",
        max_output_tokens=512,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def gemini_provider(handler, **kwargs):
    kwargs.setdefault("max_retries", 0)
    return GeminiProvider(
        "gemini",
        api_key="g-test",
        base_url="https://gemini.test/v1beta",
        default_model="gemini-test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


OPENAI_OK = {
    "id": "chatcmpl-1",
    "model": "gpt-test-2024",
    "choices": [{"message": {"role": "assistant", "content": "Fine, thanks."}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 21, "completion_tokens": 4, "total_tokens": 25},
}


class TestOpenAICompatibleProvider:
    @pytest.mark.asyncio
    async def test_successful_completion(self):
        recorder = Recorder(httpx.Response(200, json=OPENAI_OK))
        provider = openai_provider(recorder)

        result = await provider.send(
            conversation(), CompletionOptions(max_tokens=100, conversation_id="session-1")
        )
        await provider.aclose()

        assert result.content == "Fine, thanks."
        assert result.provider == "openai"
        assert result.model == "gpt-test-2024"
        assert result.usage.total_tokens == 25
        assert result.metadata["finish_reason"] == "stop"

        request = recorder.requests[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = recorder.body()
        assert body["model"] == "gpt-test"
        assert body["max_tokens"] == 100
        assert body["temperature"] == 0.6
        assert body["user"] == "session-1"
        assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_model_override_and_output_cap(self):
        recorder = Recorder(httpx.Response(200, json=OPENAI_OK))
        provider = openai_provider(recorder)

        await provider.send(conversation(), CompletionOptions(model="gpt-other", max_tokens=4000))

        body = recorder.body()
        assert body["model"] == "gpt-other"
        assert body["max_tokens"] == 512

    @pytest.mark.asyncio
    async def test_missing_usage(self):
        payload = {"choices": [{"message": {"content": "x"}}]}
        provider = openai_provider(Recorder(httpx.Response(200, json=payload)))

        result = await provider.send(conversation())

        assert result.usage.total_tokens is None
        assert result.model == "gpt-test"

    @pytest.mark.asyncio
    async def test_no_choices(self):
        provider = openai_provider(Recorder(httpx.Response(200, json={"choices": []})))

        with pytest.raises(ProviderError, match="No choices"):
            await provider.send(conversation())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, status):
        provider = openai_provider(
            Recorder(httpx.Response(status, json={"error": {"message": "bad key"}}))
        )

        with pytest.raises(AuthenticationError, match="bad key"):
            await provider.send(conversation())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404, 422])
    async def test_invalid_request_errors(self, status):
        provider = openai_provider(Recorder(httpx.Response(status, text="nope")))

        with pytest.raises(InvalidRequestError) as exc_info:
            await provider.send(conversation())

        assert exc_info.value.details["status_code"] == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 500, 502, 503])
    async def test_transient_errors(self, status):
        provider = openai_provider(Recorder(httpx.Response(status, text="busy")))

        with pytest.raises(TransientProviderError):
            await provider.send(conversation())

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        provider = openai_provider(
            Recorder(httpx.Response(429, headers={"retry-after": "3"}, json={"error": {}}))
        )

        with pytest.raises(RateLimitError) as exc_info:
            await provider.send(conversation())

        assert exc_info.value.retry_after == 3

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, mock_asyncio_sleep):
        recorder = Recorder(httpx.Response(401, json={"error": {"message": "bad key"}}))
        provider = openai_provider(recorder, max_retries=3)

        with pytest.raises(AuthenticationError):
            await provider.send(conversation())

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, mock_asyncio_sleep):
        recorder = Recorder(
            httpx.Response(503, text="busy"),
            httpx.Response(200, json=OPENAI_OK),
        )
        provider = openai_provider(recorder, max_retries=2)

        result = await provider.send(conversation())

        assert result.content == "Fine, thanks."
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_network_timeout(self, mock_asyncio_sleep):
        recorder = Recorder(httpx.ReadTimeout("timed out"))
        provider = openai_provider(recorder, max_retries=1)

        with pytest.raises(ProviderTimeoutError):
            await provider.send(conversation())

        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_connection_error(self):
        provider = openai_provider(Recorder(httpx.ConnectError("refused")))

        with pytest.raises(TransientProviderError, match="Network error"):
            await provider.send(conversation())

    def test_unavailable_without_key(self):
        provider = OpenAICompatibleProvider(
            "grok", base_url="https://api.x.ai/v1", default_model="grok"
        )
        assert provider.is_available() is False


GEMINI_OK = {
    "candidates": [
        {"content": {"role": "model", "parts": [{"text": "Doing "}, {"text": "well."}]}, "finishReason": "STOP"}
    ],
    "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 3, "totalTokenCount": 15},
}


class TestGeminiProvider:
    @pytest.mark.asyncio
    async def test_successful_completion(self):
        recorder = Recorder(httpx.Response(200, json=GEMINI_OK))
        provider = gemini_provider(recorder)

        result = await provider.send(conversation(), CompletionOptions(max_tokens=64))
        await provider.aclose()

        assert result.content == "Doing well."
        assert result.provider == "gemini"
        assert result.usage.total_tokens == 15
        assert result.metadata["finish_reason"] == "STOP"

        request = recorder.requests[0]
        assert request.url.path == "/v1beta/models/gemini-test:generateContent"
        assert request.headers["x-goog-api-key"] == "g-test"

        body = recorder.body()
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["generationConfig"]["maxOutputTokens"] == 64

    @pytest.mark.asyncio
    async def test_blocked_prompt(self):
        payload = {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}}
        provider = gemini_provider(Recorder(httpx.Response(200, json=payload)))

        with pytest.raises(ProviderError) as exc_info:
            await provider.send(conversation())

        assert exc_info.value.details["block_reason"] == "SAFETY"

    @pytest.mark.asyncio
    async def test_error_mapping(self):
        provider = gemini_provider(
            Recorder(httpx.Response(403, json={"error": {"message": "API key invalid"}}))
        )

        with pytest.raises(AuthenticationError, match="API key invalid"):
            await provider.send(conversation())
