"""
Google Gemini client using the ``generateContent`` REST API.
"""

import logging
from typing import Any

from ..core.models import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    MessageRole,
    TokenUsage,
)
from .base import ProviderError
from .http import HTTPProvider

logger = logging.getLogger(__name__)


class GeminiProvider(HTTPProvider):
    """
    Gemini provider.

    Gemini has no system role: system messages are sent as
    ``systemInstruction`` and assistant turns use the ``model`` role.
    """

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def _prepare_request(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> dict[str, Any]:
        system_parts = []
        contents = []
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                system_parts.append({"text": message.content})
                continue
            role = "model" if message.role == MessageRole.ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        request: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": self._resolve_max_tokens(options),
                "temperature": (
                    options.temperature if options.temperature is not None else self.temperature
                ),
            },
        }
        if system_parts:
            request["systemInstruction"] = {"parts": system_parts}
        return request

    async def _complete(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> CompletionResult:
        model = self._resolve_model(options)
        request = self._prepare_request(messages, options)
        data = await self._post(f"/models/{model}:generateContent", request, model=model)
        return self._parse_response(data, model)

    def _parse_response(self, data: dict[str, Any], model: str) -> CompletionResult:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise ProviderError(
                "No candidates in response",
                provider=self.name,
                model=model,
                details={"block_reason": feedback.get("blockReason")},
            )

        parts = (candidates[0].get("content") or {}).get("parts") or []
        content = "".join(part.get("text", "") for part in parts)

        usage_data = data.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=usage_data.get("promptTokenCount"),
            completion_tokens=usage_data.get("candidatesTokenCount"),
            total_tokens=usage_data.get("totalTokenCount"),
        )

        return CompletionResult(
            content=content,
            provider=self.name,
            model=data.get("modelVersion") or model,
            usage=usage,
            metadata={"finish_reason": candidates[0].get("finishReason")},
        )
