"""
OpenAI-compatible chat completions client.

Serves both OpenAI and xAI Grok, which expose the same ``/chat/completions``
API under different base URLs.
"""

import logging
from typing import Any

from ..core.models import ChatMessage, CompletionOptions, CompletionResult, TokenUsage
from .base import ProviderError
from .http import HTTPProvider

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(HTTPProvider):
    """Provider for any backend speaking the OpenAI chat completions protocol."""

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _prepare_request(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self._resolve_model(options),
            "messages": [
                {"role": message.role.value, "content": message.content}
                for message in messages
            ],
            "max_tokens": self._resolve_max_tokens(options),
            "temperature": (
                options.temperature if options.temperature is not None else self.temperature
            ),
        }
        if options.conversation_id:
            request["user"] = options.conversation_id
        return request

    async def _complete(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> CompletionResult:
        request = self._prepare_request(messages, options)
        data = await self._post("/chat/completions", request, model=request["model"])
        return self._parse_response(data, request["model"])

    def _parse_response(self, data: dict[str, Any], model: str) -> CompletionResult:
        """Parse chat completions response into standardized format."""
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("No choices in response", provider=self.name, model=model)

        content = (choices[0].get("message") or {}).get("content") or ""

        usage_data = data.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=usage_data.get("prompt_tokens"),
            completion_tokens=usage_data.get("completion_tokens"),
            total_tokens=usage_data.get("total_tokens"),
        )

        return CompletionResult(
            content=content,
            provider=self.name,
            model=data.get("model") or model,
            usage=usage,
            metadata={
                "response_id": data.get("id"),
                "finish_reason": choices[0].get("finish_reason"),
            },
        )
