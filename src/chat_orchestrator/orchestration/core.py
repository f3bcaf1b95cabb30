"""
CoreOrchestrator: prompt assembly and execution with provider fallback.

Every request walks a fallback chain built from the requested provider and
the configured fallback order. Unknown or unconfigured providers are skipped,
each attempt is bounded by the request timeout, and the first success wins.
Individual provider errors never escape; exhaustion raises
``ProviderExhaustedError`` with the error of every attempted provider.
"""

import asyncio
import logging

from ..clients import (
    ProviderError,
    ProviderExhaustedError,
    ProviderNotFoundError,
    ProviderTimeoutError,
)
from ..config.settings import AppSettings, get_settings
from ..core.models import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    MessageRole,
    Scope,
)
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)

CONTEXT_MARKER = "Previous conversation context:"
MEMORY_MARKER = "Relevant memories:"


class CoreOrchestrator:
    """Assembles requests and routes them through the provider registry."""

    def __init__(self, registry: ProviderRegistry, settings: AppSettings | None = None):
        self.registry = registry
        self.settings = settings or get_settings()

    @property
    def request_timeout(self) -> float:
        return self.settings.llm.request_timeout

    def build_system_message(
        self,
        persona_override: str | None = None,
        session_context: str | None = None,
        memory_context: str | None = None,
    ) -> ChatMessage:
        """
        Assemble the system message.

        Order is fixed: base persona, custom persona, summarized context,
        memories. Parts are separated by a blank line.
        """
        parts = [self.settings.llm.global_system_message]
        if persona_override and persona_override.strip():
            parts.append(persona_override.strip())
        if session_context and session_context.strip():
            parts.append(f"{CONTEXT_MARKER}\n{session_context.strip()}")
        if memory_context and memory_context.strip():
            parts.append(f"{MEMORY_MARKER}\n{memory_context.strip()}")
        return ChatMessage(role=MessageRole.SYSTEM, content="\n\n".join(parts))

    async def stateless(
        self,
        prompt: str,
        persona_override: str | None = None,
        token_limit: int | None = None,
        provider_override: str | None = None,
    ) -> CompletionResult:
        """
        One-off generation without history (summaries, single exchanges).

        Raises:
            ProviderExhaustedError: If no provider produced a result
        """
        messages = [
            self.build_system_message(persona_override),
            ChatMessage(role=MessageRole.USER, content=prompt),
        ]
        options = CompletionOptions(
            max_tokens=token_limit or self.settings.chat.default_token_limit
        )
        start = self.registry.select_provider_name(provider_override)
        return await self._execute(start, messages, options)

    async def stateful(
        self,
        scope: Scope,
        messages: list[ChatMessage],
        persona_override: str | None = None,
        session_context: str | None = None,
        provider_override: str | None = None,
        memory_context: str | None = None,
        model: str | None = None,
        session_id: str | None = None,
    ) -> CompletionResult:
        """
        Execute a full conversation turn.

        Args:
            scope: Conversation scope (used for logging and request tagging)
            messages: History plus the new user message, oldest first
            persona_override: Scope or session persona
            session_context: Summary of older turns
            provider_override: Provider to start the chain with
            memory_context: Pre-formatted memory block
            model: Model for the starting provider; fallbacks use their default
            session_id: Session identifier forwarded to the backend

        Raises:
            ProviderExhaustedError: If no provider produced a result
        """
        system_message = self.build_system_message(
            persona_override, session_context, memory_context
        )
        conversation = [system_message] + [
            message for message in messages if message.role != MessageRole.SYSTEM
        ]
        options = CompletionOptions(
            max_tokens=self.settings.chat.default_token_limit,
            model=model,
            conversation_id=session_id,
        )
        start = self.registry.select_provider_name(provider_override)
        logger.debug(
            f"Stateful request for scope {scope}: {len(conversation)} messages via {start}"
        )
        return await self._execute(start, conversation, options)

    async def _execute(
        self,
        start: str,
        messages: list[ChatMessage],
        options: CompletionOptions,
    ) -> CompletionResult:
        chain = self.registry.fallback_chain(start)
        max_attempts = self.registry.max_attempts(start)
        prompt_text = "\n".join(message.content for message in messages)

        attempts: dict[str, Exception] = {}
        skipped: list[str] = []

        for name in chain:
            if len(attempts) >= max_attempts:
                break

            try:
                provider = self.registry.resolve(name)
            except ProviderNotFoundError:
                logger.warning(f"Provider '{name}' is not registered, skipping")
                skipped.append(name)
                continue

            if not provider.is_available():
                logger.info(f"Provider '{name}' is not available, skipping")
                skipped.append(name)
                continue

            # A requested model only makes sense for the provider it was chosen for
            attempt_options = options
            if options.model and name != start:
                attempt_options = options.model_copy(update={"model": None})

            try:
                result = await asyncio.wait_for(
                    provider.send(messages, attempt_options), timeout=self.request_timeout
                )
            except TimeoutError:
                error: Exception = ProviderTimeoutError(
                    f"No response within {self.request_timeout}s",
                    provider=name,
                    model=attempt_options.model,
                )
            except ProviderError as e:
                error = e
            except Exception as e:
                logger.exception(f"Unexpected failure from provider '{name}'")
                error = e
            else:
                if len(attempts) or skipped:
                    logger.info(f"Provider '{name}' answered after fallback from '{start}'")
                return result.with_estimated_usage(prompt_text)

            attempts[name] = error
            logger.warning(f"Provider '{name}' failed: {error}")

        logger.error(
            f"All providers failed starting from '{start}': "
            f"attempted={list(attempts)}, skipped={skipped}"
        )
        raise ProviderExhaustedError(attempts, skipped)
