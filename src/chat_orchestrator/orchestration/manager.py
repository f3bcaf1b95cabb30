"""
ConversationManager: the entry point front-ends call for every user message.

It composes the concurrency guard, the message cache, the core orchestrator
and the background optimization queue. ``handle_message`` never raises for
backend failures; it returns a ``HandleResult`` carrying either the reply,
a skip marker, or a stable user-facing failure message and the error.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from ..cache.message_cache import MessageCache
from ..clients import ProviderExhaustedError, ProviderNotFoundError
from ..config.settings import AppSettings, get_settings
from ..core.models import ChatMessage, ChatSession, CompletionResult, MessageRole, Scope
from ..database.store import ConversationStore
from .background import OptimizationQueue
from .core import CoreOrchestrator
from .guard import ConcurrencyGuard
from .optimizer import HistoryOptimizer
from .registry import ProviderRegistry
from .sessions import SessionService
from .types import HandleResult, MemoryProvider

logger = logging.getLogger(__name__)


class ConversationManager:
    """
    Scoped conversation handling with provider fallback and history budgeting.

    Collaborators default to instances built from settings; tests and
    embedding applications can pass their own.
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        store: ConversationStore | None = None,
        cache: MessageCache | None = None,
        guard: ConcurrencyGuard | None = None,
        settings: AppSettings | None = None,
        memory_provider: MemoryProvider | None = None,
    ):
        self.settings = settings or get_settings()
        concurrency = self.settings.concurrency

        self.registry = registry or ProviderRegistry.from_settings(self.settings)
        self.store = store or ConversationStore(settings=self.settings)
        self.cache = cache or MessageCache(self.store, settings=self.settings)
        self.guard = guard or ConcurrencyGuard(
            idle_seconds=concurrency.lock_idle_seconds,
            cleanup_interval=concurrency.cleanup_interval,
        )
        self.memory_provider = memory_provider

        self.core = CoreOrchestrator(self.registry, self.settings)
        self.optimizer = HistoryOptimizer(
            self.core, self.store, self.cache, self.guard, self.settings
        )
        self.queue = OptimizationQueue(
            self.optimizer.optimize_session, maxsize=concurrency.optimization_queue_size
        )
        self.sessions = SessionService(
            self.store, self.cache, self.guard, self.registry, self.settings
        )

        logger.debug("ConversationManager initialized")

    async def start(self) -> None:
        """Prepare storage and start background workers."""
        await self.store.initialize()
        self.queue.start()
        self.guard.start_cleanup()

    async def aclose(self) -> None:
        await self.queue.stop()
        await self.guard.stop()
        await self.registry.aclose()
        await self.store.close()

    async def __aenter__(self) -> "ConversationManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def handle_message(
        self,
        scope: Scope,
        user_id: str | None,
        text: str,
        provider: str | None = None,
    ) -> HandleResult:
        """
        Handle one user message for a scope.

        Args:
            scope: Conversation scope
            user_id: Author of the message
            text: Message text
            provider: Provider to try first, overriding scope preferences

        Returns:
            HandleResult; ``skipped`` when the scope already had a message in
            flight (no backend call is made for it)
        """
        if not await self.guard.try_acquire(scope):
            logger.info(f"Scope {scope} busy, skipping message from {user_id}")
            return HandleResult(reply=None, skipped=True)

        try:
            return await self._handle_locked(scope, user_id, text, provider)
        except ProviderExhaustedError as e:
            logger.error(f"No provider could answer in scope {scope}: {e}")
            return HandleResult(reply=self.settings.chat.failure_message, error=e)
        except Exception as e:
            logger.exception(f"Failed to handle message in scope {scope}")
            return HandleResult(reply=self.settings.chat.failure_message, error=e)
        finally:
            self.guard.release(scope)

    async def _handle_locked(
        self,
        scope: Scope,
        user_id: str | None,
        text: str,
        provider: str | None,
    ) -> HandleResult:
        scope_settings = await self.store.get_scope_settings(scope)
        session = await self.store.get_or_create_active(
            scope,
            provider=scope_settings.preferred_provider,
            model=scope_settings.preferred_model,
        )

        history = await self.cache.get_messages(session.id)
        memory_context = await self._recall(scope, text)

        user_message = ChatMessage(role=MessageRole.USER, content=text, author_id=user_id)
        working = history + [user_message]

        provider_name = self.registry.select_provider_name(
            provider, session.provider or scope_settings.preferred_provider
        )
        # An explicit provider request uses that provider's default model
        model = None if provider else (session.model or scope_settings.preferred_model)

        result = await self.core.stateful(
            scope,
            working,
            persona_override=scope_settings.persona,
            session_context=session.context,
            provider_override=provider_name,
            memory_context=memory_context,
            model=model,
            session_id=session.id,
        )

        assistant_message = ChatMessage(role=MessageRole.ASSISTANT, content=result.content)
        stored = await self.cache.append_messages(session.id, [user_message, assistant_message])

        session.message_count += len(stored)
        session.estimated_tokens = sum(message.estimated_tokens for message in history + stored)
        session.total_tokens_used += result.usage.total_tokens or 0
        session.last_activity_at = datetime.now(UTC)
        await self.store.update_session(session)

        enqueued = False
        if self.needs_optimization(session, result.provider):
            enqueued = self.queue.enqueue(session.id)
            if enqueued:
                logger.info(f"Scheduled history optimization for session {session.id}")

        return HandleResult(
            reply=result.content,
            provider=result.provider,
            session_id=session.id,
            optimization_enqueued=enqueued,
        )

    def needs_optimization(self, session: ChatSession, provider_name: str) -> bool:
        """Whether the session's budget reached the trigger fraction of the provider's window."""
        try:
            provider = self.registry.resolve(provider_name)
        except ProviderNotFoundError:
            return False
        threshold = provider.max_context_tokens * self.settings.chat.optimization_trigger_fraction
        return session.context_tokens + session.estimated_tokens >= threshold

    async def _recall(self, scope: Scope, text: str) -> str | None:
        if self.memory_provider is None:
            return None
        try:
            return await self.memory_provider(scope, text)
        except Exception as e:
            logger.warning(f"Memory lookup failed for scope {scope}: {e}")
            return None

    async def exchange(
        self, scope: Scope, prompt: str, provider: str | None = None
    ) -> CompletionResult:
        """
        One-off exchange using the scope persona, without touching history.

        Raises:
            ProviderExhaustedError: If no provider produced a result
        """
        scope_settings = await self.store.get_scope_settings(scope)
        return await self.core.stateless(
            prompt,
            persona_override=scope_settings.persona,
            provider_override=provider or scope_settings.preferred_provider,
        )
