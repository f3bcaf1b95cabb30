"""
History optimization: fold aged-out messages into the session context.

A pass has two phases. The summarization phase talks to the backends
without holding the scope lock so chat traffic is not blocked by a slow
summary. The commit phase takes the scope lock with a bounded wait,
re-reads the session and writes the new context only if nothing else
rewrote it in the meantime.
"""

import logging

from ..cache.message_cache import MessageCache
from ..clients import ProviderExhaustedError
from ..config.settings import AppSettings, get_settings
from ..core.errors import OptimizationError
from ..core.models import ChatMessage, ChatSession
from ..database.store import ConversationStore
from ..utils.tokens import estimate_tokens
from .core import CoreOrchestrator
from .guard import ConcurrencyGuard

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = (
    "Summarize this conversation history concisely, preserving key context "
    "and topics (max {limit} tokens):\n\n{history}"
)
CONSOLIDATION_PROMPT = (
    "Consolidate these conversation summaries into one concise summary "
    "(max {limit} tokens):\n\n{context}"
)
CONTEXT_SEPARATOR = "\n\n"


def format_history(messages: list[ChatMessage]) -> str:
    return "\n".join(f"[{message.role.value}]: {message.content}" for message in messages)


class HistoryOptimizer:
    """Summarizes old messages of a session into its context."""

    def __init__(
        self,
        core: CoreOrchestrator,
        store: ConversationStore,
        cache: MessageCache,
        guard: ConcurrencyGuard,
        settings: AppSettings | None = None,
    ):
        self.core = core
        self.store = store
        self.cache = cache
        self.guard = guard
        self.settings = settings or get_settings()

    async def optimize_session(self, session_id: str) -> ChatSession | None:
        """Queue handler: load the session and optimize it."""
        session = await self.store.get_session(session_id)
        if session is None:
            logger.info(f"Session {session_id} vanished before optimization")
            return None
        return await self.optimize(session)

    async def optimize(self, session: ChatSession) -> ChatSession | None:
        """
        Run one optimization pass.

        Returns:
            The updated session, or None when there was nothing to do, the
            pass was deferred, or it failed. Never raises.
        """
        chat = self.settings.chat
        # Durable tier: the fast tier may hold only the newest window
        messages = await self.store.get_recent_messages(session.id)
        keep = chat.keep_recent_messages
        if len(messages) <= keep:
            logger.debug(f"Session {session.id} has {len(messages)} messages, nothing to fold")
            return None

        old = messages[:-keep]

        try:
            candidate = await self._build_context(session, old)
        except OptimizationError as e:
            logger.error(f"History optimization failed: {e}")
            return None

        return await self._commit(session, old, candidate)

    async def _build_context(self, session: ChatSession, old: list[ChatMessage]) -> str:
        chat = self.settings.chat
        summary = await self._generate(
            SUMMARY_PROMPT.format(limit=chat.summary_token_limit, history=format_history(old)),
            session,
            "summarization",
        )

        candidate = summary
        if session.context:
            candidate = f"{session.context}{CONTEXT_SEPARATOR}{summary}"

        if len(candidate) > chat.consolidation_char_threshold:
            logger.info(
                f"Context of session {session.id} reached {len(candidate)} chars, consolidating"
            )
            candidate = await self._generate(
                CONSOLIDATION_PROMPT.format(limit=chat.summary_token_limit, context=candidate),
                session,
                "consolidation",
            )
        return candidate

    async def _generate(self, prompt: str, session: ChatSession, phase: str) -> str:
        try:
            result = await self.core.stateless(
                prompt,
                token_limit=self.settings.chat.summary_token_limit,
                provider_override=session.provider,
            )
        except ProviderExhaustedError as e:
            raise OptimizationError(
                f"{phase.capitalize()} failed: {e}",
                session_id=session.id,
                details={"attempts": list(e.attempts), "skipped": e.skipped},
            ) from e

        text = result.content.strip()
        if not text:
            raise OptimizationError(
                f"{phase.capitalize()} returned empty text", session_id=session.id
            )
        return text

    async def _commit(
        self, session: ChatSession, old: list[ChatMessage], context: str
    ) -> ChatSession | None:
        timeout = self.settings.concurrency.optimizer_lock_timeout
        if not await self.guard.acquire(session.scope_key, timeout=timeout):
            logger.info(f"Scope {session.scope_key} busy, deferring optimization of {session.id}")
            return None

        try:
            current = await self.store.get_session(session.id)
            if current is None or current.context != session.context:
                logger.info(f"Session {session.id} changed during optimization, deferring")
                return None

            summarized_ids = [message.id for message in old]
            updated = await self.store.apply_summary(
                session.id, context, estimate_tokens(context), summarized_ids
            )
            # Summarized messages are the oldest in context; the fast tier is its newest suffix
            remaining = await self.store.get_recent_messages(session.id)
            self.cache.clear_old_messages(session.id, len(remaining))
            logger.info(
                f"Optimized session {session.id}: folded {len(old)} messages, "
                f"context ~{updated.context_tokens} tokens"
            )
            return updated
        except Exception as e:
            error = OptimizationError(f"Commit failed: {e}", session_id=session.id)
            logger.error(f"History optimization failed: {error}")
            return None
        finally:
            self.guard.release(session.scope_key)
