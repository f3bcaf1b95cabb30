"""
Session administration for a scope: list, create, switch, rename, delete.

Mutations take the scope's lock with a bounded wait so they never interleave
with an in-flight message or an optimization commit.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..cache.message_cache import MessageCache
from ..config.settings import AppSettings, get_settings
from ..core.errors import SessionError
from ..core.models import ChatSession, Scope, ScopeSettings, SessionStats
from ..database.store import ConversationStore
from .guard import ConcurrencyGuard
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


class SessionService:
    """Manages the sessions and preferences of scopes."""

    def __init__(
        self,
        store: ConversationStore,
        cache: MessageCache,
        guard: ConcurrencyGuard,
        registry: ProviderRegistry | None = None,
        settings: AppSettings | None = None,
    ):
        self.store = store
        self.cache = cache
        self.guard = guard
        self.registry = registry
        self.settings = settings or get_settings()

    @asynccontextmanager
    async def _locked(self, scope: Scope) -> AsyncIterator[None]:
        timeout = self.settings.concurrency.optimizer_lock_timeout
        if not await self.guard.acquire(scope, timeout=timeout):
            raise SessionError(f"Scope {scope} is busy, try again")
        try:
            yield
        finally:
            self.guard.release(scope)

    async def get_or_create_active(self, scope: Scope) -> ChatSession:
        return await self.store.get_or_create_active(scope)

    async def list_sessions(self, scope: Scope) -> list[ChatSession]:
        return await self.store.list_sessions(scope)

    async def create_session(
        self, scope: Scope, name: str, activate: bool = True
    ) -> ChatSession:
        name = name.strip()
        if not name:
            raise SessionError("Session name cannot be empty")
        scope_settings = await self.store.get_scope_settings(scope)
        async with self._locked(scope):
            return await self.store.create_session(
                scope,
                name=name,
                provider=scope_settings.preferred_provider,
                model=scope_settings.preferred_model,
                activate=activate,
            )

    async def switch_session(self, scope: Scope, session_id: str) -> ChatSession:
        async with self._locked(scope):
            session = await self.store.activate_session(scope, session_id)
        logger.info(f"Scope {scope} switched to session {session_id}")
        return session

    async def rename_session(self, session_id: str, name: str) -> ChatSession:
        name = name.strip()
        if not name:
            raise SessionError("Session name cannot be empty", session_id)
        return await self.store.rename_session(session_id, name)

    async def delete_session(self, scope: Scope, session_id: str) -> ChatSession:
        """
        Delete a session of a scope.

        Returns:
            The scope's active session after the deletion

        Raises:
            SessionError: If the session is unknown or is the scope's last one
        """
        async with self._locked(scope):
            sessions = await self.store.list_sessions(scope)
            target = next((s for s in sessions if s.id == session_id), None)
            if target is None:
                raise SessionError(f"Session not found in scope {scope}", session_id)
            if len(sessions) == 1:
                raise SessionError("Cannot delete the only session of a scope", session_id)

            await self.store.delete_session(session_id)
            self.cache.invalidate(session_id)

            if target.is_active:
                # list_sessions is ordered by most recent activity
                replacement = next(s for s in sessions if s.id != session_id)
                return await self.store.activate_session(scope, replacement.id)

            active = await self.store.get_active_session(scope)
            if active is None:
                raise SessionError(f"Scope {scope} has no active session")
            return active

    async def get_session_stats(self, session_id: str) -> SessionStats:
        return await self.store.get_session_stats(session_id)

    async def set_scope_persona(self, scope: Scope, persona: str | None) -> ScopeSettings:
        persona = persona.strip() if persona else None
        return await self.store.update_scope_settings(scope, persona=persona or None)

    async def set_scope_provider(
        self, scope: Scope, provider: str | None, model: str | None = None
    ) -> ScopeSettings:
        """
        Set the scope's preferred provider and apply it to the active session.

        Raises:
            SessionError: If the provider is not registered
        """
        if provider:
            provider = provider.strip().lower()
            if self.registry is not None and provider not in self.registry:
                raise SessionError(f"Unknown provider '{provider}'")

        async with self._locked(scope):
            settings = await self.store.update_scope_settings(
                scope, preferred_provider=provider or None, preferred_model=model or None
            )
            active = await self.store.get_active_session(scope)
            if active is not None:
                active.provider = provider or None
                active.model = model or None
                await self.store.update_session(active)
        return settings
