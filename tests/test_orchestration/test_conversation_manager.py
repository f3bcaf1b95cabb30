"""
End-to-end tests for ConversationManager with fake providers and a temp database.
"""

import asyncio

import pytest
import pytest_asyncio

from chat_orchestrator.cache.message_cache import MessageCache
from chat_orchestrator.clients.base import (
    ProviderExhaustedError,
    ProviderTimeoutError,
    TransientProviderError,
)
from chat_orchestrator.core.models import MessageRole, Scope
from chat_orchestrator.orchestration.core import CONTEXT_MARKER, MEMORY_MARKER
from chat_orchestrator.orchestration.manager import ConversationManager
from chat_orchestrator.orchestration.registry import ProviderRegistry

SCOPE = Scope(server_id="guild", channel_id="chan", user_id="user")


@pytest_asyncio.fixture
async def manager(registry, store, test_settings):
    manager = ConversationManager(registry=registry, store=store, settings=test_settings)
    await manager.start()
    yield manager
    await manager.queue.stop()
    await manager.guard.stop()


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_reply_is_recorded(self, manager, store, providers):
        result = await manager.handle_message(SCOPE, "user", "Hello there")

        assert result.ok
        assert result.reply == "ok"
        assert result.provider == "alpha"
        assert result.skipped is False

        messages = await store.get_recent_messages(result.session_id)
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "Hello there"),
            (MessageRole.ASSISTANT, "ok"),
        ]
        assert messages[0].author_id == "user"

        session = await store.get_session(result.session_id)
        assert session.message_count == 2
        assert session.total_tokens_used == 15
        assert session.estimated_tokens == sum(m.estimated_tokens for m in messages)

    @pytest.mark.asyncio
    async def test_history_sent_in_order(self, manager, providers):
        providers["alpha"].responses = ["first reply", "second reply"]

        await manager.handle_message(SCOPE, "user", "one")
        await manager.handle_message(SCOPE, "user", "two")

        sent, _ = providers["alpha"].calls[1]
        assert sent[0].role == MessageRole.SYSTEM
        assert [m.content for m in sent[1:]] == ["one", "first reply", "two"]

    @pytest.mark.asyncio
    async def test_fallback_on_timeout(self, manager, providers):
        providers["alpha"].responses = [ProviderTimeoutError("late", provider="alpha")]

        result = await manager.handle_message(SCOPE, "user", "hi")

        assert result.ok
        assert result.provider == "beta"

    @pytest.mark.asyncio
    async def test_exhaustion_returns_failure_message(self, manager, providers, store, test_settings):
        providers["alpha"].responses = [TransientProviderError("down", provider="alpha")]
        providers["beta"].responses = [TransientProviderError("down", provider="beta")]

        result = await manager.handle_message(SCOPE, "user", "hi")

        assert result.skipped is False
        assert result.reply == test_settings.chat.failure_message
        assert isinstance(result.error, ProviderExhaustedError)
        assert not result.ok

        active = await store.get_active_session(SCOPE)
        assert await store.get_recent_messages(active.id) == []
        assert not manager.guard.is_locked(SCOPE)

    @pytest.mark.asyncio
    async def test_busy_scope_skips(self, manager, providers):
        gate = asyncio.Event()
        providers["alpha"].gate = gate

        first = asyncio.create_task(manager.handle_message(SCOPE, "user", "first"))
        while providers["alpha"].call_count == 0:
            await asyncio.sleep(0.01)

        second = await manager.handle_message(SCOPE, "user", "second")
        gate.set()
        first_result = await first

        assert second.skipped is True
        assert second.reply is None
        assert first_result.ok
        assert providers["alpha"].prompts() == ["first"]

    @pytest.mark.asyncio
    async def test_distinct_scopes_run_in_parallel(self, manager, providers):
        gate = asyncio.Event()
        providers["alpha"].gate = gate
        scopes = [Scope(user_id=str(i)) for i in range(3)]

        tasks = [asyncio.create_task(manager.handle_message(s, s.user_id, "hi")) for s in scopes]
        while providers["alpha"].in_flight < 3:
            await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert all(result.ok for result in results)
        assert providers["alpha"].max_in_flight == 3
        assert len({result.session_id for result in results}) == 3

    @pytest.mark.asyncio
    async def test_sequential_messages_are_chronological(self, manager, store):
        for text in ["a", "b", "c"]:
            await manager.handle_message(SCOPE, "user", text)

        active = await store.get_active_session(SCOPE)
        messages = await store.get_recent_messages(active.id)
        assert [m.content for m in messages if m.role == MessageRole.USER] == ["a", "b", "c"]
        assert all(
            earlier.created_at <= later.created_at
            for earlier, later in zip(messages, messages[1:])
        )

    @pytest.mark.asyncio
    async def test_history_survives_fresh_cache(self, manager, store, test_settings, providers):
        await manager.handle_message(SCOPE, "user", "remember this")

        manager.cache = MessageCache(store, settings=test_settings)
        await manager.handle_message(SCOPE, "user", "and this")

        sent, _ = providers["alpha"].calls[1]
        assert [m.content for m in sent[1:]] == ["remember this", "ok", "and this"]

    @pytest.mark.asyncio
    async def test_persona_and_memory_in_system_message(self, registry, store, test_settings, providers):
        async def memories(scope, text):
            return f"- {scope.user_id} likes tea"

        manager = ConversationManager(
            registry=registry, store=store, settings=test_settings, memory_provider=memories
        )
        await manager.sessions.set_scope_persona(SCOPE, "Talk like a pirate.")
        active = await store.get_or_create_active(SCOPE)
        active.context = "Earlier we discussed ships."
        await store.update_session(active)

        await manager.handle_message(SCOPE, "user", "hi")

        system = providers["alpha"].calls[0][0][0].content
        assert system == (
            "You are a test assistant.\n\n"
            "Talk like a pirate.\n\n"
            f"{CONTEXT_MARKER}\nEarlier we discussed ships.\n\n"
            f"{MEMORY_MARKER}\n- user likes tea"
        )

    @pytest.mark.asyncio
    async def test_memory_failure_is_ignored(self, registry, store, test_settings, providers):
        async def broken(scope, text):
            raise RuntimeError("memory store offline")

        manager = ConversationManager(
            registry=registry, store=store, settings=test_settings, memory_provider=broken
        )

        result = await manager.handle_message(SCOPE, "user", "hi")

        assert result.ok
        assert MEMORY_MARKER not in providers["alpha"].calls[0][0][0].content

    @pytest.mark.asyncio
    async def test_provider_selection(self, manager, store, providers):
        await manager.sessions.set_scope_provider(SCOPE, "beta")

        preferred = await manager.handle_message(SCOPE, "user", "hi")
        explicit = await manager.handle_message(SCOPE, "user", "hi", provider="alpha")

        assert preferred.provider == "beta"
        assert explicit.provider == "alpha"

    @pytest.mark.asyncio
    async def test_new_scope_inherits_preferred_provider(self, manager, store):
        await store.update_scope_settings(SCOPE, preferred_provider="beta", preferred_model="beta-large")

        result = await manager.handle_message(SCOPE, "user", "hi")

        session = await store.get_session(result.session_id)
        assert session.provider == "beta"
        assert session.model == "beta-large"
        assert result.provider == "beta"


class TestOptimizationTrigger:
    @pytest_asyncio.fixture
    async def small_manager(self, make_provider, store, test_settings):
        small = make_provider("small", max_context_tokens=1000)
        registry = ProviderRegistry("small", ["small"])
        registry.register("small", lambda: small)
        manager = ConversationManager(registry=registry, store=store, settings=test_settings)
        return manager

    @pytest.mark.asyncio
    async def test_trigger_at_threshold(self, small_manager, store):
        session = await store.create_session(SCOPE)
        session.context_tokens = 300
        session.estimated_tokens = 500

        assert small_manager.needs_optimization(session, "small") is True

        session.estimated_tokens = 499
        assert small_manager.needs_optimization(session, "small") is False
        assert small_manager.needs_optimization(session, "unknown") is False

    @pytest.mark.asyncio
    async def test_exchange_enqueues_optimization(self, small_manager, store):
        small_manager.settings.chat.optimization_trigger_fraction = 0.01

        result = await small_manager.handle_message(SCOPE, "user", "x" * 100)

        assert result.optimization_enqueued is True
        assert small_manager.queue.is_pending(result.session_id)

    @pytest.mark.asyncio
    async def test_background_pass_folds_history(self, small_manager, store):
        settings = small_manager.settings
        settings.chat.optimization_trigger_fraction = 0.001
        settings.chat.keep_recent_messages = 2

        first = await small_manager.handle_message(SCOPE, "user", "one")
        second = await small_manager.handle_message(SCOPE, "user", "two")
        assert first.optimization_enqueued is True
        # Still pending from the first trigger
        assert second.optimization_enqueued is False

        small_manager.queue.start()
        try:
            await small_manager.queue.join()
        finally:
            await small_manager.queue.stop()

        active = await store.get_active_session(SCOPE)
        assert active.context == "ok"
        remaining = await store.get_recent_messages(active.id)
        assert [m.content for m in remaining] == ["two", "ok"]

    @pytest.mark.asyncio
    async def test_below_threshold_not_enqueued(self, small_manager):
        result = await small_manager.handle_message(SCOPE, "user", "short")

        assert result.optimization_enqueued is False


class TestExchange:
    @pytest.mark.asyncio
    async def test_exchange_does_not_touch_history(self, manager, store, providers):
        await store.update_scope_settings(SCOPE, persona="Be formal.")

        result = await manager.exchange(SCOPE, "One-off question")

        assert result.content == "ok"
        assert await store.get_active_session(SCOPE) is None
        system = providers["alpha"].calls[0][0][0].content
        assert system.endswith("Be formal.")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager(self, registry, test_settings):
        async with ConversationManager(registry=registry, settings=test_settings) as manager:
            assert manager.queue.running
            result = await manager.handle_message(SCOPE, "user", "hi")
            assert result.ok

        assert not manager.queue.running
