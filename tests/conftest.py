"""
Shared test fixtures and configuration for Chat Orchestrator tests.

This file provides global state management, resource cleanup, fake
providers and temp-file stores to keep tests isolated and fast.
"""

import asyncio
import logging
import os
import warnings
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from chat_orchestrator.clients.base import BaseProvider
from chat_orchestrator.config.settings import (
    AppSettings,
    ChatConfig,
    ConcurrencyConfig,
    DatabaseConfig,
    LLMConfig,
    ProviderConfig,
    config_manager,
)
from chat_orchestrator.core.models import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    TokenUsage,
)
from chat_orchestrator.database.store import ConversationStore
from chat_orchestrator.orchestration.registry import ProviderRegistry

# Suppress specific warnings that can slow down tests
warnings.filterwarnings("ignore", category=DeprecationWarning)

# Configure logging for tests
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("chat_orchestrator").setLevel(logging.WARNING)

ENV_PREFIXES = ("LLM__", "CHAT__", "CONCURRENCY__", "DATABASE__")
SENSITIVE_ENV_VARS = [
    "LOG_LEVEL",
    "ENVIRONMENT",
    "APP_NAME",
    "DATA_DIR",
    "OPENAI_API_KEY",
    "GROK_API_KEY",
    "GEMINI_API_KEY",
    "DATABASE_ENCRYPTION_KEY",
    "CHAT_ORCHESTRATOR_MASTER_KEY",
]


class FakeProvider(BaseProvider):
    """
    Scriptable in-memory provider.

    ``responses`` is consumed in order; each item is a reply string, an
    exception to raise, or a callable ``(messages, options) -> str``. Once
    exhausted, ``default_reply`` is returned. A ``gate`` event blocks every
    call until it is set.
    """

    def __init__(
        self,
        name: str,
        responses: list | None = None,
        default_reply: str = "ok",
        available: bool = True,
        max_context_tokens: int = 4096,
        report_usage: bool = True,
        gate: asyncio.Event | None = None,
    ):
        super().__init__(
            name,
            api_key="test-key",
            base_url="memory://",
            default_model=f"{name}-model",
            max_context_tokens=max_context_tokens,
            max_retries=0,
        )
        self.responses = list(responses or [])
        self.default_reply = default_reply
        self.available = available
        self.report_usage = report_usage
        self.gate = gate
        self.calls: list[tuple[list[ChatMessage], CompletionOptions]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def is_available(self) -> bool:
        return self.available

    async def _complete(self, messages, options):
        self.calls.append((list(messages), options))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()

            outcome = self.responses.pop(0) if self.responses else self.default_reply
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                outcome = outcome(messages, options)

            usage = TokenUsage()
            if self.report_usage:
                usage = TokenUsage(prompt_tokens=10, completion_tokens=5)
            return CompletionResult(
                content=outcome,
                provider=self.name,
                model=options.model or self.default_model,
                usage=usage,
            )
        finally:
            self.in_flight -= 1

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def prompts(self) -> list[str]:
        """The last message content of every call."""
        return [messages[-1].content for messages, _ in self.calls]


@pytest.fixture(autouse=True, scope="function")
def isolated_environment(tmp_path):
    """
    Isolate environment variables for each test to prevent test pollution.

    This ensures that configuration tests don't inherit environment variables
    from the host system, .env files, or other tests.
    """
    names = SENSITIVE_ENV_VARS + [key for key in os.environ if key.startswith(ENV_PREFIXES)]

    original_env = {}
    for var in names:
        original_env[var] = os.environ.pop(var, None)

    # Change working directory to temp path to avoid loading .env files
    original_cwd = os.getcwd()
    os.chdir(tmp_path)

    yield

    os.chdir(original_cwd)
    for key in [key for key in os.environ if key.startswith(ENV_PREFIXES)]:
        del os.environ[key]
    for var, original_value in original_env.items():
        if original_value is not None:
            os.environ[var] = original_value
        else:
            os.environ.pop(var, None)


@pytest.fixture(autouse=True, scope="function")
def reset_global_state():
    """Reset the global configuration manager before and after each test."""
    config_manager.reset()
    yield
    config_manager.reset()


@pytest.fixture(scope="function")
def mock_asyncio_sleep():
    """
    Mock asyncio.sleep to prevent actual delays in retry tests.

    Not autouse: background loops in the orchestration layer rely on real
    scheduling.
    """
    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture(scope="function")
def make_provider():
    """Factory for FakeProvider instances."""
    return FakeProvider


@pytest.fixture(scope="function")
def test_settings(tmp_path):
    """Settings with two fake-backed providers and a temp-file database."""
    return AppSettings(
        data_dir=str(tmp_path / "data"),
        database_encryption_key="test-master-key",
        llm=LLMConfig(
            default_provider="alpha",
            fallback_order=["alpha", "beta"],
            global_system_message="You are a test assistant.",
            providers={
                "alpha": ProviderConfig(
                    type="openai",
                    api_key="alpha-key",
                    base_url="https://alpha.invalid/v1",
                    default_model="alpha-model",
                ),
                "beta": ProviderConfig(
                    type="openai",
                    api_key="beta-key",
                    base_url="https://beta.invalid/v1",
                    default_model="beta-model",
                ),
            },
        ),
        chat=ChatConfig(),
        concurrency=ConcurrencyConfig(optimizer_lock_timeout=0.5),
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"),
    )


@pytest.fixture(scope="function")
def providers(make_provider):
    """Fake providers registered under the names used by ``test_settings``."""
    return {
        "alpha": make_provider("alpha"),
        "beta": make_provider("beta"),
    }


@pytest.fixture(scope="function")
def registry(providers):
    registry = ProviderRegistry(default_provider="alpha", fallback_order=["alpha", "beta"])
    for name, provider in providers.items():
        registry.register(name, lambda provider=provider: provider)
    return registry


@pytest_asyncio.fixture
async def store(test_settings):
    """Initialized temp-file ConversationStore."""
    store = ConversationStore(settings=test_settings)
    await store.initialize()
    yield store
    await store.close()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


def pytest_collection_modifyitems(config, items):
    """Add a timeout to every async test so a broken lock cannot hang the run."""
    for item in items:
        if asyncio.iscoroutinefunction(getattr(item, "function", None)):
            item.add_marker(pytest.mark.timeout(30))
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)
