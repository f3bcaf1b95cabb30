"""
Provider registry: name to provider resolution and fallback policy.
"""

import logging
from collections.abc import Callable

from ..clients import BaseProvider, ProviderNotFoundError, create_provider
from ..config.settings import AppSettings, get_settings

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], BaseProvider]


class ProviderRegistry:
    """
    Registry of named providers.

    Providers are registered as zero-argument factories and instantiated on
    first use. Names are case-insensitive.
    """

    def __init__(
        self,
        default_provider: str,
        fallback_order: list[str] | None = None,
        fallback_enabled: bool = True,
    ):
        self.default_provider = default_provider.lower()
        self.fallback_order = [name.lower() for name in fallback_order or []]
        self.fallback_enabled = fallback_enabled
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[str, BaseProvider] = {}

    @classmethod
    def from_settings(cls, settings: AppSettings | None = None) -> "ProviderRegistry":
        """Build a registry from the ``llm`` configuration section."""
        settings = settings or get_settings()
        llm = settings.llm
        registry = cls(
            default_provider=llm.default_provider,
            fallback_order=llm.fallback_order,
            fallback_enabled=llm.fallback_enabled,
        )

        for name, config in llm.providers.items():

            def factory(name=name, config=config) -> BaseProvider:
                return create_provider(
                    name,
                    config.type,
                    api_key=settings.get_api_key(name),
                    base_url=config.base_url,
                    default_model=config.default_model,
                    enabled=config.enabled,
                    max_context_tokens=config.max_context_tokens,
                    max_output_tokens=config.max_output_tokens,
                    temperature=llm.temperature,
                    timeout=llm.request_timeout,
                    max_retries=llm.max_retries,
                    base_delay=llm.base_delay,
                    max_delay=llm.max_delay,
                )

            registry.register(name, factory)

        logger.info(f"Provider registry built with {len(registry)} providers")
        return registry

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register (or replace) a provider factory."""
        key = name.lower()
        self._factories[key] = factory
        self._instances.pop(key, None)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._factories

    def __len__(self) -> int:
        return len(self._factories)

    @property
    def names(self) -> list[str]:
        return list(self._factories)

    def resolve(self, name: str) -> BaseProvider:
        """
        Get the provider registered under ``name``.

        Raises:
            ProviderNotFoundError: If no provider has that name
        """
        key = name.lower()
        instance = self._instances.get(key)
        if instance is not None:
            return instance
        factory = self._factories.get(key)
        if factory is None:
            raise ProviderNotFoundError(name)
        instance = factory()
        self._instances[key] = instance
        return instance

    def resolve_default(self) -> BaseProvider:
        return self.resolve(self.default_provider)

    def list_available(self) -> list[BaseProvider]:
        """Providers whose configuration makes them usable right now."""
        available = []
        for name in self._factories:
            provider = self.resolve(name)
            if provider.is_available():
                available.append(provider)
        return available

    def select_provider_name(
        self, override: str | None = None, scope_provider: str | None = None
    ) -> str:
        """Precedence: explicit override, then scope preference, then global default."""
        for candidate in (override, scope_provider):
            if candidate and candidate.strip():
                return candidate.strip().lower()
        return self.default_provider

    def fallback_chain(self, start: str) -> list[str]:
        """Ordered provider names to try, starting with ``start``."""
        start = start.lower()
        if not self.fallback_enabled:
            return [start]
        chain = [start]
        for name in self.fallback_order:
            if name not in chain:
                chain.append(name)
        return chain

    def max_attempts(self, start: str) -> int:
        """Upper bound on provider attempts for a chain starting at ``start``."""
        if not self.fallback_enabled:
            return 1
        bound = len(self.fallback_order)
        if start.lower() not in self.fallback_order:
            bound += 1
        return bound

    async def aclose(self) -> None:
        """Close all instantiated providers."""
        for provider in self._instances.values():
            await provider.aclose()
        self._instances.clear()
