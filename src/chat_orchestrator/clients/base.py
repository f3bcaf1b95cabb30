"""
Abstract base provider interface for LLM backends.

This module defines the standard interface that all backend clients must
implement, together with the error taxonomy the orchestration layer relies on
to decide between retrying, falling back and giving up.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from ..core.models import ChatMessage, CompletionOptions, CompletionResult

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(
        self,
        message: str,
        provider: str,
        model: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.provider = provider
        self.model = model
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [f"{self.provider}: {self.message}"]
        if self.model:
            parts.append(f"Model: {self.model}")
        return " | ".join(parts)


class TransientProviderError(ProviderError):
    """Error that can be retried (timeouts, rate limits, 5xx)."""

    pass


class RateLimitError(TransientProviderError):
    """Rate limit exceeded."""

    def __init__(
        self, message: str, provider: str, retry_after: int | None = None, **kwargs: Any
    ) -> None:
        super().__init__(message, provider, **kwargs)
        self.retry_after = retry_after


class ProviderTimeoutError(TransientProviderError):
    """Request did not complete within the configured timeout."""

    pass


class PermanentProviderError(ProviderError):
    """Error that will not go away by retrying the same provider."""

    pass


class AuthenticationError(PermanentProviderError):
    """Authentication failed with provider."""

    pass


class InvalidRequestError(PermanentProviderError):
    """Provider rejected the request (bad payload, unknown model)."""

    pass


class ProviderNotFoundError(Exception):
    """No provider is registered under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Provider '{name}' is not registered")


class ProviderExhaustedError(Exception):
    """Every provider in the fallback chain failed or was unavailable."""

    def __init__(
        self,
        attempts: dict[str, Exception],
        skipped: list[str] | None = None,
    ):
        self.attempts = attempts
        self.skipped = skipped or []
        tried = ", ".join(f"{name} ({type(err).__name__})" for name, err in attempts.items())
        message = f"All providers failed: {tried or 'none attempted'}"
        if self.skipped:
            message += f"; skipped: {', '.join(self.skipped)}"
        super().__init__(message)

    @property
    def last_error(self) -> Exception | None:
        if not self.attempts:
            return None
        return list(self.attempts.values())[-1]


class BaseProvider(ABC):
    """
    Abstract base for all LLM backends.

    Concrete providers implement a single attempt in ``_complete``; ``send``
    wraps it with exponential backoff for transient errors.
    """

    def __init__(self, name: str, api_key: str | None = None, **kwargs: Any) -> None:
        self.name = name.lower()
        self.api_key = api_key

        self.base_url = kwargs.get("base_url", "")
        self.default_model = kwargs.get("default_model", "")
        self.enabled = kwargs.get("enabled", True)
        self.max_context_tokens = kwargs.get("max_context_tokens", 4096)
        self.max_output_tokens = kwargs.get("max_output_tokens", 2048)
        self.temperature = kwargs.get("temperature", 0.6)

        # Retry configuration from kwargs
        self.timeout = kwargs.get("timeout", 60)
        self.max_retries = kwargs.get("max_retries", 2)
        self.base_delay = kwargs.get("base_delay", 1.0)
        self.max_delay = kwargs.get("max_delay", 30.0)

        logger.info(f"Initialized {self.name} provider")

    def is_available(self) -> bool:
        """
        Whether the provider is configured well enough to be tried.

        Checks configuration only; never touches the network.
        """
        return bool(self.enabled and self.api_key and self.base_url and self.default_model)

    async def send(
        self, messages: list[ChatMessage], options: CompletionOptions | None = None
    ) -> CompletionResult:
        """
        Send a conversation to the backend.

        Args:
            messages: Ordered messages, system message first
            options: Per-request options

        Returns:
            Completion result

        Raises:
            ProviderError: Transient errors once retries are exhausted, or
                permanent errors immediately
        """
        options = options or CompletionOptions()
        try:
            return await self.retry_with_backoff(self._complete, messages, options)
        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"{self.name} completion failed: {e}")
            raise ProviderError(
                f"Unexpected error during completion: {e}",
                provider=self.name,
                model=options.model or self.default_model,
                details={"error_type": type(e).__name__},
            ) from e

    @abstractmethod
    async def _complete(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> CompletionResult:
        """Execute a single completion attempt."""
        pass

    async def retry_with_backoff(self, operation: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute operation with exponential backoff retry logic.

        Only ``TransientProviderError`` is retried. A rate limit that carries
        ``retry_after`` waits that long (capped at ``max_delay``).

        Raises:
            ProviderError: If all retries are exhausted or on a permanent error
        """
        last_exception: TransientProviderError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                return await operation(*args, **kwargs)
            except TransientProviderError as e:
                last_exception = e
                if attempt == self.max_retries:
                    break

                if isinstance(e, RateLimitError) and e.retry_after:
                    actual_delay = min(float(e.retry_after), self.max_delay)
                else:
                    # Exponential backoff with jitter
                    delay = min(self.base_delay * (2**attempt), self.max_delay)
                    jitter = delay * 0.1
                    actual_delay = max(0.0, delay + (jitter * (2 * hash(str(e)) / 2**64)))

                logger.warning(
                    f"Attempt {attempt + 1} failed for {self.name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )
                await asyncio.sleep(actual_delay)
            except PermanentProviderError:
                raise

        if last_exception is not None:
            raise last_exception
        raise ProviderError("Operation failed without retryable errors", self.name)

    def _resolve_model(self, options: CompletionOptions) -> str:
        return options.model or self.default_model

    def _resolve_max_tokens(self, options: CompletionOptions) -> int:
        if options.max_tokens is None:
            return self.max_output_tokens
        return min(options.max_tokens, self.max_output_tokens)

    async def aclose(self) -> None:
        """Release network resources."""
        pass

    async def __aenter__(self) -> "BaseProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
