"""
Shared httpx plumbing for HTTP-based providers.
"""

import logging
from typing import Any

import httpx

from .base import (
    AuthenticationError,
    BaseProvider,
    InvalidRequestError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


class HTTPProvider(BaseProvider):
    """Base for providers talking JSON over HTTP."""

    def __init__(self, name: str, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(name, api_key, **kwargs)
        # Tests inject httpx.MockTransport here
        self._transport = kwargs.get("transport")
        self._http_client: httpx.AsyncClient | None = None

    def _default_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                transport=self._transport,
            )
        return self._http_client

    async def _post(
        self, path: str, payload: dict[str, Any], model: str | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """POST a JSON payload and return the decoded body, mapping failures to ProviderError."""
        try:
            response = await self.http_client.post(path, json=payload, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"Request timed out: {e}", provider=self.name, model=model
            ) from e
        except httpx.RequestError as e:
            raise TransientProviderError(
                f"Network error: {e}",
                provider=self.name,
                model=model,
                details={"error_type": type(e).__name__},
            ) from e

        if response.status_code != 200:
            self._handle_http_error(response, model)

        try:
            return response.json()
        except ValueError as e:
            raise TransientProviderError(
                "Malformed JSON response", provider=self.name, model=model
            ) from e

    def _handle_http_error(self, response: httpx.Response, model: str | None = None) -> None:
        """Map HTTP error statuses to provider exception types."""
        status = response.status_code
        try:
            error_data = response.json()
            error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
            if isinstance(error_info, dict):
                error_message = error_info.get("message", f"HTTP {status}")
            else:
                error_message = str(error_info)
        except Exception:
            error_message = f"HTTP {status}: {response.text[:200]}"

        details = {"status_code": status}

        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed: {error_message}",
                provider=self.name,
                model=model,
                details=details,
            )
        elif status == 429:
            retry_after = None
            if "retry-after" in response.headers:
                try:
                    retry_after = int(response.headers["retry-after"])
                except ValueError:
                    pass

            raise RateLimitError(
                f"Rate limit exceeded: {error_message}",
                provider=self.name,
                retry_after=retry_after,
                model=model,
                details=details,
            )
        elif status == 408 or status >= 500:
            raise TransientProviderError(
                f"Service temporarily unavailable: {error_message}",
                provider=self.name,
                model=model,
                details=details,
            )
        elif status in (400, 404, 422):
            raise InvalidRequestError(
                f"Invalid request: {error_message}",
                provider=self.name,
                model=model,
                details=details,
            )
        else:
            raise ProviderError(
                f"API error: {error_message}",
                provider=self.name,
                model=model,
                details=details,
            )

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
