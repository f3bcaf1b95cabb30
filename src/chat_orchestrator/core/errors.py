"""
Orchestration errors that are not tied to a single provider.
"""

from typing import Any


class SessionError(Exception):
    """Invalid session administration request."""

    def __init__(self, message: str, session_id: str | None = None):
        self.message = message
        self.session_id = session_id
        super().__init__(message)


class OptimizationError(Exception):
    """A history optimization pass failed. Logged, never surfaced to users."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.session_id = session_id
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.session_id:
            return f"{self.message} (session {self.session_id})"
        return self.message
