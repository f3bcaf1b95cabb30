"""
Type definitions for conversation orchestration.

This module defines the data classes and callable interfaces exchanged
between the ConversationManager and its front-ends and collaborators.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..core.models import Scope

MemoryProvider = Callable[[Scope, str], Awaitable[str | None]]
"""Optional collaborator returning a pre-formatted memory block for a message."""


@dataclass
class HandleResult:
    """
    Outcome of handling one user message.

    Exactly one of three shapes: a normal reply, a skipped message (the scope
    was busy), or a failure carrying a stable user-facing reply and the error.
    """

    reply: str | None
    """Text to show the user; None when the message was skipped"""

    skipped: bool = False
    """True when another message for the same scope was still in flight"""

    error: Exception | None = None
    """Error that produced the fallback reply, None on success"""

    provider: str | None = None
    """Provider that produced the reply"""

    session_id: str | None = None
    """Session the exchange was recorded in"""

    optimization_enqueued: bool = False
    """Whether a history optimization pass was scheduled"""

    @property
    def ok(self) -> bool:
        return not self.skipped and self.error is None
