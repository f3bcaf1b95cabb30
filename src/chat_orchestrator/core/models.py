"""
Core Pydantic models for Chat Orchestrator.

This module contains the data models shared by the provider clients, the
durable store and the orchestration layer, providing type safety, validation,
and serialization capabilities.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..utils.tokens import estimate_tokens


class MessageRole(str, Enum):
    """Role of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Scope(BaseModel):
    """
    Conversation identity key.

    A scope is the (server, channel, user) tuple under which exactly one
    active session is tracked. Any part may be omitted to widen the scope,
    e.g. a scope with only ``server_id`` set is shared by a whole server.
    """

    model_config = ConfigDict(frozen=True)

    server_id: str | None = Field(None, description="Server (guild) identifier")
    channel_id: str | None = Field(None, description="Channel identifier")
    user_id: str | None = Field(None, description="User identifier")

    @model_validator(mode="after")
    def validate_not_empty(self):
        if not (self.server_id or self.channel_id or self.user_id):
            raise ValueError("Scope requires at least one identifier")
        return self

    @property
    def key(self) -> str:
        """Stable string key: ``{server}_{channel}_{user}``."""
        return "_".join(part or "0" for part in (self.server_id, self.channel_id, self.user_id))

    def __str__(self) -> str:
        return self.key


class ChatMessage(BaseModel):
    """A single message belonging to a chat session."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Message identifier")
    session_id: str | None = Field(None, description="Owning session identifier")
    role: MessageRole = Field(..., description="Message role (user, assistant, system)")
    content: str = Field(..., description="Message content")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), description="Creation time (UTC)"
    )
    include_in_context: bool = Field(
        default=True, description="Whether the message is sent to the backend"
    )
    estimated_tokens: int = Field(default=0, ge=0, description="Estimated token count")
    author_id: str | None = Field(None, description="Author identifier, if known")

    @field_validator("content")
    @classmethod
    def validate_content(cls, v):
        if len(v) > 100000:  # 100KB limit
            raise ValueError("Message content exceeds maximum length")
        return v

    @model_validator(mode="after")
    def fill_token_estimate(self):
        if not self.estimated_tokens:
            self.estimated_tokens = estimate_tokens(self.content)
        return self


class ChatSession(BaseModel):
    """Mutable record of a conversation and its summarized context."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Session identifier")
    scope_key: str = Field(..., description="Key of the owning scope")
    name: str = Field(default="Default", description="Human-readable session name")
    provider: str | None = Field(None, description="Selected provider for this session")
    model: str | None = Field(None, description="Selected model for this session")

    context: str = Field(default="", description="Summary of older turns")
    context_tokens: int = Field(default=0, ge=0, description="Token estimate of the context")

    message_count: int = Field(default=0, ge=0, description="Messages exchanged")
    estimated_tokens: int = Field(default=0, ge=0, description="Estimated tokens in context")
    total_tokens_used: int = Field(default=0, ge=0, description="Backend-reported token usage")

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_activity_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    is_active: bool = Field(default=True, description="Whether this is the scope's active session")


class TokenUsage(BaseModel):
    """Token usage information from model APIs."""

    prompt_tokens: int | None = Field(None, ge=0, description="Number of prompt tokens")
    completion_tokens: int | None = Field(None, ge=0, description="Number of completion tokens")
    total_tokens: int | None = Field(None, ge=0, description="Total tokens used")

    @model_validator(mode="after")
    def fill_total(self):
        if (
            self.total_tokens is None
            and self.prompt_tokens is not None
            and self.completion_tokens is not None
        ):
            self.total_tokens = self.prompt_tokens + self.completion_tokens
        return self


class CompletionOptions(BaseModel):
    """Per-request options passed to a provider."""

    max_tokens: int | None = Field(None, ge=1, le=32000, description="Maximum tokens to generate")
    temperature: float | None = Field(None, ge=0.0, le=2.0, description="Sampling temperature")
    model: str | None = Field(None, description="Model override for this request")
    conversation_id: str | None = Field(
        None, description="Conversation identifier for provider-side prompt caching"
    )


class CompletionResult(BaseModel):
    """Standardized response format returned by every provider."""

    content: str = Field(..., description="Generated content")
    provider: str = Field(..., description="Provider that produced the content")
    model: str = Field(..., description="Model used for generation")
    usage: TokenUsage = Field(default_factory=TokenUsage, description="Token usage information")
    usage_estimated: bool = Field(
        default=False, description="True when usage was estimated locally"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict, description="Provider metadata")

    def with_estimated_usage(self, prompt_text: str) -> "CompletionResult":
        """Return a copy with usage filled in from character counts when missing."""
        if self.usage.total_tokens is not None:
            return self
        prompt_tokens = estimate_tokens(prompt_text)
        completion_tokens = estimate_tokens(self.content)
        return self.model_copy(
            update={
                "usage": TokenUsage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=prompt_tokens + completion_tokens,
                ),
                "usage_estimated": True,
            }
        )


class ScopeSettings(BaseModel):
    """Per-scope preferences: persona and preferred backend."""

    scope_key: str = Field(..., description="Key of the scope these settings belong to")
    persona: str | None = Field(None, description="Custom persona appended to the base persona")
    preferred_provider: str | None = Field(None, description="Provider used by default in this scope")
    preferred_model: str | None = Field(None, description="Model used by default in this scope")


class SessionStats(BaseModel):
    """Statistics for a single session."""

    session_id: str
    name: str
    is_active: bool
    total_messages: int = 0
    in_context_messages: int = 0
    summarized_messages: int = 0
    estimated_tokens: int = 0
    context_tokens: int = 0
    total_tokens_used: int = 0
    has_context: bool = False
    created_at: datetime
    last_activity_at: datetime
