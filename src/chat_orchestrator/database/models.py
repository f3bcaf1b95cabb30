"""
SQLAlchemy models for session and message storage.
"""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class ChatSessionRecord(Base):
    """Conversation session owned by a scope."""

    __tablename__ = "chat_sessions"

    # Primary identification
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    scope_key = Column(String, nullable=False)
    name = Column(String, nullable=False, default="Default")

    # Backend selection
    provider = Column(String, nullable=True)
    model = Column(String, nullable=True)

    # Summarized history (encrypted)
    context_encrypted = Column(Text, nullable=True)
    context_tokens = Column(Integer, nullable=False, default=0)

    # Counters
    message_count = Column(Integer, nullable=False, default=0)
    estimated_tokens = Column(Integer, nullable=False, default=0)
    total_tokens_used = Column(Integer, nullable=False, default=0)

    # Lifecycle
    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
    last_activity_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Privacy and security
    encryption_key_id = Column(String, nullable=True)

    # Relationships
    messages: Mapped[list["SessionMessageRecord"]] = relationship(
        "SessionMessageRecord",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SessionMessageRecord.position",
    )

    __table_args__ = (
        Index("idx_chat_sessions_scope", "scope_key"),
        Index("idx_chat_sessions_scope_active", "scope_key", "is_active"),
        Index("idx_chat_sessions_last_activity", "last_activity_at"),
    )


class SessionMessageRecord(Base):
    """Single message within a session, ordered by ``position``."""

    __tablename__ = "session_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    session_id = Column(String, ForeignKey("chat_sessions.id"), nullable=False)
    position = Column(Integer, nullable=False)

    role = Column(String, nullable=False)  # 'user', 'assistant' or 'system'
    author_id = Column(String, nullable=True)

    # Content (encrypted)
    content_encrypted = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
    include_in_context = Column(Boolean, nullable=False, default=True)
    estimated_tokens = Column(Integer, nullable=False, default=0)

    # Privacy and security
    encryption_key_id = Column(String, nullable=True)

    session: Mapped["ChatSessionRecord"] = relationship(
        "ChatSessionRecord", back_populates="messages"
    )

    __table_args__ = (
        UniqueConstraint("session_id", "position", name="uq_session_messages_position"),
        Index("idx_session_messages_session", "session_id"),
        Index("idx_session_messages_context", "session_id", "include_in_context"),
    )


class ScopeSettingsRecord(Base):
    """Per-scope persona and backend preferences."""

    __tablename__ = "scope_settings"

    scope_key = Column(String, primary_key=True)
    persona = Column(Text, nullable=True)
    preferred_provider = Column(String, nullable=True)
    preferred_model = Column(String, nullable=True)
    updated_at = Column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False
    )
