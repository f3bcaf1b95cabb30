"""
ConversationStore: durable storage for sessions, messages and scope settings.
"""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ..config.settings import AppSettings, get_settings
from ..core.errors import SessionError
from ..core.models import (
    ChatMessage,
    ChatSession,
    MessageRole,
    Scope,
    ScopeSettings,
    SessionStats,
)
from .encryption import EncryptionManager
from .models import Base, ChatSessionRecord, ScopeSettingsRecord, SessionMessageRecord

logger = logging.getLogger(__name__)

SCOPE_SETTING_FIELDS = {"persona", "preferred_provider", "preferred_model"}


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; everything we write is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _scope_key(scope: Scope | str) -> str:
    return scope.key if isinstance(scope, Scope) else scope


class ConversationStore:
    """Manages session and message storage with field-level encryption."""

    def __init__(
        self,
        database_url: str | None = None,
        encryption_manager: EncryptionManager | None = None,
        settings: AppSettings | None = None,
    ):
        self.settings = settings or get_settings()
        self.database_url = self._normalize_url(database_url or self.settings.get_database_url())
        self.encryption_manager = encryption_manager or EncryptionManager(
            master_key=self.settings.database_encryption_key,
            enabled=self.settings.database.encryption_enabled,
        )

        self.engine = create_async_engine(self.database_url, echo=self.settings.database.echo)
        self.AsyncSessionLocal = async_sessionmaker(self.engine, expire_on_commit=False)

        self._initialized = False
        self._init_lock = asyncio.Lock()

    @staticmethod
    def _normalize_url(url: str) -> str:
        if url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        if url.startswith("sqlite+aiosqlite:///"):
            db_path = url.split(":///", 1)[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return url

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._initialized = True
            logger.debug(f"Initialized conversation store at {self.database_url}")

    async def close(self) -> None:
        await self.engine.dispose()

    # Conversion helpers

    def _encrypt(self, value: str) -> tuple[str, str | None]:
        return self.encryption_manager.encrypt(value)

    def _to_session(self, record: ChatSessionRecord) -> ChatSession:
        context = ""
        if record.context_encrypted:
            context = self.encryption_manager.decrypt(
                record.context_encrypted, record.encryption_key_id
            )
        return ChatSession(
            id=record.id,
            scope_key=record.scope_key,
            name=record.name,
            provider=record.provider,
            model=record.model,
            context=context,
            context_tokens=record.context_tokens or 0,
            message_count=record.message_count or 0,
            estimated_tokens=record.estimated_tokens or 0,
            total_tokens_used=record.total_tokens_used or 0,
            created_at=_as_utc(record.created_at),
            last_activity_at=_as_utc(record.last_activity_at),
            is_active=bool(record.is_active),
        )

    def _to_message(self, record: SessionMessageRecord) -> ChatMessage:
        return ChatMessage(
            id=record.id,
            session_id=record.session_id,
            role=MessageRole(record.role),
            content=self.encryption_manager.decrypt(
                record.content_encrypted, record.encryption_key_id
            ),
            created_at=_as_utc(record.created_at),
            include_in_context=bool(record.include_in_context),
            estimated_tokens=record.estimated_tokens or 0,
            author_id=record.author_id,
        )

    # Sessions

    async def create_session(
        self,
        scope: Scope | str,
        name: str = "Default",
        provider: str | None = None,
        model: str | None = None,
        activate: bool = True,
    ) -> ChatSession:
        """
        Create a session for a scope.

        With ``activate`` the previously active session of the scope is
        deactivated in the same transaction.
        """
        await self.initialize()
        key = _scope_key(scope)
        now = datetime.now(UTC)

        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                if activate:
                    await session.execute(
                        update(ChatSessionRecord)
                        .where(
                            ChatSessionRecord.scope_key == key,
                            ChatSessionRecord.is_active.is_(True),
                        )
                        .values(is_active=False)
                    )
                record = ChatSessionRecord(
                    id=str(uuid4()),
                    scope_key=key,
                    name=name,
                    provider=provider,
                    model=model,
                    context_encrypted=None,
                    context_tokens=0,
                    message_count=0,
                    estimated_tokens=0,
                    total_tokens_used=0,
                    created_at=now,
                    last_activity_at=now,
                    is_active=activate,
                    encryption_key_id=self.encryption_manager.get_current_key_id(),
                )
                session.add(record)

        logger.info(f"Created session {record.id} ('{name}') for scope {key}")
        return self._to_session(record)

    async def get_session(self, session_id: str) -> ChatSession | None:
        await self.initialize()
        async with self.AsyncSessionLocal() as session:
            record = await session.get(ChatSessionRecord, session_id)
            return self._to_session(record) if record else None

    async def get_active_session(self, scope: Scope | str) -> ChatSession | None:
        await self.initialize()
        async with self.AsyncSessionLocal() as session:
            result = await session.execute(
                select(ChatSessionRecord)
                .where(
                    ChatSessionRecord.scope_key == _scope_key(scope),
                    ChatSessionRecord.is_active.is_(True),
                )
                .order_by(ChatSessionRecord.last_activity_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return self._to_session(record) if record else None

    async def get_or_create_active(
        self,
        scope: Scope | str,
        provider: str | None = None,
        model: str | None = None,
    ) -> ChatSession:
        """Return the scope's active session, creating the first one lazily."""
        active = await self.get_active_session(scope)
        if active is not None:
            return active
        return await self.create_session(scope, provider=provider, model=model)

    async def list_sessions(self, scope: Scope | str) -> list[ChatSession]:
        """List a scope's sessions, most recently used first."""
        await self.initialize()
        async with self.AsyncSessionLocal() as session:
            result = await session.execute(
                select(ChatSessionRecord)
                .where(ChatSessionRecord.scope_key == _scope_key(scope))
                .order_by(ChatSessionRecord.last_activity_at.desc())
            )
            return [self._to_session(record) for record in result.scalars()]

    async def activate_session(self, scope: Scope | str, session_id: str) -> ChatSession:
        """Make ``session_id`` the scope's only active session."""
        await self.initialize()
        key = _scope_key(scope)

        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                record = await session.get(ChatSessionRecord, session_id)
                if record is None or record.scope_key != key:
                    raise SessionError(f"Session not found in scope {key}", session_id)
                await session.execute(
                    update(ChatSessionRecord)
                    .where(
                        ChatSessionRecord.scope_key == key,
                        ChatSessionRecord.id != session_id,
                    )
                    .values(is_active=False)
                )
                record.is_active = True
                record.last_activity_at = datetime.now(UTC)

        return self._to_session(record)

    async def rename_session(self, session_id: str, name: str) -> ChatSession:
        await self.initialize()
        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                record = await session.get(ChatSessionRecord, session_id)
                if record is None:
                    raise SessionError("Session not found", session_id)
                record.name = name
        return self._to_session(record)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and all its messages."""
        await self.initialize()
        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                await session.execute(
                    delete(SessionMessageRecord).where(
                        SessionMessageRecord.session_id == session_id
                    )
                )
                result = await session.execute(
                    delete(ChatSessionRecord).where(ChatSessionRecord.id == session_id)
                )
        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted session {session_id}")
        return deleted

    async def update_session(self, chat_session: ChatSession) -> None:
        """
        Persist a session's mutable fields.

        The active flag is only changed through ``create_session`` and
        ``activate_session``.
        """
        await self.initialize()
        encrypted_context = None
        key_id = self.encryption_manager.get_current_key_id()
        if chat_session.context:
            encrypted_context, key_id = self._encrypt(chat_session.context)

        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                result = await session.execute(
                    update(ChatSessionRecord)
                    .where(ChatSessionRecord.id == chat_session.id)
                    .values(
                        name=chat_session.name,
                        provider=chat_session.provider,
                        model=chat_session.model,
                        context_encrypted=encrypted_context,
                        context_tokens=chat_session.context_tokens,
                        message_count=chat_session.message_count,
                        estimated_tokens=chat_session.estimated_tokens,
                        total_tokens_used=chat_session.total_tokens_used,
                        last_activity_at=chat_session.last_activity_at,
                        encryption_key_id=key_id,
                    )
                )
                if result.rowcount == 0:
                    raise SessionError("Session not found", chat_session.id)

    # Messages

    async def append_messages(
        self, session_id: str, messages: list[ChatMessage]
    ) -> list[ChatMessage]:
        """
        Append messages after the session's last message, preserving their order.

        Returns:
            The stored messages with ``session_id`` set
        """
        await self.initialize()
        stored = [message.model_copy(update={"session_id": session_id}) for message in messages]

        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                result = await session.execute(
                    select(func.max(SessionMessageRecord.position)).where(
                        SessionMessageRecord.session_id == session_id
                    )
                )
                last_position = result.scalar()
                next_position = 0 if last_position is None else last_position + 1

                for offset, message in enumerate(stored):
                    encrypted_content, key_id = self._encrypt(message.content)
                    session.add(
                        SessionMessageRecord(
                            id=message.id,
                            session_id=session_id,
                            position=next_position + offset,
                            role=message.role.value,
                            author_id=message.author_id,
                            content_encrypted=encrypted_content,
                            created_at=message.created_at,
                            include_in_context=message.include_in_context,
                            estimated_tokens=message.estimated_tokens,
                            encryption_key_id=key_id,
                        )
                    )

        return stored

    async def get_recent_messages(
        self,
        session_id: str,
        limit: int | None = None,
        include_summarized: bool = False,
    ) -> list[ChatMessage]:
        """
        Load the newest messages of a session in chronological order.

        Args:
            session_id: Session to read
            limit: Maximum number of messages (newest kept)
            include_summarized: Also return messages already folded into the context
        """
        await self.initialize()
        query = select(SessionMessageRecord).where(SessionMessageRecord.session_id == session_id)
        if not include_summarized:
            query = query.where(SessionMessageRecord.include_in_context.is_(True))
        query = query.order_by(SessionMessageRecord.position.desc())
        if limit is not None:
            query = query.limit(limit)

        async with self.AsyncSessionLocal() as session:
            result = await session.execute(query)
            records = list(result.scalars())

        records.reverse()
        return [self._to_message(record) for record in records]

    async def apply_summary(
        self,
        session_id: str,
        context: str,
        context_tokens: int,
        summarized_ids: list[str],
    ) -> ChatSession:
        """
        Store a new context and exclude the summarized messages from it.

        Only the listed messages leave the context.
        Rows are kept for audit; only their ``include_in_context`` flag
        changes. The session's ``estimated_tokens`` is recomputed from
        the messages still in context.
        """
        await self.initialize()
        encrypted_context, key_id = self._encrypt(context)

        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                record = await session.get(ChatSessionRecord, session_id)
                if record is None:
                    raise SessionError("Session not found", session_id)

                if summarized_ids:
                    await session.execute(
                        update(SessionMessageRecord)
                        .where(
                            SessionMessageRecord.session_id == session_id,
                            SessionMessageRecord.id.in_(summarized_ids),
                        )
                        .values(include_in_context=False)
                    )

                result = await session.execute(
                    select(func.coalesce(func.sum(SessionMessageRecord.estimated_tokens), 0)).where(
                        SessionMessageRecord.session_id == session_id,
                        SessionMessageRecord.include_in_context.is_(True),
                    )
                )

                record.context_encrypted = encrypted_context
                record.encryption_key_id = key_id
                record.context_tokens = context_tokens
                record.estimated_tokens = int(result.scalar() or 0)

        logger.info(
            f"Applied summary to session {session_id}: "
            f"{len(summarized_ids)} messages folded, context ~{context_tokens} tokens"
        )
        return self._to_session(record)

    async def get_session_stats(self, session_id: str) -> SessionStats:
        await self.initialize()
        async with self.AsyncSessionLocal() as session:
            record = await session.get(ChatSessionRecord, session_id)
            if record is None:
                raise SessionError("Session not found", session_id)

            result = await session.execute(
                select(SessionMessageRecord.include_in_context, func.count())
                .where(SessionMessageRecord.session_id == session_id)
                .group_by(SessionMessageRecord.include_in_context)
            )
            counts = {bool(flag): count for flag, count in result.all()}

        chat_session = self._to_session(record)
        in_context = counts.get(True, 0)
        summarized = counts.get(False, 0)
        return SessionStats(
            session_id=chat_session.id,
            name=chat_session.name,
            is_active=chat_session.is_active,
            total_messages=in_context + summarized,
            in_context_messages=in_context,
            summarized_messages=summarized,
            estimated_tokens=chat_session.estimated_tokens,
            context_tokens=chat_session.context_tokens,
            total_tokens_used=chat_session.total_tokens_used,
            has_context=bool(chat_session.context),
            created_at=chat_session.created_at,
            last_activity_at=chat_session.last_activity_at,
        )

    # Scope settings

    async def get_scope_settings(self, scope: Scope | str) -> ScopeSettings:
        """Get a scope's settings (empty settings when none were stored)."""
        await self.initialize()
        key = _scope_key(scope)
        async with self.AsyncSessionLocal() as session:
            record = await session.get(ScopeSettingsRecord, key)
            if record is None:
                return ScopeSettings(scope_key=key)
            return ScopeSettings(
                scope_key=key,
                persona=record.persona,
                preferred_provider=record.preferred_provider,
                preferred_model=record.preferred_model,
            )

    async def update_scope_settings(self, scope: Scope | str, **fields: Any) -> ScopeSettings:
        """
        Upsert a scope's settings.

        Only ``persona``, ``preferred_provider`` and ``preferred_model`` may be
        set; pass ``None`` to clear one.
        """
        unknown = set(fields) - SCOPE_SETTING_FIELDS
        if unknown:
            raise ValueError(f"Unknown scope settings: {sorted(unknown)}")

        await self.initialize()
        key = _scope_key(scope)
        async with self.AsyncSessionLocal() as session:
            async with session.begin():
                record = await session.get(ScopeSettingsRecord, key)
                if record is None:
                    record = ScopeSettingsRecord(scope_key=key, updated_at=datetime.now(UTC))
                    session.add(record)
                for name, value in fields.items():
                    setattr(record, name, value)
                record.updated_at = datetime.now(UTC)

        return await self.get_scope_settings(key)
