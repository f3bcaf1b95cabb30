"""
Database module for session and message storage.
"""

from .encryption import EncryptionManager
from .models import Base, ChatSessionRecord, ScopeSettingsRecord, SessionMessageRecord
from .store import ConversationStore

__all__ = [
    "Base",
    "ChatSessionRecord",
    "ConversationStore",
    "EncryptionManager",
    "ScopeSettingsRecord",
    "SessionMessageRecord",
]
