"""
Conversation orchestration.

This package composes provider routing, per-scope concurrency control,
two-tier message history and background history optimization behind the
ConversationManager entry point.
"""

from .background import OptimizationQueue
from .core import CoreOrchestrator
from .guard import ConcurrencyGuard
from .manager import ConversationManager
from .optimizer import HistoryOptimizer
from .registry import ProviderRegistry
from .sessions import SessionService
from .types import HandleResult, MemoryProvider

__all__ = [
    "ConcurrencyGuard",
    "ConversationManager",
    "CoreOrchestrator",
    "HandleResult",
    "HistoryOptimizer",
    "MemoryProvider",
    "OptimizationQueue",
    "ProviderRegistry",
    "SessionService",
]
