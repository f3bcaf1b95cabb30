"""
Chat Orchestrator: scoped LLM conversations with provider fallback,
per-scope concurrency control and token-budgeted history summarization.
"""

__version__ = "0.1.0"
