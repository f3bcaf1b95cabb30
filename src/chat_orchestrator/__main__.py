"""
Entry point for running Chat Orchestrator as a module.

This allows users to run: python -m chat_orchestrator
"""

from chat_orchestrator.cli.main import app

if __name__ == "__main__":
    app()
