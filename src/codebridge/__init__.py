"""Durable orchestrator for delegating coding tasks to external AI agents."""

__version__ = "0.1.0"
