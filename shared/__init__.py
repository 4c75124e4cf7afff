"""
shared/__init__.py

Shared utilities and models used across multiple modules.

This package contains common functionality that is used by the
orchestrator, the classifier, the memory store and the API layer:
- models: Stage, LogEntry, Intent, MemoryItem, Session and their enums
- utils: Identifier, timestamp and JSON helpers
"""
