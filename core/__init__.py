"""
core/__init__.py

Workflow orchestration core.

This package contains the central coordination logic for the teaching assistant:
- classifier: Rule-based intent classification of teacher requests
- stages: Stage handlers, the run context and the handler registry
- checkpoints: Signalled wait for teacher decisions at checkpoint stages
- orchestrator: Stage pipeline execution, status snapshots and cancellation
- chat: Single-turn replies with memory context and follow-up actions
- errors: Exception taxonomy shared by the core and the API layer

These modules handle the flow of a request from raw text to a finished worksheet.
"""
