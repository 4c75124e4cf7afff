"""
Monitoring package initializer.

This package exposes Prometheus metrics and helper decorators for tracking
workflow runs, checkpoints, generation calls and memory maintenance.
"""

from .metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    ERROR_COUNT,
    WORKFLOW_RUN_COUNT,
    STAGE_PROCESSING_TIME,
    CHECKPOINT_WAIT_TIME,
    GENERATION_REQUEST_TIME,
    SPEECH_REQUEST_TIME,
    CLASSIFICATION_COUNT,
    MEMORY_SWEEP_REMOVED,
    CHAT_REPLY_COUNT,
    track_latency,
    track_errors,
)

__all__ = [
    'REQUEST_COUNT',
    'REQUEST_LATENCY',
    'ERROR_COUNT',
    'WORKFLOW_RUN_COUNT',
    'STAGE_PROCESSING_TIME',
    'CHECKPOINT_WAIT_TIME',
    'GENERATION_REQUEST_TIME',
    'SPEECH_REQUEST_TIME',
    'CLASSIFICATION_COUNT',
    'MEMORY_SWEEP_REMOVED',
    'CHAT_REPLY_COUNT',
    'track_latency',
    'track_errors',
]
