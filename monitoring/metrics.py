"""
Core metrics and monitoring decorators for the workflow service.

This module defines Prometheus metrics and decorators for tracking:
- Request latency and counts
- Error rates
- Workflow run outcomes and stage durations
- Checkpoint wait time
- Generation Service latency
- Intent classification results
- Session memory sweeps
- Chat replies
"""

import time
import functools
import logging
from typing import Optional, Callable
from prometheus_client import Counter, Histogram

# Configure logger
logger = logging.getLogger(__name__)

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status']
)

REQUEST_LATENCY = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, float("inf")]
)

# Error metrics
ERROR_COUNT = Counter(
    'error_total',
    'Total number of errors',
    ['type', 'location']  # type: e.g., 'http', 'workflow', 'generation'; location: specific component
)

# Workflow metrics
WORKFLOW_RUN_COUNT = Counter(
    'workflow_runs_total',
    'Total number of finished workflow runs',
    ['status']  # completed, failed, cancelled
)

STAGE_PROCESSING_TIME = Histogram(
    'workflow_stage_duration_seconds',
    'Time spent executing a workflow stage',
    ['stage_id', 'status'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, float("inf")]
)

CHECKPOINT_WAIT_TIME = Histogram(
    'workflow_checkpoint_wait_seconds',
    'Time a checkpoint stage waited for a teacher decision',
    ['stage_id', 'decision'],  # decision: approve, regenerate, reject, timeout, cancelled
    buckets=[1.0, 5.0, 10.0, 20.0, 30.0, 60.0, float("inf")]
)

# External API metrics
GENERATION_REQUEST_TIME = Histogram(
    'generation_request_duration_seconds',
    'Time spent waiting for the Generation Service',
    ['model'],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, float("inf")]
)

SPEECH_REQUEST_TIME = Histogram(
    'speech_request_duration_seconds',
    'Time spent waiting for the Speech Service',
    ['provider'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, float("inf")]
)

# Classifier and memory metrics
CLASSIFICATION_COUNT = Counter(
    'intent_classifications_total',
    'Total number of classified requests',
    ['intent', 'fallback']
)

MEMORY_SWEEP_REMOVED = Counter(
    'memory_sweep_removed_items_total',
    'Memory items removed by the retention sweep'
)

# Chat metrics
CHAT_REPLY_COUNT = Counter(
    'chat_replies_total',
    'Total number of chat turns answered',
    ['intent', 'status']  # status: ok, unavailable
)


def track_latency(metric: Histogram, labels: Optional[Callable] = None) -> Callable:
    """
    A decorator factory that tracks the execution time of a function using a Prometheus Histogram.

    Args:
        metric (Histogram): The Prometheus Histogram to record the timing in
        labels (Callable, optional): Function that receives the first positional argument
            (``self`` for instance methods) and returns the metric labels dictionary

    Returns:
        Callable: The decorated function
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
                return result
            finally:
                duration = time.time() - start_time
                if labels and args:
                    label_dict = labels(args[0])
                    metric.labels(**label_dict).observe(duration)
                else:
                    metric.observe(duration)

                func_name = func.__name__
                logger.debug(
                    f"Function {func_name} execution time: {duration:.2f} seconds",
                    extra={'extra_fields': {'duration': duration, 'function': func_name}}
                )
        return wrapper
    return decorator


def track_errors(error_type: str, location: str) -> Callable:
    """
    A decorator factory that tracks errors occurring in a function.

    Args:
        error_type (str): Type of error (e.g., 'http', 'workflow', 'generation')
        location (str): Where the error occurred

    Returns:
        Callable: The decorated function

    Example:
        @track_errors('generation', 'openai_generation')
        def generate(self, prompt: str):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                ERROR_COUNT.labels(
                    type=error_type,
                    location=location
                ).inc()

                logger.error(
                    f"Error in {location} ({error_type}): {str(e)}",
                    extra={
                        'extra_fields': {
                            'error_type': error_type,
                            'location': location,
                            'error': str(e)
                        }
                    },
                    exc_info=True
                )
                raise  # Re-raise the exception after tracking
        return wrapper
    return decorator
