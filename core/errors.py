"""
core/errors.py

Error taxonomy of the workflow core.

Fatal stage failures derive from StageExecutionError and carry the id of the
stage that failed; the orchestrator turns them into an `error` stage and a
`failed` run. The remaining errors are raised straight to callers of the
orchestrator API and are mapped to HTTP status codes by the api package.

Classification fallback is not an error: the classifier returns an Intent with
`is_fallback=True` instead of raising.
"""

from typing import Optional

from shared.models import InvalidTransition


class WorkflowError(Exception):
    """Base class for every error raised by the workflow core."""


class StageExecutionError(WorkflowError):
    """A stage failed; the run halts and the stage is marked `error`."""

    def __init__(self, stage_id: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.stage_id = stage_id
        self.cause = cause
        if message is None:
            message = f"Stage '{stage_id}' failed: {cause}" if cause else f"Stage '{stage_id}' failed"
        super().__init__(message)


class CheckpointTimeout(StageExecutionError):
    """No decision arrived for a suspended checkpoint within the configured timeout."""

    def __init__(self, stage_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            stage_id,
            message=f"Checkpoint '{stage_id}' timed out after {timeout_seconds:g} seconds without a decision",
        )


class CheckpointRejected(StageExecutionError):
    """The teacher rejected the content presented at a checkpoint."""

    def __init__(self, stage_id: str, reason: Optional[str] = None):
        self.reason = reason
        message = f"Checkpoint '{stage_id}' was rejected"
        if reason:
            message += f": {reason}"
        super().__init__(stage_id, message=message)


class GenerationUnavailable(WorkflowError):
    """The Generation Service failed or did not answer in time."""


class RunAlreadyActive(WorkflowError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' already has an active workflow run")


class RunNotFound(WorkflowError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No workflow run found for session '{session_id}'")


class SessionNotFound(WorkflowError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class InvalidDecision(WorkflowError):
    """
    A checkpoint resolution that cannot be applied: unknown stage, stage not
    suspended, unknown decision, missing payload or regeneration limit reached.
    """


__all__ = [
    "WorkflowError",
    "StageExecutionError",
    "CheckpointTimeout",
    "CheckpointRejected",
    "GenerationUnavailable",
    "RunAlreadyActive",
    "RunNotFound",
    "SessionNotFound",
    "InvalidDecision",
    "InvalidTransition",
]
