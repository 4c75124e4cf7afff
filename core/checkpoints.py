"""
core/checkpoints.py

Signalled wait for human-in-the-loop checkpoint decisions.

A suspended checkpoint stage blocks its run's worker thread on a CheckpointGate
until one of three things happens: a decision is submitted, the run is
cancelled, or the timeout expires. The gate shares the run's lock, so status
readers and decision writers are serialised with the worker without any
polling.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from shared.models import CheckpointDecision


@dataclass
class CheckpointResolution:
    """A teacher's decision for one checkpoint, with its (already validated) payload."""
    stage_id: str
    decision: CheckpointDecision
    payload: Dict[str, Any] = field(default_factory=dict)


class CheckpointGate:
    """
    One decision slot per run.

    All methods must be called with the run lock held (the lock passed to the
    constructor); `wait` releases it while blocked, like `threading.Condition.wait`.

    Lifecycle per checkpoint: `open(stage_id, timeout)` → `wait()` returns a
    resolution, None on timeout, or None with `cancelled` set → `close()`.
    """

    def __init__(self, lock) -> None:
        self._condition = threading.Condition(lock)
        self._stage_id: Optional[str] = None
        self._resolution: Optional[CheckpointResolution] = None
        self._deadline: Optional[float] = None
        self.opened_at: Optional[float] = None
        self.cancelled = False

    @property
    def awaiting_stage_id(self) -> Optional[str]:
        """Stage currently accepting a decision, or None."""
        if self._resolution is not None:
            return None
        return self._stage_id

    def seconds_remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def open(self, stage_id: str, timeout_seconds: float) -> None:
        """Start accepting a decision for `stage_id`; the timeout starts now."""
        self._stage_id = stage_id
        self._resolution = None
        self.opened_at = time.monotonic()
        self._deadline = self.opened_at + timeout_seconds

    def close(self) -> None:
        self._stage_id = None
        self._resolution = None
        self._deadline = None
        self.opened_at = None

    def submit(self, resolution: CheckpointResolution) -> None:
        """Hand a decision to the waiting worker. The caller has validated it."""
        self._resolution = resolution
        self._condition.notify_all()

    def cancel(self) -> None:
        self.cancelled = True
        self._condition.notify_all()

    def wait(self) -> Optional[CheckpointResolution]:
        """
        Block until a decision arrives, the run is cancelled or the deadline passes.

        Returns:
            Optional[CheckpointResolution]: The decision, or None on timeout or
            cancellation (check `cancelled` to tell them apart).
        """
        while self._resolution is None and not self.cancelled:
            remaining = self.seconds_remaining()
            if remaining is None or remaining <= 0:
                return None
            self._condition.wait(timeout=remaining)
        if self.cancelled:
            return None
        return self._resolution
