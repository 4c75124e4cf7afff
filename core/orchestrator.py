"""
core/orchestrator.py

Workflow orchestrator for teacher requests.

This module contains the coordination logic that:
1. Classifies the request that starts a run
2. Executes the configured stages strictly in order on the run's own thread
3. Suspends at checkpoint stages until the teacher decides, the run is
   cancelled or the checkpoint times out
4. Produces the final artifact through the Generation Service, tracked as a
   closing `artifact` stage after the configured ones
5. Exposes deep-copied status snapshots for polling

A suspended run keeps its thread for as long as it waits, so every run owns a
dedicated thread; only Generation Service calls share a bounded pool.

Every stage change goes through the stage state machine in shared.models, and
every orchestration event is recorded twice: as a LogEntry on the stage (for
callers) and in the process log (for operators).
"""

import copy
import json
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Dict, List, Optional, Sequence

from config import CONFIG, load_prompt
from config.logging_config import get_logger
from core.checkpoints import CheckpointGate, CheckpointResolution
from core.classifier import IntentClassifier
from core.errors import (
    CheckpointRejected,
    CheckpointTimeout,
    GenerationUnavailable,
    InvalidDecision,
    RunAlreadyActive,
    RunNotFound,
    SessionNotFound,
    StageExecutionError,
)
from core.stages import RunContext, StageRegistry, build_default_registry
from llm_cloud.generation import GenerationService, get_generation_service
from monitoring.metrics import (
    CHECKPOINT_WAIT_TIME,
    STAGE_PROCESSING_TIME,
    WORKFLOW_RUN_COUNT,
)
from services.session_memory import SessionMemoryStore
from services.session_store import SessionRepository
from shared.models import (
    CheckpointDecision,
    Intent,
    LogEntry,
    RunStatus,
    Stage,
    StageStatus,
)
from shared.utils import generate_id, to_iso, truncate_message_for_logging, utc_now

logger = get_logger(__name__)

ACTIVE_STATUSES = {RunStatus.PENDING, RunStatus.RUNNING, RunStatus.AWAITING_INPUT}
CLASSIFY_HANDLER = "classify_intent"
ARTIFACT_STAGE = {
    "id": "artifact",
    "name": "Final Artifact",
    "kind": "automated",
    "handler": "generate_artifact",
}


class WorkflowRun:
    """
    Mutable state of one run of the stage pipeline for one session.

    All fields are guarded by `lock`; the checkpoint gate shares the same lock.
    """

    def __init__(self, session_id: str, trigger_text: str, subjects: List[str],
                 grades: List[int], stages: List[Stage]):
        self.id = generate_id("run")
        self.session_id = session_id
        self.trigger_text = trigger_text
        self.subjects = subjects
        self.grades = grades
        self.pipeline_stages = stages
        self.artifact_stage = Stage.from_config(ARTIFACT_STAGE)
        self.stages = stages + [self.artifact_stage]
        self.status = RunStatus.PENDING
        self.intent: Optional[Intent] = None
        self.result: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self.current_stage_id: Optional[str] = None
        self.regenerations: Dict[str, int] = {}
        self.created_at = utc_now()
        self.started_at = None
        self.ended_at = None
        self.lock = threading.Lock()
        self.gate = CheckpointGate(self.lock)
        self.cancel_event = threading.Event()

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def stage(self, stage_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None


class RunHandle:
    """
    Caller-side handle for a started run.

    `wait()` blocks until the run reaches a terminal status and returns its final
    status snapshot.
    """

    def __init__(self, run: WorkflowRun, future: Future):
        self._run = run
        self._future = future

    @property
    def session_id(self) -> str:
        return self._run.session_id

    @property
    def run_id(self) -> str:
        return self._run.id

    def done(self) -> bool:
        return self._future.done()

    def wait(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._future.result(timeout=timeout)


class WorkflowOrchestrator:
    """
    Runs the configured stage pipeline for sessions, one active run per session.

    Responsibilities:
    - Intent classification at the start of each run
    - Strict in-order stage execution with skip rules (`applies_to`)
    - Checkpoint suspension, decisions, regeneration limits and timeouts
    - Cancellation between units of work, without rollback
    - Final artifact generation and status/result snapshots

    Args:
        classifier (IntentClassifier, optional): Defaults to a new IntentClassifier.
        memory_store (SessionMemoryStore, optional): Shared with the API layer.
        generation_service (GenerationService, optional): Defaults to the configured one.
        sessions (SessionRepository, optional): When given, runs require an existing
            session and stage snapshots are recorded on it.
        registry (StageRegistry, optional): Defaults to the built-in worksheet handlers.
        workflow_config (Dict[str, Any], optional): Defaults to `CONFIG["workflow"]`.
    """

    def __init__(self,
                 classifier: Optional[IntentClassifier] = None,
                 memory_store: Optional[SessionMemoryStore] = None,
                 generation_service: Optional[GenerationService] = None,
                 sessions: Optional[SessionRepository] = None,
                 registry: Optional[StageRegistry] = None,
                 workflow_config: Optional[Dict[str, Any]] = None):
        self.workflow_config = workflow_config or CONFIG["workflow"]
        self.classifier = classifier or IntentClassifier()
        self.memory_store = memory_store or SessionMemoryStore()
        self.generation_service = generation_service or get_generation_service()
        self.sessions = sessions
        self.registry = registry or build_default_registry()

        self.checkpoint_timeout = float(self.workflow_config.get("checkpoint_timeout_seconds", 30))
        self.generation_timeout = float(self.workflow_config.get("generation_timeout_seconds", 60))
        self.max_regenerations = int(self.workflow_config.get("max_regenerations", 3))
        generation_workers = int(self.workflow_config.get("generation_workers", 8))

        self.stage_configs = list(self.workflow_config["stages"])
        self.registry.check_stages([Stage.from_config(config) for config in self.stage_configs])

        self._runs: Dict[str, WorkflowRun] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._generation_executor = ThreadPoolExecutor(
            max_workers=generation_workers, thread_name_prefix="generation"
        )

        logger.info(
            f"[WorkflowOrchestrator] Initialized with {len(self.stage_configs)} stages, "
            f"checkpoint timeout {self.checkpoint_timeout}s, generation timeout {self.generation_timeout}s"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_run(self, session_id: str, trigger_text: str,
                  subjects: Optional[Sequence[str]] = None,
                  grades: Optional[Sequence[int]] = None) -> RunHandle:
        """
        Start a run of the stage pipeline for a session.

        Args:
            session_id (str): Session the run belongs to.
            trigger_text (str): The teacher's request.
            subjects (Optional[Sequence[str]]): Selected subjects.
            grades (Optional[Sequence[int]]): Selected grades.

        Returns:
            RunHandle: Handle to wait on; status is available through `get_status`.

        Raises:
            SessionNotFound: If a session repository is attached and has no such session.
            RunAlreadyActive: If the session already has a pending, running or suspended run.
        """
        if self.sessions is not None and not self.sessions.exists(session_id):
            raise SessionNotFound(session_id)

        run = WorkflowRun(
            session_id=session_id,
            trigger_text=trigger_text or "",
            subjects=list(subjects or []),
            grades=[int(grade) for grade in (grades or [])],
            stages=[Stage.from_config(config) for config in self.stage_configs],
        )

        with self._lock:
            existing = self._runs.get(session_id)
            if existing is not None:
                with existing.lock:
                    if existing.is_active:
                        raise RunAlreadyActive(session_id)
            self._runs[session_id] = run
            future = Future()
            thread = threading.Thread(
                target=self._run_thread, args=(run, future),
                name=f"workflow-{run.id}", daemon=True,
            )
            self._threads[run.id] = thread

        self._publish(run)
        thread.start()
        logger.info(
            f"[WorkflowOrchestrator] Started run {run.id} for session {session_id}: "
            f"'{truncate_message_for_logging(run.trigger_text, 80)}'"
        )
        return RunHandle(run, future)

    def get_status(self, session_id: str) -> Dict[str, Any]:
        """
        Deep-copied status snapshot of the session's latest run.

        Raises:
            RunNotFound: If the session has never started a run.
        """
        run = self._get_run(session_id)
        with run.lock:
            return copy.deepcopy(self._snapshot(run))

    def resolve_checkpoint(self, session_id: str, stage_id: str, decision,
                           payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Deliver a teacher decision to a suspended checkpoint stage.

        Args:
            session_id (str): Session whose run is waiting.
            stage_id (str): The suspended checkpoint stage.
            decision: "approve", "regenerate" or "reject" (or a CheckpointDecision).
            payload (Optional[Dict[str, Any]]): Decision data, e.g. {"date": "2026-10-20"}
                for the scheduling checkpoint or {"reason": ...} for a rejection.

        Returns:
            Dict[str, Any]: Status snapshot taken right after the decision was accepted.

        Raises:
            RunNotFound: If the session has no run.
            InvalidDecision: If the stage is not waiting for a decision, the decision is
                unknown, the payload is invalid or the regeneration limit is reached.
        """
        run = self._get_run(session_id)
        with run.lock:
            if not run.is_active:
                raise InvalidDecision(f"Run for session '{session_id}' is {run.status.value}")

            stage = run.stage(stage_id)
            if stage is None:
                raise InvalidDecision(f"Unknown stage '{stage_id}'")
            if stage.status != StageStatus.SUSPENDED or run.gate.awaiting_stage_id != stage_id:
                raise InvalidDecision(f"Stage '{stage_id}' is not waiting for a decision")

            try:
                decision = CheckpointDecision(decision.lower() if isinstance(decision, str) else decision)
            except ValueError:
                raise InvalidDecision(f"Unknown decision '{decision}'")

            handler = self.registry.get(stage.handler)
            payload = dict(payload or {})
            if decision == CheckpointDecision.REGENERATE:
                if not handler.allows_regenerate:
                    raise InvalidDecision(f"Stage '{stage_id}' cannot be regenerated")
                used = run.regenerations.get(stage_id, 0)
                if used >= self.max_regenerations:
                    raise InvalidDecision(
                        f"Regeneration limit reached for stage '{stage_id}' ({self.max_regenerations})"
                    )
            elif decision == CheckpointDecision.APPROVE:
                payload = handler.validate(payload)

            run.gate.submit(CheckpointResolution(stage_id, decision, payload))
            logger.info(f"[WorkflowOrchestrator] Checkpoint {stage_id} of session {session_id} resolved: {decision.value}")
            return copy.deepcopy(self._snapshot(run))

    def cancel_run(self, session_id: str) -> Dict[str, Any]:
        """
        Request cancellation of the session's run.

        The run stops after its current unit of work: the current stage keeps its
        status, completed stages stay completed and later stages stay pending. A
        suspended checkpoint is woken immediately. Cancelling a finished run is a no-op.

        Raises:
            RunNotFound: If the session has no run.
        """
        run = self._get_run(session_id)
        with run.lock:
            if run.is_active:
                run.cancel_event.set()
                run.gate.cancel()
                logger.info(f"[WorkflowOrchestrator] Cancellation requested for run {run.id} of session {session_id}")
            return copy.deepcopy(self._snapshot(run))

    def get_result(self, session_id: str) -> Dict[str, Any]:
        """
        Final artifact (None until the run completes) with the per-stage execution log.

        Raises:
            RunNotFound: If the session has no run.
        """
        run = self._get_run(session_id)
        with run.lock:
            return copy.deepcopy({
                "runId": run.id,
                "sessionId": run.session_id,
                "overallStatus": run.status.value,
                "intent": run.intent.to_dict() if run.intent else None,
                "artifact": run.result,
                "error": run.error,
                "log": [
                    {
                        "stageId": stage.id,
                        "name": stage.name,
                        "status": stage.status.value,
                        "logEntries": [entry.to_dict() for entry in stage.log_entries],
                    }
                    for stage in run.stages
                ],
            })

    def shutdown(self, wait: bool = True) -> None:
        """Cancel every active run, optionally wait for their threads, and stop the generation pool."""
        with self._lock:
            runs = list(self._runs.values())
            threads = list(self._threads.values())
        for run in runs:
            with run.lock:
                if run.is_active:
                    run.cancel_event.set()
                    run.gate.cancel()
        if wait:
            for thread in threads:
                thread.join()
        self._generation_executor.shutdown(wait=wait)
        logger.info("[WorkflowOrchestrator] Shut down")

    # ------------------------------------------------------------------
    # Run execution (run thread)
    # ------------------------------------------------------------------

    def _run_thread(self, run: WorkflowRun, future: Future) -> None:
        """Thread target: execute the run and settle its future."""
        try:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._execute(run))
            except BaseException as e:
                future.set_exception(e)
        finally:
            with self._lock:
                self._threads.pop(run.id, None)

    def _execute(self, run: WorkflowRun) -> Dict[str, Any]:
        run_logger = get_logger(__name__, session_id=run.session_id)
        ctx = RunContext(
            session_id=run.session_id,
            trigger_text=run.trigger_text,
            subjects=run.subjects,
            grades=run.grades,
            memory_store=self.memory_store,
            generate=self.generate_text,
            log=lambda *args, **kwargs: None,
            workflow_config=self.workflow_config,
        )

        try:
            if run.cancel_event.is_set():
                return self._finish(run, RunStatus.CANCELLED)
            with run.lock:
                run.status = RunStatus.RUNNING
                run.started_at = utc_now()

            intent = self.classifier.classify(run.trigger_text, run.subjects, run.grades)
            ctx.intent = intent
            ctx.planned_stage_ids = [stage.id for stage in run.stages if stage.applies_to_intent(intent.type)]
            with run.lock:
                run.intent = intent

            if intent.is_fallback:
                self._fail_unclear_intent(run, intent)
                return self._finish(run, RunStatus.FAILED)

            for stage in run.pipeline_stages:
                if run.cancel_event.is_set():
                    break

                if not stage.applies_to_intent(intent.type):
                    self._skip_stage(run, stage, intent)
                    continue

                handler = self.registry.get(stage.handler)
                if stage.is_checkpoint:
                    finished = self._run_checkpoint(run, stage, handler, ctx)
                else:
                    finished = self._run_automated(run, stage, handler, ctx)
                if not finished:
                    break

                with run.lock:
                    ctx.outputs[stage.handler] = copy.deepcopy(stage.output)
                self._publish(run)

            if run.cancel_event.is_set():
                return self._finish(run, RunStatus.CANCELLED)

            if not self._run_artifact_stage(run, ctx):
                return self._finish(run, RunStatus.CANCELLED)
            return self._finish(run, RunStatus.COMPLETED)

        except StageExecutionError as e:
            run_logger.error(f"[WorkflowOrchestrator] Run {run.id} failed at stage {e.stage_id}: {e}")
            return self._finish(run, RunStatus.FAILED, error=str(e))
        except Exception as e:
            run_logger.error(f"[WorkflowOrchestrator] Run {run.id} failed unexpectedly: {e}", exc_info=True)
            return self._finish(run, RunStatus.FAILED, error=str(e))

    def _fail_unclear_intent(self, run: WorkflowRun, intent: Intent) -> None:
        message = "Request intent is unclear"
        reasoning = (
            f"No intent pattern scored above the threshold; fell back to {intent.type} "
            f"with {intent.confidence}% confidence. Please rephrase the request with more detail."
        )
        with run.lock:
            run.error = message
            stage = next((s for s in run.stages if s.handler == CLASSIFY_HANDLER), None)
            if stage is not None:
                stage.transition(StageStatus.RUNNING)
                run.current_stage_id = stage.id
                stage.append_log(LogEntry(message, reasoning, {
                    "confidence": intent.confidence,
                    "isFallback": True,
                    "modelUsed": "rule-based-classifier",
                }))
                stage.transition(StageStatus.ERROR)
        get_logger(__name__, session_id=run.session_id).warning(f"[WorkflowOrchestrator] Run {run.id} halted: {message}")

    def _skip_stage(self, run: WorkflowRun, stage: Stage, intent: Intent) -> None:
        with run.lock:
            stage.transition(StageStatus.SKIPPED)
            stage.append_log(LogEntry(
                "Stage skipped",
                f"{stage.name} does not apply to {intent.type} requests",
            ))
        STAGE_PROCESSING_TIME.labels(stage_id=stage.id, status=StageStatus.SKIPPED.value).observe(0)
        self._publish(run)

    def _start_stage(self, run: WorkflowRun, stage: Stage, ctx: RunContext) -> None:
        with run.lock:
            stage.transition(StageStatus.RUNNING)
            run.current_stage_id = stage.id
            stage.append_log(LogEntry("Stage started", f"{stage.name} started"))
        ctx.log = self._stage_log_writer(run, stage)
        get_logger(__name__, session_id=run.session_id, stage_id=stage.id).info(f"[WorkflowOrchestrator] Stage {stage.id} started")
        self._publish(run)

    def _run_automated(self, run: WorkflowRun, stage: Stage, handler, ctx: RunContext) -> bool:
        """
        Run an automated stage. Returns False if the run was cancelled part-way.

        Raises:
            StageExecutionError: If the handler fails; the stage is marked error.
        """
        self._start_stage(run, stage, ctx)
        started = time.monotonic()
        try:
            output = handler.run(ctx) or {}
            for label in stage.sub_steps:
                if run.cancel_event.is_set():
                    return False
                with run.lock:
                    stage.append_log(LogEntry(label, f"{label} finished for {stage.name}"))

            elapsed = time.monotonic() - started
            with run.lock:
                stage.output = output
                stage.transition(StageStatus.COMPLETED)
                stage.append_log(LogEntry(
                    "Stage completed", f"{stage.name} completed", {"processingTime": round(elapsed, 3)}
                ))
            STAGE_PROCESSING_TIME.labels(stage_id=stage.id, status=StageStatus.COMPLETED.value).observe(elapsed)
            return True
        except Exception as e:
            raise self._fail_stage(run, stage, e, started)

    def _run_checkpoint(self, run: WorkflowRun, stage: Stage, handler, ctx: RunContext) -> bool:
        """
        Run a checkpoint stage: prepare review data, suspend, and act on the decision.

        Returns False if the run was cancelled while the stage was waiting (the stage
        then stays suspended).

        Raises:
            CheckpointTimeout: No decision within the timeout.
            CheckpointRejected: The teacher rejected the content.
            StageExecutionError: Preparing or completing the stage failed.
        """
        self._start_stage(run, stage, ctx)
        started = time.monotonic()
        attempt = 0
        try:
            review = handler.prepare(ctx, attempt)
            while True:
                with run.lock:
                    if run.cancel_event.is_set():
                        return False
                    stage.output = {"review": review}
                    if stage.status == StageStatus.RUNNING:
                        stage.transition(StageStatus.SUSPENDED)
                    stage.append_log(LogEntry(
                        "Awaiting teacher decision",
                        f"{stage.name} is waiting up to {self.checkpoint_timeout:g}s for a decision",
                        {"attempt": attempt + 1, "timeoutSeconds": self.checkpoint_timeout},
                    ))
                    run.status = RunStatus.AWAITING_INPUT
                    run.gate.open(stage.id, self.checkpoint_timeout)
                    wait_started = time.monotonic()
                self._publish(run)

                with run.lock:
                    resolution = run.gate.wait()
                    waited = time.monotonic() - wait_started
                    run.gate.close()

                    if run.cancel_event.is_set():
                        CHECKPOINT_WAIT_TIME.labels(stage_id=stage.id, decision="cancelled").observe(waited)
                        return False
                    if resolution is None:
                        CHECKPOINT_WAIT_TIME.labels(stage_id=stage.id, decision="timeout").observe(waited)
                        raise CheckpointTimeout(stage.id, self.checkpoint_timeout)

                    CHECKPOINT_WAIT_TIME.labels(stage_id=stage.id, decision=resolution.decision.value).observe(waited)
                    run.status = RunStatus.RUNNING

                    if resolution.decision == CheckpointDecision.REJECT:
                        raise CheckpointRejected(stage.id, resolution.payload.get("reason"))

                    if resolution.decision == CheckpointDecision.REGENERATE:
                        attempt += 1
                        run.regenerations[stage.id] = attempt
                        stage.append_log(LogEntry(
                            "Regeneration requested",
                            f"Teacher asked for a new draft ({attempt} of {self.max_regenerations})",
                            {"attempt": attempt + 1},
                        ))
                    else:
                        stage.transition(StageStatus.RUNNING)
                        stage.append_log(LogEntry(
                            "Teacher approved", f"{stage.name} approved", {"parameters": dict(resolution.payload)}
                        ))

                if resolution.decision == CheckpointDecision.REGENERATE:
                    review = handler.prepare(ctx, attempt)
                    continue

                output = handler.complete(ctx, review, resolution.payload)
                elapsed = time.monotonic() - started
                with run.lock:
                    stage.output = output
                    stage.transition(StageStatus.COMPLETED)
                    stage.append_log(LogEntry(
                        "Stage completed", f"{stage.name} completed", {"processingTime": round(elapsed, 3)}
                    ))
                STAGE_PROCESSING_TIME.labels(stage_id=stage.id, status=StageStatus.COMPLETED.value).observe(elapsed)
                return True
        except Exception as e:
            raise self._fail_stage(run, stage, e, started)

    def _fail_stage(self, run: WorkflowRun, stage: Stage, exc: Exception, started: float) -> StageExecutionError:
        """Mark the stage error with a message/reasoning entry and return the error to raise."""
        elapsed = time.monotonic() - started
        with run.lock:
            stage.append_log(LogEntry(
                f"{stage.name} failed",
                str(exc),
                {"errorType": type(exc).__name__, "processingTime": round(elapsed, 3)},
            ))
            if stage.status in (StageStatus.RUNNING, StageStatus.SUSPENDED):
                stage.transition(StageStatus.ERROR)
            if run.gate.awaiting_stage_id is not None:
                run.gate.close()
        STAGE_PROCESSING_TIME.labels(stage_id=stage.id, status=StageStatus.ERROR.value).observe(elapsed)
        get_logger(__name__, session_id=run.session_id, stage_id=stage.id).error(
            f"[WorkflowOrchestrator] Stage {stage.id} failed: {exc}", exc_info=not isinstance(exc, StageExecutionError)
        )
        if isinstance(exc, StageExecutionError):
            return exc
        error = StageExecutionError(stage.id, exc)
        error.__cause__ = exc
        return error

    def _stage_log_writer(self, run: WorkflowRun, stage: Stage):
        def write(message: str, reasoning: str, metadata: Optional[Dict[str, Any]] = None) -> None:
            with run.lock:
                stage.append_log(LogEntry(message, reasoning, metadata))
        return write

    def generate_text(self, prompt: str) -> str:
        """
        Call the Generation Service on the generation pool, bounded by the timeout.

        Raises:
            GenerationUnavailable: On failure or timeout.
        """
        future = self._generation_executor.submit(self.generation_service.generate, prompt)
        try:
            return future.result(timeout=self.generation_timeout)
        except FuturesTimeoutError:
            future.cancel()
            raise GenerationUnavailable(
                f"Generation Service did not answer within {self.generation_timeout:g} seconds"
            )
        except GenerationUnavailable:
            raise
        except Exception as e:
            raise GenerationUnavailable(f"Generation Service failed: {e}") from e

    def _run_artifact_stage(self, run: WorkflowRun, ctx: RunContext) -> bool:
        """
        Generate the final artifact as the closing `artifact` stage.

        Returns False if the run was cancelled while the Generation Service was
        working; the stage then stays running and no artifact is kept.

        Raises:
            StageExecutionError: If generation fails; the stage is marked error.
        """
        stage = run.artifact_stage
        self._start_stage(run, stage, ctx)
        started = time.monotonic()
        try:
            artifact = self._generate_artifact(run, ctx)
        except GenerationUnavailable as e:
            raise self._fail_stage(run, stage, GenerationUnavailable(f"Final artifact unavailable: {e}"), started)
        except Exception as e:
            raise self._fail_stage(run, stage, e, started)

        if run.cancel_event.is_set():
            return False

        elapsed = time.monotonic() - started
        with run.lock:
            run.result = artifact
            stage.output = {"format": artifact["format"], "modelUsed": artifact["modelUsed"]}
            stage.transition(StageStatus.COMPLETED)
            stage.append_log(LogEntry(
                "Stage completed",
                f"Final artifact generated ({len(artifact['content'])} characters)",
                {"processingTime": round(elapsed, 3), "modelUsed": artifact["modelUsed"]},
            ))
        STAGE_PROCESSING_TIME.labels(stage_id=stage.id, status=StageStatus.COMPLETED.value).observe(elapsed)
        return True

    def _generate_artifact(self, run: WorkflowRun, ctx: RunContext) -> Dict[str, Any]:
        brief = ctx.outputs.get("build_worksheet_brief", {})
        personalised = ctx.outputs.get("personalise_brief", {})
        approved = ctx.outputs.get("review_sample_questions", {}).get("approvedQuestions", [])
        delivery = ctx.outputs.get("schedule_delivery", {}).get("deliveryDate")

        prompt = load_prompt("final_worksheet").format(
            grade=ctx.grade,
            subject=ctx.subject,
            request=run.trigger_text,
            context="\n".join(f"- {item}" for item in brief.get("context", [])) or "No previous context",
            intent=ctx.intent.type,
            confidence=ctx.intent.confidence,
            difficulty=brief.get("difficulty", ctx.parameters.get("difficulty", "medium")),
            adaptations="; ".join(personalised.get("adaptations", [])) or "none",
            approved_questions=json.dumps(approved, ensure_ascii=False) if approved else "none",
            delivery_date=delivery or "not scheduled",
        )
        content = self.generate_text(prompt)
        get_logger(__name__, session_id=run.session_id).info(
            f"[WorkflowOrchestrator] Final artifact generated for run {run.id} ({len(content)} characters)"
        )
        return {
            "content": content,
            "format": "markdown",
            "modelUsed": self.generation_service.model_name,
            "generatedAt": to_iso(utc_now()),
        }

    def _finish(self, run: WorkflowRun, status: RunStatus, error: Optional[str] = None) -> Dict[str, Any]:
        with run.lock:
            run.status = status
            if error is not None:
                run.error = error
            run.ended_at = utc_now()
            run.gate.close()
            snapshot = copy.deepcopy(self._snapshot(run))
        WORKFLOW_RUN_COUNT.labels(status=status.value).inc()
        get_logger(__name__, session_id=run.session_id).info(
            f"[WorkflowOrchestrator] Run {run.id} finished with status {status.value} "
            f"(progress {snapshot['progress']:.2f})"
        )
        self._publish(run, persist=True)
        return snapshot

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_run(self, session_id: str) -> WorkflowRun:
        with self._lock:
            run = self._runs.get(session_id)
        if run is None:
            raise RunNotFound(session_id)
        return run

    def _publish(self, run: WorkflowRun, persist: bool = False) -> None:
        """Record a copy of the run's stages on the session, if a repository is attached."""
        if self.sessions is None:
            return
        with run.lock:
            stages = copy.deepcopy(run.stages)
        self.sessions.record_stages(run.session_id, stages, persist=persist)

    def _snapshot(self, run: WorkflowRun) -> Dict[str, Any]:
        """Status view of a run. Call with the run lock held and copy the result."""
        total = len(run.stages)
        completed = sum(1 for stage in run.stages if stage.status == StageStatus.COMPLETED)
        skipped = sum(1 for stage in run.stages if stage.status == StageStatus.SKIPPED)
        failed = sum(1 for stage in run.stages if stage.status == StageStatus.ERROR)
        failed_stage = next((stage.id for stage in run.stages if stage.status == StageStatus.ERROR), None)
        durations = [
            stage.duration_seconds() for stage in run.stages
            if stage.status == StageStatus.COMPLETED and stage.duration_seconds() is not None
        ]

        awaiting = None
        awaiting_stage_id = run.gate.awaiting_stage_id
        if awaiting_stage_id is not None:
            stage = run.stage(awaiting_stage_id)
            handler = self.registry.get(stage.handler)
            awaiting = {
                "stageId": stage.id,
                "review": stage.output.get("review"),
                "secondsRemaining": run.gate.seconds_remaining(),
                "regenerationsUsed": run.regenerations.get(stage.id, 0),
                "regenerationsAllowed": self.max_regenerations if handler.allows_regenerate else 0,
            }

        return {
            "runId": run.id,
            "sessionId": run.session_id,
            "overallStatus": run.status.value,
            "progress": (completed + skipped) / total if total else 0.0,
            "currentStageId": run.current_stage_id,
            "intent": run.intent.to_dict() if run.intent else None,
            "awaitingCheckpoint": awaiting,
            "cancelRequested": run.cancel_event.is_set(),
            "error": run.error,
            "failedStageId": failed_stage,
            "createdAt": to_iso(run.created_at),
            "startedAt": to_iso(run.started_at),
            "endedAt": to_iso(run.ended_at),
            "metrics": {
                "totalStages": total,
                "completedStages": completed,
                "skippedStages": skipped,
                "failedStages": failed,
                "averageProcessingTime": (sum(durations) / len(durations)) if durations else 0.0,
            },
            "stages": [stage.to_dict() for stage in run.stages],
        }
