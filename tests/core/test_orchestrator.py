"""
Unit tests for `core/orchestrator.py` – WorkflowOrchestrator execution, checkpoints and cancellation.

The orchestrator runs each workflow on a worker thread, so these tests drive it the way a client would:
start a run, poll `get_status` until it waits at a checkpoint, deliver a decision, and wait on the run
handle for the final snapshot. The Generation Service is the deterministic `MockGenerationService` (or a
MagicMock where a failure is needed), and checkpoint timeouts are shortened through the workflow config so
nothing waits for long. No network access or file I/O is involved.
"""

import copy
import threading
import time
import unittest
from unittest.mock import MagicMock

from config import CONFIG
from core.classifier import IntentClassifier
from core.errors import (
    GenerationUnavailable,
    InvalidDecision,
    RunAlreadyActive,
    RunNotFound,
    SessionNotFound,
)
from core.orchestrator import WorkflowOrchestrator
from core.stages import AutomatedHandler, CheckpointHandler, build_default_registry
from llm_cloud.generation import MockGenerationService
from services.session_memory import SessionMemoryStore
from services.session_store import SessionRepository

WORKSHEET_REQUEST = "Create a worksheet for Grade 3 addition"
STAGE_ORDER = [
    "orchestrator", "intent-classifier", "worksheet-generator", "personaliser", "judge",
    "feedback", "memory", "scheduler", "notifier", "artifact",
]


def _workflow_config(**overrides):
    workflow = copy.deepcopy(CONFIG["workflow"])
    workflow.update({
        "checkpoint_timeout_seconds": 5,
        "generation_timeout_seconds": 5,
        "generation_workers": 2,
    })
    workflow.update(overrides)
    return workflow


def _statuses(snapshot):
    return {stage["id"]: stage["status"] for stage in snapshot["stages"]}


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        self.memory_store = SessionMemoryStore()
        self.generation = MockGenerationService()
        self.orchestrator = self._build()

    def tearDown(self):
        self.orchestrator.shutdown(wait=True)

    def _build(self, **overrides):
        return WorkflowOrchestrator(
            classifier=IntentClassifier(),
            memory_store=self.memory_store,
            generation_service=overrides.pop("generation_service", self.generation),
            sessions=overrides.pop("sessions", None),
            registry=overrides.pop("registry", None),
            workflow_config=_workflow_config(**overrides),
        )

    def wait_for(self, session_id, predicate, timeout=5.0):
        """Poll the status snapshot until `predicate` holds; fail the test on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            status = self.orchestrator.get_status(session_id)
            if predicate(status):
                return status
            time.sleep(0.01)
        self.fail(f"Condition not reached for {session_id}: {self.orchestrator.get_status(session_id)}")

    def wait_for_checkpoint(self, session_id, stage_id, regenerations_used=0):
        return self.wait_for(
            session_id,
            lambda status: status["awaitingCheckpoint"] is not None
            and status["awaitingCheckpoint"]["stageId"] == stage_id
            and status["awaitingCheckpoint"]["regenerationsUsed"] == regenerations_used,
        )


class TestWorkflowHappyPath(OrchestratorTestCase):
    """
    End-to-end runs that reach `completed`.

    These tests cover:
    - Strict stage order and a final progress of 1.0
    - Checkpoint approval, including the delivery date payload
    - Skipping of stages that do not apply to the classified intent
    - Memory items stored by the memory stage and the final artifact
    """

    def test_worksheet_run_completes(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])

        status = self.wait_for_checkpoint("s1", "feedback")
        self.assertEqual(status["overallStatus"], "awaiting_input")
        self.assertEqual(_statuses(status)["feedback"], "suspended")
        self.assertEqual(status["progress"], 5 / 10)
        review = status["awaitingCheckpoint"]["review"]
        self.assertEqual(len(review["questions"]), 3)
        self.assertEqual(status["intent"]["type"], "worksheetGeneration")
        self.assertEqual(status["intent"]["confidence"], 86)

        self.orchestrator.resolve_checkpoint("s1", "feedback", "approve", {"comment": "Looks good"})

        self.wait_for_checkpoint("s1", "scheduler")
        self.orchestrator.resolve_checkpoint("s1", "scheduler", "approve", {"date": "2026-03-10"})

        final = handle.wait(timeout=5)

        self.assertEqual(final["overallStatus"], "completed")
        self.assertEqual(final["progress"], 1.0)
        self.assertEqual([stage["id"] for stage in final["stages"]], STAGE_ORDER)
        self.assertTrue(all(status == "completed" for status in _statuses(final).values()))
        self.assertEqual(final["metrics"]["completedStages"], 10)
        self.assertEqual(final["metrics"]["failedStages"], 0)

        started = [stage["startedAt"] for stage in final["stages"]]
        self.assertEqual(started, sorted(started))

        result = self.orchestrator.get_result("s1")
        self.assertIn("Worksheet", result["artifact"]["content"])
        self.assertEqual(result["artifact"]["modelUsed"], "mock-generation")
        self.assertEqual(len(result["log"]), 10)

        stages = {stage["id"]: stage for stage in final["stages"]}
        self.assertEqual(stages["scheduler"]["output"], {"deliveryDate": "2026-03-10"})
        self.assertEqual(stages["feedback"]["output"]["comment"], "Looks good")
        self.assertEqual(stages["notifier"]["output"]["notification"]["status"], "scheduled")

        final_prompt = self.generation.prompts[-1]
        self.assertIn("2026-03-10", final_prompt)
        self.assertIn("Sample question 1 (draft 1)", final_prompt)

        self.assertGreater(self.memory_store.stats("s1")["totalItems"], 0)

    def test_stage_logs_carry_sub_steps(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        status = self.wait_for_checkpoint("s1", "feedback")

        classifier_stage = next(stage for stage in status["stages"] if stage["id"] == "intent-classifier")
        messages = [entry["message"] for entry in classifier_stage["logEntries"]]
        self.assertEqual(messages[0], "Stage started")
        self.assertIn("Intent classified as worksheetGeneration", messages)
        self.assertIn("Pattern matching", messages)
        self.assertEqual(messages[-1], "Stage completed")

        self.orchestrator.cancel_run("s1")
        handle.wait(timeout=5)

    def test_non_worksheet_intent_skips_feedback(self):
        handle = self.orchestrator.start_run("s2", "Create a lesson plan for fractions")

        status = self.wait_for_checkpoint("s2", "scheduler")
        self.assertEqual(_statuses(status)["feedback"], "skipped")
        self.assertEqual(status["intent"]["type"], "lessonPlanning")

        self.orchestrator.resolve_checkpoint("s2", "scheduler", "approve", {"date": "2026-03-11"})
        final = handle.wait(timeout=5)

        self.assertEqual(final["overallStatus"], "completed")
        self.assertEqual(final["progress"], 1.0)
        self.assertEqual(final["metrics"]["skippedStages"], 1)
        self.assertEqual(final["metrics"]["completedStages"], 9)

    def test_runs_are_recorded_on_the_session(self):
        sessions = SessionRepository(self.memory_store)
        session = sessions.create_session("Maths class")
        orchestrator = self._build(sessions=sessions)
        try:
            handle = orchestrator.start_run(session.id, "Create a lesson plan for fractions")
            deadline = time.monotonic() + 5
            while orchestrator.get_status(session.id)["awaitingCheckpoint"] is None:
                self.assertLess(time.monotonic(), deadline)
                time.sleep(0.01)
            orchestrator.resolve_checkpoint(session.id, "scheduler", "approve", {"date": "2026-03-11"})
            handle.wait(timeout=5)
        finally:
            orchestrator.shutdown(wait=True)

        stored = sessions.get(session.id)
        self.assertEqual(len(stored.stages), 10)
        self.assertTrue(all(stage.is_finished for stage in stored.stages))

        with self.assertRaises(SessionNotFound):
            self._build(sessions=sessions).start_run("missing", WORKSHEET_REQUEST)


class TestCheckpointDecisions(OrchestratorTestCase):
    """
    Decisions at suspended checkpoints.

    These tests cover:
    - Regeneration producing a new draft and the regeneration limit
    - Rejection failing the run and leaving later stages pending
    - Validation of decisions and payloads (InvalidDecision)
    - Checkpoint timeouts
    """

    def test_regenerate_produces_new_draft(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        first = self.wait_for_checkpoint("s1", "feedback")
        self.assertEqual(first["awaitingCheckpoint"]["review"]["questions"][0]["question"],
                         "Sample question 1 (draft 1)")

        self.orchestrator.resolve_checkpoint("s1", "feedback", "regenerate")

        second = self.wait_for_checkpoint("s1", "feedback", regenerations_used=1)
        self.assertEqual(second["awaitingCheckpoint"]["review"]["questions"][0]["question"],
                         "Sample question 1 (draft 2)")
        self.assertEqual(_statuses(second)["feedback"], "suspended")
        self.assertIn("attempt 2, make it different", self.generation.prompts[-1])

        self.orchestrator.cancel_run("s1")
        handle.wait(timeout=5)

    def test_regeneration_limit(self):
        self.orchestrator.shutdown(wait=True)
        self.orchestrator = self._build(max_regenerations=1)

        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        self.wait_for_checkpoint("s1", "feedback")
        self.orchestrator.resolve_checkpoint("s1", "feedback", "regenerate")
        self.wait_for_checkpoint("s1", "feedback", regenerations_used=1)

        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "feedback", "regenerate")

        self.orchestrator.resolve_checkpoint("s1", "feedback", "approve")
        self.wait_for_checkpoint("s1", "scheduler")
        self.orchestrator.cancel_run("s1")
        handle.wait(timeout=5)

    def test_reject_fails_run(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        self.wait_for_checkpoint("s1", "feedback")

        self.orchestrator.resolve_checkpoint("s1", "feedback", "reject", {"reason": "Too hard"})
        final = handle.wait(timeout=5)

        statuses = _statuses(final)
        self.assertEqual(final["overallStatus"], "failed")
        self.assertEqual(statuses["feedback"], "error")
        self.assertEqual(statuses["judge"], "completed")
        self.assertEqual(statuses["memory"], "pending")
        self.assertEqual(statuses["notifier"], "pending")
        self.assertIn("Too hard", final["error"])
        self.assertIsNone(self.orchestrator.get_result("s1")["artifact"])

    def test_invalid_decisions(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        self.wait_for_checkpoint("s1", "feedback")

        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "scheduler", "approve", {"date": "2026-03-10"})
        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "feedback", "maybe")
        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "no-such-stage", "approve")

        self.orchestrator.resolve_checkpoint("s1", "feedback", "APPROVE")
        self.wait_for_checkpoint("s1", "scheduler")

        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "scheduler", "approve")
        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "scheduler", "approve", {"date": "next week"})
        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "scheduler", "regenerate")

        self.orchestrator.resolve_checkpoint("s1", "scheduler", "approve", {"date": "2026-03-10"})
        self.assertEqual(handle.wait(timeout=5)["overallStatus"], "completed")

    def test_checkpoint_timeout_fails_run(self):
        self.orchestrator.shutdown(wait=True)
        self.orchestrator = self._build(checkpoint_timeout_seconds=0.2)

        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        final = handle.wait(timeout=5)

        statuses = _statuses(final)
        self.assertEqual(final["overallStatus"], "failed")
        self.assertEqual(statuses["feedback"], "error")
        self.assertEqual(statuses["memory"], "pending")
        self.assertEqual(statuses["scheduler"], "pending")
        self.assertIn("timed out", final["error"])

        feedback = next(stage for stage in final["stages"] if stage["id"] == "feedback")
        self.assertEqual(feedback["logEntries"][-1]["metadata"]["errorType"], "CheckpointTimeout")

        with self.assertRaises(InvalidDecision):
            self.orchestrator.resolve_checkpoint("s1", "feedback", "approve")


class TestRunLifecycle(OrchestratorTestCase):
    """
    Run-level behaviour: unclear intent, cancellation, one active run per session,
    generation failures and snapshot isolation.
    """

    def test_unclear_intent_fails_classification_stage(self):
        handle = self.orchestrator.start_run("s1", "hello there")
        final = handle.wait(timeout=5)

        statuses = _statuses(final)
        self.assertEqual(final["overallStatus"], "failed")
        self.assertEqual(statuses["intent-classifier"], "error")
        self.assertEqual(statuses["orchestrator"], "pending")
        self.assertEqual(statuses["notifier"], "pending")
        self.assertTrue(final["intent"]["isFallback"])

        classifier_stage = next(stage for stage in final["stages"] if stage["id"] == "intent-classifier")
        self.assertEqual(classifier_stage["logEntries"][0]["message"], "Request intent is unclear")
        self.assertIn("rephrase", classifier_stage["logEntries"][0]["reasoning"])
        self.assertEqual(self.generation.prompts, [])

    def test_cancel_while_suspended(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        self.wait_for_checkpoint("s1", "feedback")

        self.orchestrator.cancel_run("s1")
        final = handle.wait(timeout=5)

        statuses = _statuses(final)
        self.assertEqual(final["overallStatus"], "cancelled")
        self.assertTrue(final["cancelRequested"])
        self.assertEqual(statuses["judge"], "completed")
        self.assertEqual(statuses["feedback"], "suspended")
        self.assertEqual(statuses["memory"], "pending")
        self.assertIsNone(final["awaitingCheckpoint"])

        # Cancelling a finished run changes nothing.
        self.assertEqual(self.orchestrator.cancel_run("s1")["overallStatus"], "cancelled")

    def test_one_active_run_per_session(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        self.wait_for_checkpoint("s1", "feedback")

        with self.assertRaises(RunAlreadyActive):
            self.orchestrator.start_run("s1", WORKSHEET_REQUEST)

        other = self.orchestrator.start_run("s2", "Create a lesson plan for fractions")
        self.wait_for_checkpoint("s2", "scheduler")

        self.orchestrator.cancel_run("s1")
        handle.wait(timeout=5)
        self.orchestrator.cancel_run("s2")
        other.wait(timeout=5)

        restarted = self.orchestrator.start_run("s1", "Create a lesson plan for fractions")
        self.assertNotEqual(restarted.run_id, handle.run_id)
        self.wait_for_checkpoint("s1", "scheduler")
        self.orchestrator.cancel_run("s1")
        restarted.wait(timeout=5)

    def test_unknown_session_has_no_run(self):
        with self.assertRaises(RunNotFound):
            self.orchestrator.get_status("nobody")
        with self.assertRaises(RunNotFound):
            self.orchestrator.cancel_run("nobody")

    def test_generation_failure_marks_stage_error(self):
        failing = MagicMock()
        failing.model_name = "broken"
        failing.generate.side_effect = GenerationUnavailable("provider down")
        self.orchestrator.shutdown(wait=True)
        self.orchestrator = self._build(generation_service=failing)

        final = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3]).wait(timeout=5)

        statuses = _statuses(final)
        self.assertEqual(final["overallStatus"], "failed")
        self.assertEqual(statuses["feedback"], "error")
        self.assertEqual(final["failedStageId"], "feedback")
        self.assertEqual(statuses["memory"], "pending")
        self.assertIn("provider down", final["error"])
        self.assertEqual(statuses["artifact"], "pending")

    def test_generation_timeout(self):
        release = threading.Event()
        slow = MagicMock()
        slow.model_name = "slow"
        slow.generate.side_effect = lambda prompt: release.wait(2) and "{}"
        self.orchestrator.shutdown(wait=True)
        self.orchestrator = self._build(generation_service=slow, generation_timeout_seconds=0.1)

        try:
            final = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3]).wait(timeout=5)
        finally:
            release.set()

        self.assertEqual(final["overallStatus"], "failed")
        self.assertEqual(_statuses(final)["feedback"], "error")
        self.assertIn("did not answer", final["error"])

    def test_final_artifact_failure_flags_artifact_stage(self):
        failing = MagicMock()
        failing.model_name = "broken"
        failing.generate.side_effect = GenerationUnavailable("provider down")
        self.orchestrator.shutdown(wait=True)
        self.orchestrator = self._build(generation_service=failing)

        # Lesson plans skip the sample question review, so the only generation call is the final one.
        handle = self.orchestrator.start_run("s1", "Create a lesson plan for fractions")
        self.wait_for_checkpoint("s1", "scheduler")
        self.orchestrator.resolve_checkpoint("s1", "scheduler", "approve", {"date": "2026-03-11"})
        final = handle.wait(timeout=5)

        statuses = _statuses(final)
        self.assertEqual(final["overallStatus"], "failed")
        self.assertEqual(statuses["notifier"], "completed")
        self.assertEqual(statuses["artifact"], "error")
        self.assertEqual(final["failedStageId"], "artifact")
        self.assertEqual(final["metrics"]["failedStages"], 1)
        self.assertIn("Final artifact unavailable: provider down", final["error"])

        artifact_stage = next(stage for stage in final["stages"] if stage["id"] == "artifact")
        failure = artifact_stage["logEntries"][-1]
        self.assertEqual(failure["message"], "Final Artifact failed")
        self.assertIn("provider down", failure["reasoning"])
        self.assertEqual(failure["metadata"]["errorType"], "GenerationUnavailable")
        self.assertIsNone(self.orchestrator.get_result("s1")["artifact"])

    def test_cancel_during_automated_stage(self):
        entered = threading.Event()
        release = threading.Event()
        registry = build_default_registry()
        personalise = registry.get("personalise_brief")

        def blocking_personalise(ctx):
            entered.set()
            release.wait(5)
            return personalise.run(ctx)

        registry.register(AutomatedHandler("personalise_brief", blocking_personalise))
        self.orchestrator.shutdown(wait=True)
        self.orchestrator = self._build(registry=registry)

        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        self.assertTrue(entered.wait(5))
        self.orchestrator.cancel_run("s1")
        release.set()
        final = handle.wait(timeout=5)

        statuses = _statuses(final)
        self.assertEqual(final["overallStatus"], "cancelled")
        for stage_id in ("orchestrator", "intent-classifier", "worksheet-generator"):
            self.assertEqual(statuses[stage_id], "completed")
        self.assertEqual(statuses["personaliser"], "running")
        for stage_id in ("judge", "feedback", "memory", "scheduler", "notifier", "artifact"):
            self.assertEqual(statuses[stage_id], "pending")
        self.assertEqual(final["currentStageId"], "personaliser")

    def test_progress_after_each_stage(self):
        seen = []

        def recording(inner):
            def wrapper(ctx, *args):
                seen.append(self.orchestrator.get_status(ctx.session_id)["progress"])
                return inner(ctx, *args)
            return wrapper

        registry = build_default_registry()
        for name in registry.names():
            handler = registry.get(name)
            if isinstance(handler, CheckpointHandler):
                handler.prepare = recording(handler.prepare)
            else:
                handler.run = recording(handler.run)
        self.orchestrator.shutdown(wait=True)
        self.orchestrator = self._build(registry=registry)

        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        self.wait_for_checkpoint("s1", "feedback")
        self.orchestrator.resolve_checkpoint("s1", "feedback", "approve")
        self.wait_for_checkpoint("s1", "scheduler")
        self.orchestrator.resolve_checkpoint("s1", "scheduler", "approve", {"date": "2026-03-10"})
        final = handle.wait(timeout=5)

        total = len(STAGE_ORDER)
        self.assertEqual(seen, [k / total for k in range(total - 1)])
        self.assertEqual(final["progress"], 1.0)

    def test_suspended_runs_do_not_block_other_sessions(self):
        sessions = ["a", "b", "c", "d"]
        handles = [
            self.orchestrator.start_run(session_id, WORKSHEET_REQUEST, ["Mathematics"], [3])
            for session_id in sessions
        ]

        # More runs wait at a checkpoint than there are generation workers.
        for session_id in sessions:
            self.wait_for_checkpoint(session_id, "feedback")

        for session_id, handle in zip(sessions, handles):
            self.orchestrator.cancel_run(session_id)
            self.assertEqual(handle.wait(timeout=5)["overallStatus"], "cancelled")

    def test_status_snapshots_are_copies(self):
        handle = self.orchestrator.start_run("s1", WORKSHEET_REQUEST, ["Mathematics"], [3])
        status = self.wait_for_checkpoint("s1", "feedback")

        status["stages"][0]["status"] = "error"
        status["stages"][0]["logEntries"].clear()

        fresh = self.orchestrator.get_status("s1")
        self.assertEqual(fresh["stages"][0]["status"], "completed")
        self.assertGreater(len(fresh["stages"][0]["logEntries"]), 0)

        self.orchestrator.cancel_run("s1")
        handle.wait(timeout=5)


if __name__ == "__main__":
    unittest.main()
