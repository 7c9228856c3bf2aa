"""
Unit tests for the workflow execution orchestrator.

The page-side executor is replaced by a connected QueueChannel; messages the
orchestrator sends are read back from its outbox.
"""

import asyncio
import tempfile
import unittest
from pathlib import Path

from channel import ExecuteWorkflowMessage, QueueChannel, StaticChannelResolver
from persistence import JSONKeyValueStore, RunStateRepository
from row_resolver import ResolvedRows
from workflow_engine import WorkflowOrchestrator
from workflow_errors import WorkflowValidationError
from workflow_library import WorkflowLibrary
from workflow_models import (
    CompleteEvent,
    ConfigurationRunState,
    ErrorEvent,
    InterruptionHandler,
    LearnedRuleEvent,
    NavigationRequest,
    ProgressEvent,
    RunOptions,
    Workflow,
)


class StubRows:
    """Row resolver returning a fixed number of rows."""

    def __init__(self, count=3):
        self.count = count
        self.calls = 0

    async def resolve(self, workflow):
        self.calls += 1
        return ResolvedRows(rows=[{"n": str(i)} for i in range(self.count)])


def make_workflow(workflow_id, name=None, steps=3):
    return Workflow(
        id=workflow_id,
        name=name or workflow_id,
        steps=[{"type": "click", "controlName": f"Button{i}"} for i in range(steps)],
    )


async def drain(channel):
    messages = []
    while channel.pending():
        messages.append(await channel.next_message(timeout=1))
    return messages


class EngineTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "runner.json"
        self.repository = RunStateRepository(JSONKeyValueStore(self.path))
        self.library = WorkflowLibrary(self.repository)
        await self.library.load()
        self.channel = QueueChannel("tab-1", url="https://erp.example.test/", connected=True)
        self.rows = StubRows()
        self.now = 1000.0
        self.orchestrator = self.make_orchestrator(self.repository)
        await self.orchestrator.load()

    async def asyncTearDown(self):
        self.tmp.cleanup()

    def make_orchestrator(self, repository):
        return WorkflowOrchestrator(
            self.library, repository, StaticChannelResolver(self.channel),
            rows=self.rows, settings={"delayBetweenSteps": 0}, clock=lambda: self.now,
        )

    async def start_saved(self, workflow, options=None):
        await self.library.save_workflow(workflow)
        return await self.orchestrator.start(workflow, options)


class TestStart(EngineTestCase):
    """Test launching a run."""

    async def test_dispatches_flattened_workflow(self):
        child = make_workflow("child", steps=2)
        await self.library.save_workflow(child)
        root = Workflow(id="root", name="Root", steps=[
            {"type": "input", "value": "a"},
            {"type": "subworkflow", "subworkflowId": "child"},
        ])
        result = await self.start_saved(root)

        self.assertTrue(result)
        self.assertTrue(self.orchestrator.state.is_running)
        self.assertEqual(self.orchestrator.state.total_steps, 3)
        self.assertEqual(self.orchestrator.state.total_rows, 3)
        [message] = await drain(self.channel)
        self.assertIsInstance(message, ExecuteWorkflowMessage)
        self.assertEqual([s["type"] for s in message.workflow["steps"]], ["input", "click", "click"])
        self.assertEqual(message.workflow["settings"]["delayBetweenSteps"], 0)
        self.assertEqual(message.workflow["dataSources"]["primary"]["fields"], ["n"])
        self.assertEqual(len(message.data), 3)
        self.assertEqual(message.run_context.origin, "manual")

    async def test_payload_is_not_shared(self):
        await self.start_saved(make_workflow("w"))
        [message] = await drain(self.channel)
        message.workflow["steps"].clear()
        self.assertEqual(len(self.orchestrator.state.running_workflow_snapshot["steps"]), 3)

    async def test_single_flight(self):
        await self.start_saved(make_workflow("w"))
        result = await self.orchestrator.start(make_workflow("other"))
        self.assertFalse(result)
        self.assertEqual(result.reason, "busy")
        self.assertEqual(self.channel.pending(), 1)
        self.assertEqual(self.orchestrator.state.current_workflow_id, "w")

    async def test_concurrent_starts(self):
        results = await asyncio.gather(
            self.orchestrator.start(make_workflow("a")),
            self.orchestrator.start(make_workflow("b")),
        )
        self.assertEqual(sorted(r.ok for r in results), [False, True])
        self.assertEqual(self.channel.pending(), 1)

    async def test_validation_failure_leaves_idle(self):
        broken = Workflow(id="broken", steps=[{"type": "subworkflow", "subworkflowId": "ghost"}])
        result = await self.orchestrator.start(broken)
        self.assertEqual(result.reason, "validation")
        self.assertIn("Subworkflow not found", result.message)
        self.assertFalse(self.orchestrator.busy)
        self.assertEqual(self.channel.pending(), 0)
        self.assertTrue(await self.orchestrator.start(make_workflow("w")))

    async def test_empty_workflow_rejected(self):
        result = await self.orchestrator.start(Workflow(id="empty", name="Empty"))
        self.assertEqual(result.reason, "validation")
        self.assertIn("has no steps", result.message)

    async def test_dispatch_failure_leaves_idle(self):
        self.channel.disconnect()
        result = await self.orchestrator.start(make_workflow("w"))
        self.assertEqual(result.reason, "dispatch")
        self.assertIn("Destination not ready", result.message)
        self.assertFalse(self.orchestrator.busy)
        self.channel.connect()
        self.assertTrue(await self.orchestrator.start(make_workflow("w")))

    async def test_blocked_destination(self):
        self.channel.url = "chrome://extensions"
        result = await self.orchestrator.start(make_workflow("w"))
        self.assertEqual(result.reason, "dispatch")

    async def test_manual_start_discards_stale_chain(self):
        self.orchestrator.configuration_run = ConfigurationRunState(run_id="cfg_1")
        await self.orchestrator.start(make_workflow("w"))
        self.assertIsNone(self.orchestrator.configuration_run)

    async def test_state_snapshot(self):
        await self.start_saved(make_workflow("w"))
        snapshot = self.orchestrator.state_snapshot()
        self.assertTrue(snapshot["execution"]["isRunning"])
        self.assertNotIn("currentData", snapshot["execution"])
        self.assertEqual(snapshot["activeRunContext"]["origin"], "manual")
        self.assertTrue(any("Dispatching workflow" in e["message"] for e in snapshot["log"]))


class TestProgress(EngineTestCase):
    """Test progress event handling."""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.start_saved(make_workflow("w"))
        self.state = self.orchestrator.state

    async def test_step_statuses(self):
        self.orchestrator.handle_progress(ProgressEvent(phase="stepStart", step_index=2, step_name="Save"))
        self.assertEqual(self.state.current_step_index, 2)
        self.assertEqual(self.state.step_statuses[2], "running")
        self.orchestrator.handle_progress(ProgressEvent(phase="stepDone", step_index=2))
        self.assertEqual(self.state.step_statuses[2], "success")

    async def test_row_from_processed_rows(self):
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", processed_rows=3, total_to_process=5))
        self.assertEqual((self.state.current_row, self.state.total_rows), (2, 5))

    async def test_total_never_below_current_row(self):
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", row=7, total_rows=3))
        self.assertEqual((self.state.current_row, self.state.total_rows), (7, 8))

    async def test_paused_until_next_step(self):
        self.orchestrator.handle_progress(ProgressEvent(
            phase="pausedForInterruption", kind="dialog", message="Save changes?", step_index=1,
        ))
        self.assertTrue(self.state.is_paused)
        self.assertEqual(self.state.current_step_index, 1)
        self.orchestrator.handle_progress(ProgressEvent(phase="stepStart", step_index=2))
        self.assertFalse(self.state.is_paused)

    async def test_ignored_when_idle(self):
        await self.orchestrator.handle_complete()
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", row=5))
        self.assertEqual(self.orchestrator.state.current_row, 0)


class TestCompletionAndErrors(EngineTestCase):
    """Test complete and error events."""

    async def test_complete(self):
        await self.start_saved(make_workflow("w"))
        self.assertTrue(await self.orchestrator.handle_complete())
        self.assertFalse(self.orchestrator.busy)
        self.assertIsNone(self.orchestrator.active_run_context)
        self.assertFalse(await self.orchestrator.handle_complete())

    async def test_error_records_resume_point(self):
        await self.start_saved(make_workflow("w"))
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", row=2, total_rows=3))
        failure = await self.orchestrator.handle_error(ErrorEvent(
            step_index=1, step={"displayText": "Save"}, message="Record is locked",
        ))
        self.assertEqual((failure.workflow_id, failure.row_index, failure.total_rows), ("w", 2, 3))
        self.assertFalse(self.orchestrator.busy)
        self.assertEqual(self.orchestrator.state.step_statuses[1], "error")
        self.assertEqual(str(self.orchestrator.last_error), "Record is locked")
        self.assertEqual(self.orchestrator.suggested_run_options("w").skip_rows, 2)
        self.assertEqual(await self.repository.get_resume_skips(), {"w": 2})

    async def test_error_ignored_when_idle(self):
        self.assertIsNone(await self.orchestrator.handle_error(ErrorEvent(message="late")))

    async def test_resume_from_failure_next(self):
        self.rows.count = 10
        await self.start_saved(make_workflow("w"), RunOptions(skip_rows=2, limit_rows=6))
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", row=4, total_rows=10))
        await self.orchestrator.handle_error(ErrorEvent(message="boom"))
        await drain(self.channel)

        result = await self.orchestrator.resume_from_failure("next")
        self.assertTrue(result)
        [message] = await drain(self.channel)
        self.assertEqual((message.run_options.skip_rows, message.run_options.limit_rows), (5, 3))
        self.assertEqual(message.run_context.origin, "resume")

        await self.orchestrator.handle_complete()
        self.assertNotIn("w", self.orchestrator.resume_skips)
        self.assertEqual(await self.repository.get_resume_skips(), {})

    async def test_resume_from_failure_at_last_row(self):
        await self.start_saved(make_workflow("w"))
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", row=2, total_rows=3))
        await self.orchestrator.handle_error(ErrorEvent(message="boom"))
        result = await self.orchestrator.resume_from_failure("next")
        self.assertEqual(result.reason, "validation")
        self.assertEqual(result.message, "No more rows to process")

    async def test_resume_from_failure_without_failure(self):
        self.assertEqual((await self.orchestrator.resume_from_failure("retry")).reason, "not_found")

    async def test_learned_rule(self):
        await self.library.save_workflow(make_workflow("w"))
        rule = InterruptionHandler.model_validate({"trigger": {"textTemplate": "Save changes?"}})
        self.assertTrue(await self.orchestrator.handle_learned_rule(LearnedRuleEvent(workflow_id="w", rule=rule)))
        self.assertFalse(await self.orchestrator.handle_learned_rule(LearnedRuleEvent(workflow_id="w", rule=rule)))
        self.assertFalse(await self.orchestrator.handle_learned_rule(LearnedRuleEvent(workflow_id="ghost", rule=rule)))
        self.assertEqual(len(self.library.handler_repository), 1)


class TestControl(EngineTestCase):
    """Test pause, resume and stop."""

    async def test_pause_resume_stop(self):
        await self.start_saved(make_workflow("w"))
        self.assertTrue(await self.orchestrator.pause())
        self.assertFalse(await self.orchestrator.pause())
        self.assertTrue(self.orchestrator.state.is_paused)
        self.assertTrue(await self.orchestrator.resume())
        self.assertFalse(self.orchestrator.state.is_paused)

        with self.assertRaises(WorkflowValidationError):
            await self.orchestrator.stop()
        self.assertTrue(self.orchestrator.busy)

        self.assertTrue(await self.orchestrator.stop(confirmed=True))
        self.assertFalse(self.orchestrator.busy)
        actions = [m.action for m in await drain(self.channel)]
        self.assertEqual(actions, ["executeWorkflow", "pauseWorkflow", "resumeWorkflow", "stopWorkflow"])
        self.assertFalse(await self.orchestrator.handle_complete())

    async def test_control_when_idle(self):
        self.assertFalse(await self.orchestrator.pause())
        self.assertFalse(await self.orchestrator.resume())
        self.assertFalse(await self.orchestrator.stop(confirmed=True))

    async def test_stop_without_destination(self):
        await self.start_saved(make_workflow("w"))
        self.channel.disconnect()
        self.assertTrue(await self.orchestrator.stop(confirmed=True))
        self.assertFalse(self.orchestrator.busy)

    async def test_stop_drops_chain(self):
        for workflow_id in ("a", "b"):
            await self.library.save_workflow(make_workflow(workflow_id))
        await self.orchestrator.start_chain([self.library.get_workflow("a"), self.library.get_workflow("b")])
        await self.orchestrator.stop(confirmed=True)
        self.assertIsNone(self.orchestrator.configuration_run)
        self.assertIsNone(await self.repository.get_configuration_run())


class TestNavigation(EngineTestCase):
    """Test continuing a run after the target page navigates."""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.start_saved(make_workflow("w"))
        self.orchestrator.handle_progress(ProgressEvent(phase="stepStart", step_index=0))
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", row=1, total_rows=3))
        await drain(self.channel)

    async def save(self):
        return await self.orchestrator.save_navigation_state(
            NavigationRequest(target_url="https://erp.example.test/?cmp=usmf&mi=CustTableListPage")
        )

    async def test_save_state(self):
        pending = await self.save()
        self.assertEqual(pending.next_step_index, 1)
        self.assertEqual(pending.current_row_index, 1)
        self.assertEqual(pending.target_menu_item_name, "CustTableListPage")
        self.assertEqual(pending.wait_for_load, 3000)
        stored = await self.repository.get_pending_navigation("tab-1")
        self.assertEqual(stored.workflow_id, "w")

    async def test_nothing_to_save_when_idle(self):
        await self.orchestrator.handle_complete()
        self.assertIsNone(await self.save())

    async def test_resume_sends_remaining_steps(self):
        await self.save()
        result = await self.orchestrator.resume_after_navigation()
        self.assertTrue(result)
        [message] = await drain(self.channel)
        steps = message.workflow["steps"]
        self.assertEqual([s["_absoluteIndex"] for s in steps], [1, 2])
        self.assertTrue(message.workflow["_isResume"])
        self.assertEqual(message.workflow["_originalStartIndex"], 1)
        self.assertEqual(len(message.data), 3)
        self.assertEqual(self.orchestrator.state.current_step_index, 1)
        self.assertEqual(self.orchestrator.state.current_row, 1)
        self.assertIsNone(await self.repository.get_pending_navigation("tab-1"))

    async def test_duplicate_resume_ignored(self):
        pending = await self.save()
        self.assertTrue(await self.orchestrator.resume_after_navigation(pending))
        duplicate = await self.orchestrator.resume_after_navigation(pending)
        self.assertEqual(duplicate.reason, "duplicate")
        self.assertEqual(self.channel.pending(), 1)
        self.now += 6
        self.assertTrue(await self.orchestrator.resume_after_navigation(pending))
        self.assertEqual(self.channel.pending(), 2)

    async def test_resume_handled_restores_state_only(self):
        pending = await self.save()
        pending.resume_handled = True
        self.assertTrue(await self.orchestrator.resume_after_navigation(pending))
        self.assertEqual(self.channel.pending(), 0)
        self.assertTrue(self.orchestrator.state.is_running)

    async def test_nothing_pending(self):
        result = await self.orchestrator.resume_after_navigation()
        self.assertEqual(result.reason, "not_found")

    async def test_failed_resume_can_be_retried(self):
        pending = await self.save()
        self.channel.disconnect()
        failed = await self.orchestrator.resume_after_navigation(pending)
        self.assertEqual(failed.reason, "dispatch")
        self.assertFalse(self.orchestrator.busy)

        self.channel.connect()
        self.assertTrue(await self.orchestrator.resume_after_navigation(pending))
        self.assertEqual(self.channel.pending(), 1)

    async def test_no_steps_left(self):
        pending = await self.save()
        pending.next_step_index = 3
        result = await self.orchestrator.resume_after_navigation(pending)
        self.assertEqual(result.reason, "validation")


class TestConfigurationRuns(EngineTestCase):
    """Test running workflows as a chain."""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.configuration = await self.library.create_configuration("Month end")
        for workflow_id, name in (("w1", "Post journals"), ("w2", "Close period")):
            await self.library.save_workflow(make_workflow(workflow_id, name))
            await self.library.assign_workflow(workflow_id, self.configuration.id)

    async def test_chain_runs_in_order(self):
        result = await self.orchestrator.start_configuration_run(self.configuration.id)
        self.assertTrue(result)
        run = self.orchestrator.configuration_run
        first_key, second_key = [entry.key for entry in run.workflow_queue]
        self.assertTrue(first_key.startswith(f"{run.run_id}_0_"))

        [message] = await drain(self.channel)
        self.assertEqual(message.workflow["id"], "w1")
        self.assertEqual(message.run_context.queue_key, first_key)

        self.assertTrue(await self.orchestrator.handle_complete(
            CompleteEvent(queue_key=first_key, configuration_run_id=run.run_id)
        ))
        [message] = await drain(self.channel)
        self.assertEqual(message.workflow["id"], "w2")

        await self.orchestrator.handle_complete(CompleteEvent(queue_key=second_key))
        self.assertIsNone(self.orchestrator.configuration_run)
        self.assertFalse(self.orchestrator.busy)
        self.assertEqual(self.channel.pending(), 0)

    async def test_stale_completion_ignored(self):
        await self.orchestrator.start_configuration_run(self.configuration.id)
        accepted = await self.orchestrator.handle_complete(CompleteEvent(queue_key="cfg_0_0_old"))
        self.assertFalse(accepted)
        self.assertTrue(self.orchestrator.busy)
        self.assertEqual(self.orchestrator.configuration_run.current_index, 0)

    async def test_error_stops_chain(self):
        await self.orchestrator.start_configuration_run(self.configuration.id)
        await self.orchestrator.handle_error(ErrorEvent(message="boom"))
        self.assertIsNone(self.orchestrator.configuration_run)
        self.assertEqual(self.orchestrator.last_failure.workflow_id, "w1")

    async def test_queue_is_a_snapshot(self):
        await self.orchestrator.start_configuration_run(self.configuration.id)
        await self.library.save_workflow(make_workflow("w2", "Renamed", steps=1))
        await self.orchestrator.handle_complete()
        messages = await drain(self.channel)
        self.assertEqual(len(messages[-1].workflow["steps"]), 3)

    async def test_missing_entry_skipped(self):
        await self.orchestrator.start_configuration_run(self.configuration.id)
        self.orchestrator.configuration_run.workflow_queue[1].workflow = None
        await self.orchestrator.handle_complete()
        self.assertIsNone(self.orchestrator.configuration_run)

    async def test_unknown_and_empty_configuration(self):
        self.assertEqual((await self.orchestrator.start_configuration_run("ghost")).reason, "not_found")
        empty = await self.library.create_configuration("Empty")
        self.assertEqual((await self.orchestrator.start_configuration_run(empty.id)).reason, "validation")

    async def test_busy(self):
        await self.orchestrator.start(make_workflow("solo"))
        result = await self.orchestrator.start_configuration_run(self.configuration.id)
        self.assertEqual(result.reason, "busy")

    async def test_failed_launch_clears_chain(self):
        self.channel.disconnect()
        result = await self.orchestrator.start_configuration_run(self.configuration.id)
        self.assertEqual(result.reason, "dispatch")
        self.assertIsNone(self.orchestrator.configuration_run)


class TestRestart(EngineTestCase):
    """Durable state survives an orchestrator restart."""

    async def reload(self):
        orchestrator = self.make_orchestrator(RunStateRepository(JSONKeyValueStore(self.path)))
        await orchestrator.load()
        return orchestrator

    async def test_failure_restored(self):
        await self.start_saved(make_workflow("w"))
        self.orchestrator.handle_progress(ProgressEvent(phase="rowStart", row=1, total_rows=3))
        await self.orchestrator.handle_error(ErrorEvent(message="boom"))
        restored = await self.reload()
        self.assertEqual(restored.last_failure.row_index, 1)
        self.assertEqual(restored.resume_skips, {"w": 1})
        self.assertEqual(restored.suggested_run_options("w").skip_rows, 1)

    async def test_chain_restored(self):
        configuration = await self.library.create_configuration("Nightly")
        await self.library.save_workflow(make_workflow("w"))
        await self.library.assign_workflow("w", configuration.id)
        await self.orchestrator.start_configuration_run(configuration.id)
        restored = await self.reload()
        self.assertEqual(restored.configuration_run.run_id, self.orchestrator.configuration_run.run_id)
        self.assertEqual(
            restored.active_run_context.queue_key,
            self.orchestrator.configuration_run.workflow_queue[0].key,
        )

    async def test_last_run_options_restored(self):
        await self.start_saved(make_workflow("w"), RunOptions(limit_rows=2))
        restored = await self.reload()
        self.assertEqual(restored.last_run_options["w"].limit_rows, 2)

    async def test_running_workflow_restored(self):
        await self.start_saved(make_workflow("w"))
        await self.orchestrator.record_progress(ProgressEvent(phase="rowStart", row=2, total_rows=3))
        restored = await self.reload()
        self.assertTrue(restored.busy)
        self.assertEqual(restored.state.current_workflow_id, "w")
        self.assertEqual(restored.state.current_row, 2)
        self.assertEqual(restored.state.total_rows, 3)

    async def test_restored_chain_advances(self):
        configuration = await self.library.create_configuration("Nightly")
        for workflow_id in ("w1", "w2"):
            await self.library.save_workflow(make_workflow(workflow_id))
            await self.library.assign_workflow(workflow_id, configuration.id)
        await self.orchestrator.start_configuration_run(configuration.id)
        await drain(self.channel)
        run = self.orchestrator.configuration_run

        restored = await self.reload()
        accepted = await restored.handle_complete(
            CompleteEvent(queue_key=run.workflow_queue[0].key, configuration_run_id=run.run_id)
        )
        self.assertTrue(accepted)
        [message] = await drain(self.channel)
        self.assertEqual(message.workflow["id"], "w2")
        self.assertEqual(restored.configuration_run.current_index, 1)
        self.assertEqual(restored.state.current_workflow_id, "w2")

    async def test_error_after_restart_records_failure(self):
        await self.start_saved(make_workflow("w"))
        await self.orchestrator.record_progress(ProgressEvent(phase="rowStart", row=2, total_rows=3))
        restored = await self.reload()
        failure = await restored.handle_error(ErrorEvent(message="boom"))
        self.assertEqual(failure.workflow_id, "w")
        self.assertEqual(failure.row_index, 2)

        again = await self.reload()
        self.assertFalse(again.busy)
        self.assertEqual(again.resume_skips, {"w": 2})
        self.assertEqual(again.last_failure.row_index, 2)


if __name__ == '__main__':
    unittest.main()
