"""
Workflow Execution Orchestrator: drives runs on the page-side executor.

The orchestrator owns all run state: it flattens a workflow, resolves its
rows, dispatches it, and then follows the executor's progress, complete and
error events. It also chains workflows into configuration runs, resumes runs
after the target page navigates, and resumes failed runs at the failed row.

States: Idle -> Launching -> Running <-> Paused -> Completed/Failed/Stopped -> Idle
"""

from __future__ import annotations

import copy
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

import runner_config
from channel import ChannelResolver, ControlMessage, ExecuteWorkflowMessage, ExecutionChannel
from persistence import RunStateRepository
from row_resolver import ResolvedRows, RowResolver, SharedSourceRowResolver, resume_run_options
from workflow_errors import (
    DispatchError,
    OutOfOrderCompletion,
    StepExecutionError,
    UnknownItemError,
    WorkflowValidationError,
)
from workflow_expander import WorkflowExpander
from workflow_library import WorkflowLibrary
from workflow_models import (
    CompleteEvent,
    ConfigurationRunState,
    ErrorEvent,
    ExecutionState,
    FailureInfo,
    LearnedRuleEvent,
    NavigationRequest,
    PendingNavigationState,
    ProgressEvent,
    QueueEntry,
    RunContext,
    RunOptions,
    Workflow,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class LaunchResult:
    """Outcome of a request to start or resume a run."""
    ok: bool
    message: str = ""
    reason: str = "ok"  # ok, busy, validation, dispatch, not_found, duplicate, completed

    def __bool__(self) -> bool:
        return self.ok


class WorkflowOrchestrator:
    """Single owner of execution state for one executor destination."""

    def __init__(
        self,
        library: WorkflowLibrary,
        repository: RunStateRepository,
        channels: ChannelResolver,
        rows: Optional[RowResolver] = None,
        settings: Optional[dict[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.library = library
        self.repository = repository
        self.channels = channels
        self.rows = rows or SharedSourceRowResolver(library.load_shared_data_sources)
        self.settings = dict(runner_config.DEFAULT_SETTINGS if settings is None else settings)
        self.clock = clock

        self.state = ExecutionState()
        self.configuration_run: Optional[ConfigurationRunState] = None
        self.active_run_context: Optional[RunContext] = None
        self.resume_skips: dict[str, int] = {}
        self.last_failure: Optional[FailureInfo] = None
        self.last_error: Optional[StepExecutionError] = None
        self.last_run_options: dict[str, RunOptions] = {}
        self.run_log: deque[dict[str, str]] = deque(maxlen=runner_config.MAX_RUN_LOG_ENTRIES)

        self._channel: Optional[ExecutionChannel] = None
        self._last_resume: Optional[tuple[tuple[str, int], float]] = None

    # --- Startup ---

    async def load(self) -> None:
        """Reload the durable part of the run state."""
        self.resume_skips = await self.repository.get_resume_skips()
        self.last_failure = await self.repository.get_last_failure()
        self.last_run_options = await self.repository.get_last_run_options()
        self.configuration_run = await self.repository.get_configuration_run()
        self.active_run_context = await self.repository.get_active_run_context()
        restored = await self.repository.get_execution_state()
        if restored is not None and restored.is_running:
            restored.is_launching = False
            self.state = restored
            logger.info(
                f"Restored running workflow {restored.current_workflow_id} at row "
                f"{restored.current_row + 1} of {restored.total_rows}"
            )
        if self.configuration_run:
            logger.info(
                f"Restored configuration run {self.configuration_run.run_id} at "
                f"{self.configuration_run.current_index}/{len(self.configuration_run.workflow_queue)}"
            )

    # --- Run log ---

    def _log(self, level: str, message: str) -> None:
        logger.log(_LOG_LEVELS.get(level, logging.INFO), message)
        self.run_log.append({
            "level": level,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @property
    def busy(self) -> bool:
        return self.state.is_running or self.state.is_launching

    def _clear_run_flags(self) -> None:
        self.state.is_running = False
        self.state.is_launching = False
        self.state.is_paused = False
        self.state.current_workflow_id = None
        self.state.running_workflow_snapshot = None

    async def _persist_run_links(self) -> None:
        await self.repository.set_configuration_run(self.configuration_run)
        await self.repository.set_active_run_context(self.active_run_context)
        await self.repository.set_execution_state(self.state if self.state.is_running else None)

    # --- Launch ---

    async def start(self, workflow: Workflow, run_options: Optional[RunOptions] = None,
                    context: Optional[RunContext] = None) -> LaunchResult:
        """
        Flatten, resolve and dispatch a workflow.

        Rejected without side effects while another run is running or
        launching. Any failure before dispatch leaves the orchestrator idle.
        """
        if self.busy:
            self._log("warning", "A workflow run is already in progress")
            return LaunchResult(False, "A workflow run is already in progress", "busy")
        self.state.is_launching = True

        options = run_options or RunOptions()
        context = context or RunContext()
        if context.origin != "configuration" and self.configuration_run is not None:
            self._log("info", "Discarding configuration run state left over from an earlier run")
            self.configuration_run = None
        self.active_run_context = context

        try:
            return await self._launch(workflow, options, context)
        except WorkflowValidationError as e:
            return await self._launch_failed(str(e) or "Failed to expand workflow", "validation")
        except DispatchError as e:
            return await self._launch_failed(str(e), "dispatch")
        except Exception:
            self._clear_run_flags()
            self.active_run_context = None
            raise

    async def _launch(self, workflow: Workflow, options: RunOptions,
                      context: RunContext) -> LaunchResult:
        expansion = WorkflowExpander(self.library.workflows_by_id()).expand(workflow)
        flat = expansion.workflow
        if not flat.steps:
            raise WorkflowValidationError(f'Workflow "{flat.label}" has no steps')
        resolved = await self.rows.resolve(flat)
        rows = resolved.rows or [{}]
        channel = await self.channels.resolve()

        self.state = ExecutionState(
            is_running=True,
            current_workflow_id=flat.id,
            total_steps=len(flat.steps),
            total_rows=len(rows),
            run_options=options,
            current_data=rows,
        )
        self.last_run_options[flat.id] = options.model_copy()

        if options.dry_run:
            self._log("warning", "DRY RUN MODE - No actual changes will be made")
        self._log("info", f"Dispatching workflow: {flat.label}")
        if options.skip_rows > 0:
            self._log("info", f"Skipping first {options.skip_rows} rows")
        if options.limit_rows > 0:
            self._log("info", f"Limiting to {options.limit_rows} rows")
        for warning in expansion.warnings:
            self._log("warning", warning)

        payload = self._build_payload(flat, options, resolved)
        self.state.running_workflow_snapshot = copy.deepcopy(payload)
        await channel.send(ExecuteWorkflowMessage(
            workflow=payload, data=rows, run_options=options, run_context=context,
        ))
        self._channel = channel

        await self.repository.set_last_run_options(flat.id, options)
        await self._persist_run_links()
        return LaunchResult(True, f"Running workflow: {flat.label}")

    async def _launch_failed(self, message: str, reason: str) -> LaunchResult:
        self._clear_run_flags()
        self.active_run_context = None
        self._log("error", f"Failed to start workflow: {message}")
        await self._persist_run_links()
        return LaunchResult(False, message, reason)

    def _build_payload(self, flat: Workflow, options: RunOptions,
                       resolved: ResolvedRows) -> dict[str, Any]:
        """Everything the executor needs, serialized. Nothing is shared by reference."""
        rows = resolved.rows or [{}]
        payload = flat.to_wire()
        payload["settings"] = {**payload.get("settings", {}), **self.settings}
        payload["runOptions"] = options.to_wire()
        payload["dataSources"] = {
            "primary": {
                "type": "computed",
                "data": copy.deepcopy(rows),
                "fields": resolved.fields,
            },
            "details": [
                {
                    "id": s.id,
                    "name": s.label,
                    "data": copy.deepcopy(s.data),
                    "fields": s.fields or (list(s.data[0]) if s.data else []),
                }
                for s in resolved.sources
            ],
        }
        return payload

    # --- Events from the executor ---

    def handle_progress(self, event: ProgressEvent) -> None:
        if not self.state.is_running:
            logger.debug(f"Ignoring {event.phase} progress: no workflow is running")
            return
        state = self.state

        if event.phase == "stepStart":
            state.is_paused = False
            if event.step_index is not None:
                state.step_statuses[event.step_index] = "running"
                state.current_step_index = event.step_index
            self._log("info", f"Starting step {state.current_step_index + 1}: {event.step_name or 'Step'}")
        elif event.phase == "stepDone":
            if event.step_index is not None:
                state.step_statuses[event.step_index] = "success"
                self._log("success", f"Completed step {event.step_index + 1}")
        elif event.phase in ("pausedForConfirmation", "pausedForInterruption"):
            state.is_paused = True
            if event.step_index is not None:
                state.current_step_index = event.step_index
            if event.phase == "pausedForConfirmation":
                self._log(
                    "warning",
                    f"Learning mode paused before step {state.current_step_index + 1}. Resume to continue.",
                )
            else:
                self._log(
                    "warning",
                    f"Interruption detected ({event.kind or 'event'}): "
                    f"{event.message or 'Review the page and resume when done.'}",
                )
        elif event.phase == "rowStart":
            if event.row is not None:
                row = event.row
            elif event.processed_rows is not None:
                row = event.processed_rows - 1
            else:
                row = 0
            if event.total_rows is not None:
                total = event.total_rows
            else:
                total = event.total_to_process or 0
            state.current_row = max(0, row)
            state.total_rows = max(total, state.current_row + 1)
            selection = ""
            if event.total_to_process and event.total_to_process < state.total_rows:
                selection = f" (processing {event.processed_rows} of {event.total_to_process} selected rows)"
            self._log("info", f"Processing row {state.current_row + 1} of {state.total_rows}{selection}")
        elif event.phase == "loopIteration":
            self._log("info", f"Loop iteration {event.iteration} of {event.total}")

    async def record_progress(self, event: ProgressEvent) -> None:
        """Apply a progress event and persist the new row, so a restart resumes at it."""
        self.handle_progress(event)
        if event.phase == "rowStart" and self.state.is_running:
            await self.repository.set_execution_state(self.state)

    async def handle_complete(self, event: Optional[CompleteEvent] = None) -> bool:
        """
        Finish the current run and advance the configuration chain if the
        completion belongs to the chain's expected entry.

        Returns False when the completion was ignored.
        """
        if not self.state.is_running:
            self._log("warning", "Ignoring completion: no workflow is running")
            return False
        context = self.active_run_context
        if event is not None and context is not None:
            if (event.queue_key and event.queue_key != context.queue_key) or (
                event.configuration_run_id and event.configuration_run_id != context.configuration_run_id
            ):
                stale = OutOfOrderCompletion(context.queue_key, event.queue_key)
                self._log("warning", f"Ignoring stale workflow completion: {stale}")
                return False

        workflow_id = self.state.current_workflow_id
        self._clear_run_flags()
        self.active_run_context = None
        self._log("success", "Workflow completed successfully")

        advance = False
        run = self.configuration_run
        if run is not None and context is not None and context.origin == "configuration":
            expected = run.expected_entry()
            if (
                expected is not None
                and context.configuration_run_id == run.run_id
                and context.queue_key == expected.key
            ):
                run.current_index += 1
                advance = True
            else:
                stale = OutOfOrderCompletion(expected.key if expected else None, context.queue_key)
                logger.debug(str(stale))
                self._log("warning", "Ignoring out-of-order workflow completion during configuration run")
        elif run is not None:
            self.configuration_run = None

        if workflow_id and workflow_id in self.resume_skips:
            del self.resume_skips[workflow_id]
            await self.repository.clear_resume_skip(workflow_id)
        await self._persist_run_links()

        if advance:
            await self.run_next_in_configuration()
        return True

    async def handle_error(self, event: ErrorEvent) -> Optional[FailureInfo]:
        """
        Record a failed step.

        The failed row becomes the resume point of the workflow. Returns the
        failure context a resume prompt needs, or None if nothing was running.
        """
        if not self.state.is_running:
            self._log("warning", "Ignoring error event: no workflow is running")
            return None
        state = self.state
        workflow_id = state.current_workflow_id
        if event.step_index is not None:
            state.step_statuses[event.step_index] = "error"

        step = event.step or {}
        step_label = step.get("displayText") or step.get("controlName")
        message = event.message or event.error or "Workflow error"
        row_index, total_rows = state.current_row, state.total_rows

        self._clear_run_flags()
        self._log("error", f"Error: {f'Step {step_label!r}: ' if step_label else ''}{message}")

        if self.configuration_run is not None:
            failed = self.library.find_workflow(workflow_id) if workflow_id else None
            name = failed.label if failed else (workflow_id or "unknown workflow")
            self._log("error", f'Configuration run stopped because "{name}" failed')
            self.configuration_run = None
        self.active_run_context = None

        failure = None
        if workflow_id:
            self.resume_skips[workflow_id] = max(0, row_index)
            await self.repository.set_resume_skip(workflow_id, row_index)
            failure = FailureInfo(workflow_id=workflow_id, row_index=row_index, total_rows=total_rows)
            self.last_failure = failure
            self.last_error = StepExecutionError(
                message, workflow_id=workflow_id, step_index=event.step_index, row_index=row_index,
            )
            await self.repository.set_last_failure(failure)
        await self._persist_run_links()
        return failure

    async def handle_learned_rule(self, event: LearnedRuleEvent) -> bool:
        if self.library.find_workflow(event.workflow_id) is None:
            self._log("warning", f"Received learned rule for unknown workflow: {event.workflow_id}")
            return False
        added = await self.library.add_learned_handler(event.workflow_id, event.rule)
        if added:
            workflow = self.library.get_workflow(event.workflow_id)
            self._log("success", f'Learned interruption handler saved for "{workflow.label}"')
        else:
            self._log("info", "Learned handler already exists, skipping duplicate")
        return added

    # --- Control ---

    async def _control_channel(self) -> ExecutionChannel:
        return self._channel or await self.channels.resolve()

    async def pause(self) -> bool:
        if not self.state.is_running or self.state.is_paused:
            return False
        try:
            channel = await self._control_channel()
            await channel.send(ControlMessage(action="pauseWorkflow"))
        except DispatchError as e:
            self._log("error", f"Could not pause workflow: {e}")
            return False
        self.state.is_paused = True
        self._log("warning", "Workflow paused")
        return True

    async def resume(self) -> bool:
        if not self.state.is_running or not self.state.is_paused:
            return False
        try:
            channel = await self._control_channel()
            await channel.send(ControlMessage(action="resumeWorkflow"))
        except DispatchError as e:
            self._log("error", f"Could not resume workflow: {e}")
            return False
        self.state.is_paused = False
        self._log("info", "Workflow resumed")
        return True

    async def stop(self, confirmed: bool = False) -> bool:
        """
        Stop the running workflow and drop any configuration chain.

        Local state is cleared even when the stop message cannot be
        delivered; later events of the stopped run are ignored.

        Raises:
            WorkflowValidationError: if not confirmed
        """
        if not self.busy:
            return False
        if not confirmed:
            raise WorkflowValidationError("Stopping the running workflow must be confirmed")
        try:
            channel = await self._control_channel()
            await channel.send(ControlMessage(action="stopWorkflow"))
        except DispatchError as e:
            self._log("warning", f"Stop message not delivered: {e}")

        self._clear_run_flags()
        self.state.step_statuses = {}
        self.configuration_run = None
        self.active_run_context = None
        await self._persist_run_links()
        self._log("error", "Workflow stopped by user")
        return True

    # --- Navigation ---

    def _destination_id(self, destination_id: Optional[str]) -> str:
        if destination_id:
            return destination_id
        return self._channel.destination_id if self._channel else "default"

    async def save_navigation_state(self, request: NavigationRequest,
                                    destination_id: Optional[str] = None) -> Optional[PendingNavigationState]:
        """Persist what is needed to continue the run once the new page has loaded."""
        snapshot = self.state.running_workflow_snapshot
        if not self.state.is_running or not snapshot:
            logger.debug("No running workflow to save for navigation")
            return None

        workflow = Workflow.model_validate(snapshot)
        query = parse_qs(urlparse(request.target_url or "").query)
        menu_item = (query.get(runner_config.MENU_ITEM_QUERY_PARAM) or [""])[0]

        pending = PendingNavigationState(
            workflow=workflow,
            workflow_id=workflow.id or self.state.current_workflow_id or "",
            next_step_index=self.state.current_step_index + 1,
            current_row_index=self.state.current_row,
            total_rows=self.state.total_rows,
            data=copy.deepcopy(self.state.current_data) or None,
            target_menu_item_name=menu_item,
            wait_for_load=request.wait_for_load or runner_config.DEFAULT_WAIT_FOR_LOAD_MS,
            saved_at=time.time(),
        )
        saved = await self.repository.save_pending_navigation(self._destination_id(destination_id), pending)
        if not saved:
            return None
        self._log("info", "Navigation in progress, workflow will resume after page load...")
        return pending

    async def resume_after_navigation(self, pending: Optional[PendingNavigationState] = None,
                                      destination_id: Optional[str] = None) -> LaunchResult:
        """
        Rebuild execution state from pending navigation state and dispatch
        the remaining steps, each tagged with its absolute index.

        A second call for the same workflow and step within
        RESUME_DEDUP_WINDOW seconds is ignored.
        """
        dest = self._destination_id(destination_id)
        if pending is None:
            pending = await self.repository.get_pending_navigation(dest)
        if pending is None:
            return LaunchResult(False, "No pending workflow to resume", "not_found")

        workflow = pending.workflow
        next_index = pending.next_step_index
        key = (workflow.id or "unknown", next_index)
        now = self.clock()
        if self._last_resume and self._last_resume[0] == key \
                and now - self._last_resume[1] < runner_config.RESUME_DEDUP_WINDOW:
            logger.info(f"Ignoring duplicate resume request for {key}")
            return LaunchResult(False, "Duplicate resume request ignored", "duplicate")
        self._last_resume = (key, now)

        await self.repository.clear_pending_navigation(dest)
        if next_index >= len(workflow.steps):
            self._last_resume = None
            self._log("warning", f"No steps left to resume in {workflow.label}")
            return LaunchResult(False, "No remaining steps to resume", "validation")
        self._log("info", f"Resuming workflow after navigation (step {next_index + 1})")

        try:
            if pending.data:
                rows = pending.data
            else:
                rows = (await self.rows.resolve(workflow)).rows
            channel = await self.channels.resolve()
        except (WorkflowValidationError, DispatchError) as e:
            self._last_resume = None
            self._log("error", f"Failed to resume workflow: {e}")
            return LaunchResult(False, str(e), "dispatch" if isinstance(e, DispatchError) else "validation")
        rows = rows or [{}]

        previous = self.state
        self.state = ExecutionState(
            is_running=True,
            current_workflow_id=workflow.id,
            current_step_index=next_index,
            total_steps=len(workflow.steps),
            current_row=pending.current_row_index,
            total_rows=max(pending.total_rows or len(rows), pending.current_row_index + 1),
            run_options=previous.run_options,
            running_workflow_snapshot=workflow.to_wire(),
            current_data=rows,
            step_statuses=previous.step_statuses if previous.current_workflow_id == workflow.id else {},
        )
        self._channel = channel
        if self.active_run_context is None:
            self.active_run_context = RunContext(origin="resume")

        if pending.resume_handled:
            await self._persist_run_links()
            return LaunchResult(True, "Execution state restored")

        remaining = [
            {**step.payload(), "_absoluteIndex": next_index + offset}
            for offset, step in enumerate(workflow.steps[next_index:])
        ]
        continue_payload = {
            **workflow.to_wire(),
            "steps": remaining,
            "_isResume": True,
            "_originalStartIndex": next_index,
        }
        try:
            await channel.send(ExecuteWorkflowMessage(
                workflow=continue_payload,
                data=rows,
                run_options=previous.run_options or RunOptions(),
                run_context=self.active_run_context,
            ))
        except DispatchError as e:
            self._last_resume = None
            self._log("error", f"Failed to resume workflow: {e}")
            self._clear_run_flags()
            await self._persist_run_links()
            return LaunchResult(False, str(e), "dispatch")
        await self._persist_run_links()
        return LaunchResult(True, f"Resumed {workflow.label} at step {next_index + 1}")

    # --- Failure resume ---

    async def resume_from_failure(self, mode: str) -> LaunchResult:
        """Re-run the last failed workflow at (``retry``) or after (``next``) the failed row."""
        failure = self.last_failure
        if failure is None or not failure.workflow_id:
            return LaunchResult(False, "No failed run to resume", "not_found")
        workflow = self.library.find_workflow(failure.workflow_id)
        if workflow is None:
            return LaunchResult(False, "Workflow not found for resume", "not_found")
        if self.busy:
            return LaunchResult(False, "A workflow run is already in progress", "busy")

        try:
            flat = WorkflowExpander(self.library.workflows_by_id()).expand(workflow).workflow
            total_rows = len((await self.rows.resolve(flat)).rows or [{}])
            base = self.last_run_options.get(failure.workflow_id) or self.state.run_options
            options = resume_run_options(failure, base, total_rows, mode)
        except WorkflowValidationError as e:
            self._log("warning", str(e))
            return LaunchResult(False, str(e), "validation")

        self.resume_skips[failure.workflow_id] = options.skip_rows
        await self.repository.set_resume_skip(failure.workflow_id, options.skip_rows)
        return await self.start(workflow, options, RunContext(origin="resume"))

    def suggested_run_options(self, workflow_id: str) -> RunOptions:
        """Run options that skip the rows a failed earlier run already processed."""
        return RunOptions(skip_rows=self.resume_skips.get(workflow_id, 0))

    # --- Configuration runs ---

    async def start_configuration_run(self, configuration_id: str,
                                      run_options: Optional[RunOptions] = None) -> LaunchResult:
        if self.busy:
            self._log("warning", "Another run is already in progress")
            return LaunchResult(False, "Another run is already in progress", "busy")
        try:
            configuration = self.library.get_configuration(configuration_id)
        except UnknownItemError as e:
            return LaunchResult(False, str(e), "not_found")
        workflows = self.library.workflows_for_configuration(configuration_id)
        if not workflows:
            return LaunchResult(False, f'No workflows linked to "{configuration.name}"', "validation")
        return await self.start_chain(
            workflows, run_options,
            configuration_id=configuration.id, name=configuration.name,
        )

    async def start_chain(self, workflows: list[Workflow], run_options: Optional[RunOptions] = None,
                          configuration_id: Optional[str] = None, name: str = "") -> LaunchResult:
        """
        Run workflows one after another as a single configuration run.

        Each workflow is copied at enqueue time, so later edits do not affect
        the run.
        """
        if self.busy:
            self._log("warning", "Another run is already in progress")
            return LaunchResult(False, "Another run is already in progress", "busy")
        if not workflows:
            return LaunchResult(False, "No workflows to run", "validation")

        run_id = f"cfg_{int(time.time() * 1000)}"
        self.configuration_run = ConfigurationRunState(
            run_id=run_id,
            configuration_id=configuration_id,
            configuration_name=name or run_id,
            workflow_queue=[
                QueueEntry(key=f"{run_id}_{index}_{w.id or 'workflow'}", workflow=w.model_copy(deep=True))
                for index, w in enumerate(workflows)
            ],
            run_options=run_options or RunOptions(),
        )
        self._log("info", f"Starting configuration run: {self.configuration_run.configuration_name} "
                          f"({len(workflows)} workflows)")
        await self.repository.set_configuration_run(self.configuration_run)
        return await self.run_next_in_configuration()

    async def run_next_in_configuration(self) -> LaunchResult:
        run = self.configuration_run
        if run is None:
            return LaunchResult(False, "No configuration run in progress", "not_found")
        if self.busy:
            return LaunchResult(False, "A workflow run is already in progress", "busy")

        while run.current_index < len(run.workflow_queue) and run.workflow_queue[run.current_index].workflow is None:
            self._log("warning", f"Skipping missing workflow at position {run.current_index + 1}")
            run.current_index += 1

        if run.current_index >= len(run.workflow_queue):
            self._log("success", f"Configuration run completed: {run.configuration_name}")
            self.configuration_run = None
            await self.repository.set_configuration_run(None)
            return LaunchResult(True, f'Configuration "{run.configuration_name}" completed', "completed")

        entry = run.workflow_queue[run.current_index]
        await self.repository.set_configuration_run(run)
        self._log(
            "info",
            f"Running configuration workflow {run.current_index + 1}/{len(run.workflow_queue)}: "
            f"{entry.workflow.label}",
        )
        result = await self.start(entry.workflow, run.run_options, RunContext(
            origin="configuration", configuration_run_id=run.run_id, queue_key=entry.key,
        ))
        if not result and result.reason != "busy":
            self._log("error", f"Configuration run stopped at workflow: {entry.workflow.label}")
            self.configuration_run = None
            await self.repository.set_configuration_run(None)
        return result

    # --- Reporting ---

    def state_snapshot(self) -> dict[str, Any]:
        return {
            "execution": self.state.model_dump(by_alias=True, mode="json", exclude={"current_data"}),
            "configurationRun": self.configuration_run.to_wire() if self.configuration_run else None,
            "activeRunContext": self.active_run_context.to_wire() if self.active_run_context else None,
            "lastFailure": self.last_failure.to_wire() if self.last_failure else None,
            "lastError": str(self.last_error) if self.last_error else None,
            "resumeSkipByWorkflow": dict(self.resume_skips),
            "log": list(self.run_log),
        }
