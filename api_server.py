"""
Workflow Runner API Server

FastAPI server in front of the workflow orchestrator. Callers manage
workflows and configurations and control runs; the page-side executor
connects, polls for messages and reports progress, completion and errors.

Usage:
    python -m uvicorn api_server:app --host 0.0.0.0 --port 8080

Environment variables:
    RUNNER_STATE_FILE     - Durable state file (default: output/runner_state.json)
    RUNNER_SETTINGS_FILE  - Optional YAML file with executor setting overrides
    RUNNER_API_PORT       - Port when run directly (default: 8080)
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import yaml
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import Field

import runner_config
from channel import QueueChannel, StaticChannelResolver
from interruptions import (
    compute_unified_pattern,
    normalize_text,
    pattern_to_regex,
    validate_pattern_against_texts,
)
from persistence import JSONKeyValueStore, RunStateRepository
from workflow_engine import LaunchResult, WorkflowOrchestrator
from workflow_errors import UnknownItemError, WorkflowValidationError
from workflow_expander import WorkflowExpander
from workflow_library import WorkflowLibrary
from workflow_loader import load_settings, parse_workflows, validate_workflow
from workflow_models import (
    CompleteEvent,
    ErrorEvent,
    LearnedRuleEvent,
    NavigationRequest,
    PendingNavigationState,
    ProgressEvent,
    RunOptions,
    SharedDataSource,
    WireModel,
    Workflow,
)
from workflow_params import extract_required_params_from_workflow

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    library: WorkflowLibrary
    orchestrator: WorkflowOrchestrator
    channel: QueueChannel


async def build_runtime(state_file: str, settings_file: Optional[str] = None) -> Runtime:
    repository = RunStateRepository(JSONKeyValueStore(state_file))
    library = WorkflowLibrary(repository)
    await library.load()
    channel = QueueChannel(destination_id="default")
    orchestrator = WorkflowOrchestrator(
        library,
        repository,
        StaticChannelResolver(channel),
        settings=load_settings(settings_file),
    )
    await orchestrator.load()
    return Runtime(library=library, orchestrator=orchestrator, channel=channel)


@asynccontextmanager
async def lifespan(app):
    state_file = os.environ.get("RUNNER_STATE_FILE", str(runner_config.DEFAULT_STATE_FILE))
    settings_file = os.environ.get("RUNNER_SETTINGS_FILE")
    app.state.runtime = await build_runtime(state_file, settings_file)
    logger.info(f"Workflow runner ready (state: {state_file})")
    yield


app = FastAPI(
    title="Workflow Runner API",
    description="HTTP API for running workflows on a page-side executor",
    version="1.0.0",
    lifespan=lifespan,
)


# --- Request models ---


class RunRequest(WireModel):
    workflow_id: str
    run_options: Optional[RunOptions] = None


class StopRequest(WireModel):
    confirmed: bool = False


class ResumeFromFailureRequest(WireModel):
    mode: str = "next"


class ImportRequest(WireModel):
    content: str


class ExpandRequest(WireModel):
    bindings: dict[str, Any] = Field(default_factory=dict)


class ConfigurationRequest(WireModel):
    name: str


class AssignRequest(WireModel):
    workflow_id: str


class OrderRequest(WireModel):
    workflow_ids: list[str]


class ConfigurationRunRequest(WireModel):
    run_options: Optional[RunOptions] = None


class ConnectRequest(WireModel):
    url: str = ""


class TextRequest(WireModel):
    text: str


class UnifyRequest(WireModel):
    texts: list[str]
    match_mode: str = "regex"


class ValidatePatternRequest(WireModel):
    pattern: str
    texts: list[str]
    match_mode: str = "regex"


# --- Helpers ---

_STATUS_BY_REASON = {
    "busy": 409,
    "validation": 422,
    "dispatch": 503,
    "not_found": 404,
    "duplicate": 409,
}


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _launch_response(result: LaunchResult) -> dict:
    if not result:
        raise HTTPException(status_code=_STATUS_BY_REASON.get(result.reason, 400), detail=result.message)
    return {"status": result.reason, "message": result.message}


def _workflow_or_404(runtime: Runtime, workflow_id: str) -> Workflow:
    try:
        return runtime.library.get_workflow(workflow_id)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))


# --- Endpoints ---


@app.get("/health")
async def health(request: Request):
    runtime = _runtime(request)
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "executorConnected": runtime.channel.connected,
    }


# --- Workflows ---


@app.get("/api/workflows")
async def list_workflows(request: Request):
    return [w.to_wire() for w in _runtime(request).library.workflows]


@app.get("/api/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, request: Request):
    return _workflow_or_404(_runtime(request), workflow_id).to_wire()


@app.post("/api/workflows")
async def save_workflow(workflow: Workflow, request: Request):
    saved = await _runtime(request).library.save_workflow(workflow)
    return {"status": "saved", "workflow": saved.to_wire()}


@app.post("/api/workflows/import")
async def import_workflows(req: ImportRequest, request: Request):
    """Import workflows from YAML or JSON text."""
    try:
        workflows = parse_workflows(yaml.safe_load(req.content))
    except yaml.YAMLError as e:
        raise HTTPException(status_code=400, detail=f"Could not parse import: {e}")
    except WorkflowValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    saved = await _runtime(request).library.save_workflows(workflows)
    return {"status": "imported", "ids": [w.id for w in saved]}


@app.delete("/api/workflows/{workflow_id}")
async def delete_workflow(workflow_id: str, request: Request):
    try:
        await _runtime(request).library.delete_workflow(workflow_id)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "deleted", "id": workflow_id}


@app.post("/api/workflows/{workflow_id}/expand")
async def expand_workflow(workflow_id: str, req: ExpandRequest, request: Request):
    """Preview the flattened workflow without running it."""
    runtime = _runtime(request)
    workflow = _workflow_or_404(runtime, workflow_id)
    try:
        result = WorkflowExpander(runtime.library.workflows_by_id()).expand(workflow, req.bindings)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {
        "workflow": result.workflow.to_wire(),
        "warnings": result.warnings,
        "parameters": extract_required_params_from_workflow(workflow),
    }


@app.get("/api/workflows/{workflow_id}/validate")
async def check_workflow(workflow_id: str, request: Request):
    runtime = _runtime(request)
    workflow = _workflow_or_404(runtime, workflow_id)
    try:
        warnings = validate_workflow(workflow, runtime.library.workflows)
    except WorkflowValidationError as e:
        return {"valid": False, "error": str(e), "warnings": []}
    return {"valid": True, "error": None, "warnings": warnings}


@app.get("/api/workflows/{workflow_id}/run-options")
async def suggested_run_options(workflow_id: str, request: Request):
    runtime = _runtime(request)
    _workflow_or_404(runtime, workflow_id)
    return runtime.orchestrator.suggested_run_options(workflow_id).to_wire()


# --- Run control ---


@app.post("/api/run")
async def start_run(req: RunRequest, request: Request):
    runtime = _runtime(request)
    workflow = _workflow_or_404(runtime, req.workflow_id)
    return _launch_response(await runtime.orchestrator.start(workflow, req.run_options))


@app.post("/api/run/pause")
async def pause_run(request: Request):
    return {"changed": await _runtime(request).orchestrator.pause()}


@app.post("/api/run/resume")
async def resume_run(request: Request):
    return {"changed": await _runtime(request).orchestrator.resume()}


@app.post("/api/run/stop")
async def stop_run(req: StopRequest, request: Request):
    try:
        stopped = await _runtime(request).orchestrator.stop(confirmed=req.confirmed)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"changed": stopped}


@app.post("/api/run/resume-from-failure")
async def resume_from_failure(req: ResumeFromFailureRequest, request: Request):
    return _launch_response(await _runtime(request).orchestrator.resume_from_failure(req.mode))


@app.get("/api/run/state")
async def run_state(request: Request):
    return _runtime(request).orchestrator.state_snapshot()


# --- Configurations ---


@app.get("/api/configurations")
async def list_configurations(request: Request):
    return [c.to_wire() for c in _runtime(request).library.configurations]


@app.post("/api/configurations")
async def create_configuration(req: ConfigurationRequest, request: Request):
    try:
        configuration = await _runtime(request).library.create_configuration(req.name)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "created", "configuration": configuration.to_wire()}


@app.patch("/api/configurations/{configuration_id}")
async def rename_configuration(configuration_id: str, req: ConfigurationRequest, request: Request):
    try:
        configuration = await _runtime(request).library.rename_configuration(configuration_id, req.name)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "renamed", "configuration": configuration.to_wire()}


@app.delete("/api/configurations/{configuration_id}")
async def delete_configuration(configuration_id: str, request: Request):
    try:
        await _runtime(request).library.delete_configuration(configuration_id)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "deleted", "id": configuration_id}


@app.get("/api/configurations/{configuration_id}/workflows")
async def configuration_workflows(configuration_id: str, request: Request):
    try:
        workflows = _runtime(request).library.workflows_for_configuration(configuration_id)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [{"id": w.id, "name": w.name} for w in workflows]


@app.post("/api/configurations/{configuration_id}/workflows")
async def assign_workflow(configuration_id: str, req: AssignRequest, request: Request):
    try:
        await _runtime(request).library.assign_workflow(req.workflow_id, configuration_id)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "assigned"}


@app.delete("/api/configurations/{configuration_id}/workflows/{workflow_id}")
async def unassign_workflow(configuration_id: str, workflow_id: str, request: Request):
    try:
        await _runtime(request).library.unassign_workflow(workflow_id, configuration_id)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "unassigned"}


@app.put("/api/configurations/{configuration_id}/order")
async def reorder_configuration(configuration_id: str, req: OrderRequest, request: Request):
    try:
        configuration = await _runtime(request).library.reorder_configuration(configuration_id, req.workflow_ids)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return configuration.to_wire()


@app.post("/api/configurations/{configuration_id}/run")
async def run_configuration(configuration_id: str, req: ConfigurationRunRequest, request: Request):
    result = await _runtime(request).orchestrator.start_configuration_run(configuration_id, req.run_options)
    return _launch_response(result)


# --- Shared data sources ---


@app.get("/api/data-sources")
async def list_data_sources(request: Request):
    return [s.to_wire() for s in _runtime(request).library.shared_data_sources]


@app.post("/api/data-sources")
async def save_data_source(source: SharedDataSource, request: Request):
    saved = await _runtime(request).library.save_shared_data_source(source)
    return {"status": "saved", "id": saved.id}


@app.delete("/api/data-sources/{source_id}")
async def delete_data_source(source_id: str, request: Request):
    try:
        await _runtime(request).library.delete_shared_data_source(source_id)
    except UnknownItemError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "deleted", "id": source_id}


# --- Executor ---


@app.post("/api/executor/connect")
async def executor_connect(req: ConnectRequest, request: Request):
    runtime = _runtime(request)
    runtime.channel.connect(req.url)
    return {"status": "connected", "destinationId": runtime.channel.destination_id}


@app.post("/api/executor/disconnect")
async def executor_disconnect(request: Request):
    _runtime(request).channel.disconnect()
    return {"status": "disconnected"}


@app.get("/api/executor/next")
async def executor_next_message(request: Request, timeout: float = 0.0):
    """Next queued message for the executor, or 204 when there is none."""
    message = await _runtime(request).channel.next_message(timeout=max(timeout, 0.001))
    if message is None:
        return Response(status_code=204)
    return message.to_wire()


@app.post("/api/executor/progress")
async def executor_progress(event: ProgressEvent, request: Request):
    await _runtime(request).orchestrator.record_progress(event)
    return {"status": "ok"}


@app.post("/api/executor/complete")
async def executor_complete(event: CompleteEvent, request: Request):
    return {"accepted": await _runtime(request).orchestrator.handle_complete(event)}


@app.post("/api/executor/error")
async def executor_error(event: ErrorEvent, request: Request):
    runtime = _runtime(request)
    failure = await runtime.orchestrator.handle_error(event)
    if failure is None:
        return {"accepted": False, "resume": None}
    row_number = failure.row_index + 1
    return {
        "accepted": True,
        "resume": {
            **failure.to_wire(),
            "message": f"The workflow stopped at row {row_number}"
                       + (f" of {failure.total_rows}." if failure.total_rows else "."),
            "canResumeNext": not (failure.total_rows and row_number >= failure.total_rows),
        },
    }


@app.post("/api/executor/navigation")
async def executor_navigation(req: NavigationRequest, request: Request):
    pending = await _runtime(request).orchestrator.save_navigation_state(req)
    return {"saved": pending is not None, "pending": pending.to_wire() if pending else None}


@app.post("/api/executor/resume-after-navigation")
async def executor_resume_after_navigation(request: Request,
                                           pending: Optional[PendingNavigationState] = None):
    result = await _runtime(request).orchestrator.resume_after_navigation(pending)
    return _launch_response(result)


@app.post("/api/executor/learned-rule")
async def executor_learned_rule(event: LearnedRuleEvent, request: Request):
    return {"added": await _runtime(request).orchestrator.handle_learned_rule(event)}


# --- Interruptions ---


@app.get("/api/interruptions/repository")
async def interruption_repository(request: Request):
    return [h.to_wire() for h in _runtime(request).library.handler_repository]


@app.post("/api/interruptions/normalize")
async def normalize_interruption_text(req: TextRequest):
    return {"text": req.text, "normalized": normalize_text(req.text)}


@app.post("/api/interruptions/unify")
async def unify_interruption_texts(req: UnifyRequest):
    pattern = compute_unified_pattern(req.texts)
    validation = validate_pattern_against_texts(pattern, req.texts, req.match_mode)
    return {
        "pattern": pattern,
        "regex": pattern_to_regex(pattern),
        "validation": validation.to_wire(),
    }


@app.post("/api/interruptions/validate")
async def validate_interruption_pattern(req: ValidatePatternRequest):
    return validate_pattern_against_texts(req.pattern, req.texts, req.match_mode).to_wire()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    port = int(os.environ.get("RUNNER_API_PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)
