"""
Workflow data models.

Defines the JSON structure for saved workflows, parameter bindings,
interruption handlers, run options and the run-time state exchanged with
the page-side executor. Wire names are camelCase; Python attributes are
snake_case.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator
from pydantic.alias_generators import to_camel

import runner_config

SUBWORKFLOW_STEP = "subworkflow"
LOOP_STEP_TYPES = ("loop-start", "loop-end")


def new_id() -> str:
    return str(uuid.uuid4())[:8]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump with camelCase keys, JSON-safe values."""
        return self.model_dump(by_alias=True, mode="json")


# --- Parameter bindings ---


class StaticBinding(WireModel):
    value_source: Literal["static"] = "static"
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


class DataBinding(WireModel):
    value_source: Literal["data"] = "data"
    field_mapping: str = ""


class ClipboardBinding(WireModel):
    value_source: Literal["clipboard"] = "clipboard"


Binding = Annotated[
    Union[StaticBinding, DataBinding, ClipboardBinding],
    Field(discriminator="value_source"),
]


# --- Steps ---


class WorkflowStep(WireModel):
    """A single step. Everything except ``type`` is an opaque payload."""
    model_config = ConfigDict(extra="allow")

    type: str

    def payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SubworkflowStep(WorkflowStep):
    type: Literal["subworkflow"] = SUBWORKFLOW_STEP
    subworkflow_id: str = ""
    param_bindings: dict[str, Any] = Field(default_factory=dict)


def _step_kind(value: Any) -> str:
    if isinstance(value, dict):
        step_type = value.get("type")
    else:
        step_type = getattr(value, "type", None)
    return "subworkflow" if step_type == SUBWORKFLOW_STEP else "action"


AnyStep = Annotated[
    Union[
        Annotated[SubworkflowStep, Tag("subworkflow")],
        Annotated[WorkflowStep, Tag("action")],
    ],
    Discriminator(_step_kind),
]


# --- Interruption handlers ---


class InterruptionTrigger(WireModel):
    model_config = ConfigDict(extra="allow")

    kind: str = "event"
    text_template: str = ""
    match_mode: Literal["contains", "regex", "exact"] = "contains"
    regex: Optional[str] = None


class InterruptionAction(WireModel):
    model_config = ConfigDict(extra="allow")

    type: str = "none"
    button_control_name: str = ""
    button_text: str = ""

    @property
    def target(self) -> str:
        return self.button_control_name or self.button_text


class InterruptionHandler(WireModel):
    model_config = ConfigDict(extra="allow")

    trigger: InterruptionTrigger = Field(default_factory=InterruptionTrigger)
    action: Optional[InterruptionAction] = None  # legacy single-action form
    actions: list[InterruptionAction] = Field(default_factory=list)
    outcome: str = "next-step"
    enabled: bool = True
    mode: Literal["auto", "alwaysAsk"] = "auto"

    def effective_actions(self) -> list[InterruptionAction]:
        if self.actions:
            return list(self.actions)
        return [self.action] if self.action else []


# --- Workflows ---


class WorkflowSettings(WireModel):
    model_config = ConfigDict(extra="allow")

    error_default_mode: str = "fail"
    error_default_retry_count: int = 0
    error_default_retry_delay: int = 1000
    error_default_goto_label: str = ""


class Workflow(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_id)
    name: str = ""
    description: str = ""
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    steps: list[AnyStep] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    unexpected_event_handlers: list[InterruptionHandler] = Field(default_factory=list)
    configuration_ids: list[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.name or self.id or "workflow"


class Configuration(WireModel):
    id: str = Field(default_factory=new_id)
    name: str
    workflow_order: list[str] = Field(default_factory=list)


class SharedDataSource(WireModel):
    id: str
    name: str = ""
    type: Literal["static", "dynamic"] = "static"
    data: list[dict[str, Any]] = Field(default_factory=list)
    fields: list[str] = Field(default_factory=list)
    query: str = ""  # only used by dynamic sources

    @property
    def label(self) -> str:
        return self.name or self.id


# --- Run options and run state ---


class RunOptions(WireModel):
    skip_rows: int = Field(default=0, ge=0)
    limit_rows: int = Field(default=0, ge=0)  # 0 = no limit
    dry_run: bool = False
    show_logs: bool = True
    learning_mode: bool = False
    run_until_interception: bool = False


class RunContext(WireModel):
    origin: Literal["manual", "configuration", "resume"] = "manual"
    configuration_run_id: Optional[str] = None
    queue_key: Optional[str] = None


class ExecutionState(WireModel):
    is_running: bool = False
    is_launching: bool = False
    is_paused: bool = False
    current_workflow_id: Optional[str] = None
    current_step_index: int = 0
    total_steps: int = 0
    current_row: int = 0
    total_rows: int = 0
    run_options: Optional[RunOptions] = None
    running_workflow_snapshot: Optional[dict[str, Any]] = None
    current_data: list[dict[str, Any]] = Field(default_factory=list)
    step_statuses: dict[int, str] = Field(default_factory=dict)


class QueueEntry(WireModel):
    key: str
    workflow: Optional[Workflow] = None


class ConfigurationRunState(WireModel):
    run_id: str
    configuration_id: Optional[str] = None
    configuration_name: str = ""
    workflow_queue: list[QueueEntry] = Field(default_factory=list)
    current_index: int = 0
    run_options: RunOptions = Field(default_factory=RunOptions)

    def expected_entry(self) -> Optional[QueueEntry]:
        if 0 <= self.current_index < len(self.workflow_queue):
            return self.workflow_queue[self.current_index]
        return None


class FailureInfo(WireModel):
    workflow_id: str
    row_index: int = 0
    total_rows: int = 0


class PendingNavigationState(WireModel):
    workflow: Workflow
    workflow_id: str = ""
    next_step_index: int = 0
    current_row_index: int = 0
    total_rows: int = 0
    data: Optional[list[dict[str, Any]]] = None
    target_menu_item_name: str = ""
    wait_for_load: int = runner_config.DEFAULT_WAIT_FOR_LOAD_MS
    saved_at: float = 0.0
    resume_handled: bool = False


# --- Events from the page-side executor ---


ProgressPhase = Literal[
    "stepStart",
    "stepDone",
    "rowStart",
    "loopIteration",
    "pausedForConfirmation",
    "pausedForInterruption",
]


class ProgressEvent(WireModel):
    phase: ProgressPhase
    step_index: Optional[int] = None
    step_name: Optional[str] = None
    row: Optional[int] = None
    total_rows: Optional[int] = None
    processed_rows: Optional[int] = None
    total_to_process: Optional[int] = None
    iteration: Optional[int] = None
    total: Optional[int] = None
    kind: Optional[str] = None
    message: Optional[str] = None


class CompleteEvent(WireModel):
    configuration_run_id: Optional[str] = None
    queue_key: Optional[str] = None


class ErrorEvent(WireModel):
    step_index: Optional[int] = None
    step: Optional[dict[str, Any]] = None
    message: str = ""
    error: Optional[str] = None


class NavigationRequest(WireModel):
    target_url: str = ""
    wait_for_load: Optional[int] = None


class LearnedRuleEvent(WireModel):
    workflow_id: str
    rule: InterruptionHandler
