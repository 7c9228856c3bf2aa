"""
Error taxonomy for workflow expansion, dispatch and execution.

Validation and dispatch errors are raised before anything is sent to the
page-side executor. Step failures arrive later through the error event.
"""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for all workflow runner errors."""


class WorkflowValidationError(WorkflowError, ValueError):
    """A workflow cannot be expanded or run as authored."""


class RowResolutionError(WorkflowValidationError):
    """The data rows for a workflow could not be resolved."""


class UnknownItemError(WorkflowError, LookupError):
    """A workflow, configuration or data source id does not exist."""


class DispatchError(WorkflowError):
    """No usable destination to send the workflow to."""


class StepExecutionError(WorkflowError):
    """A step failed while the page-side executor was running it."""

    def __init__(self, message: str, workflow_id: str = "",
                 step_index: Optional[int] = None, row_index: int = 0):
        super().__init__(message)
        self.workflow_id = workflow_id
        self.step_index = step_index
        self.row_index = row_index


class OutOfOrderCompletion(WorkflowError):
    """A completion arrived for a run that is no longer the expected one."""

    def __init__(self, expected_key: Optional[str], actual_key: Optional[str]):
        super().__init__(
            f"Completion for queue key {actual_key!r} does not match expected {expected_key!r}"
        )
        self.expected_key = expected_key
        self.actual_key = actual_key
