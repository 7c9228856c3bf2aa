"""
Subworkflow expansion.

Inlines every ``subworkflow`` step of a workflow, recursively, into one flat
step list with all ``${param}`` references substituted. Runs entirely before
dispatch: any problem is a WorkflowValidationError and nothing is sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Union

import runner_config
from workflow_errors import WorkflowValidationError
from workflow_models import Binding, SubworkflowStep, Workflow, WorkflowStep
from workflow_params import (
    build_normalized_bindings,
    extract_required_params_from_workflow,
    resolve_binding_map,
    substitute_params_in_object,
    workflow_has_loops,
)

logger = logging.getLogger(__name__)


@dataclass
class ExpansionResult:
    workflow: Workflow
    warnings: list[str] = field(default_factory=list)


class WorkflowExpander:
    """Flattens workflows against a set of known workflows."""

    def __init__(self, workflows: Union[Mapping[str, Workflow], Iterable[Workflow]]):
        if isinstance(workflows, Mapping):
            self.workflows = dict(workflows)
        else:
            self.workflows = {w.id: w for w in workflows}

    def expand(self, root: Workflow,
               bindings: Optional[Mapping[str, object]] = None) -> ExpansionResult:
        """
        Expand ``root`` into a new workflow without subworkflow steps.

        Args:
            root: Workflow to expand (not modified)
            bindings: Parameter bindings for the root workflow, if it has any

        Returns:
            ExpansionResult with the flattened workflow and substitution warnings

        Raises:
            WorkflowValidationError: missing target, cycle, loops in a
                subworkflow, or unbound parameters
        """
        warnings: list[str] = []
        flat = self._expand(root, build_normalized_bindings(bindings), [], warnings)
        if warnings:
            logger.debug(f"Expanded {root.label} with {len(warnings)} warning(s)")
        return ExpansionResult(workflow=flat, warnings=warnings)

    def _expand(self, workflow: Workflow, bindings: Mapping[str, Binding],
                stack: list[str], warnings: list[str]) -> Workflow:
        workflow_id = workflow.id or workflow.name or "workflow"
        if workflow_id in stack:
            cycle = " -> ".join([*stack, workflow_id])
            raise WorkflowValidationError(f"Subworkflow cycle detected: {cycle}")
        if len(stack) > runner_config.MAX_SUBWORKFLOW_DEPTH:
            raise WorkflowValidationError(
                f"Subworkflow nesting exceeds {runner_config.MAX_SUBWORKFLOW_DEPTH} levels"
            )

        missing = [
            name for name in extract_required_params_from_workflow(workflow)
            if name not in bindings
        ]
        if missing:
            raise WorkflowValidationError(
                f'Missing parameters for workflow "{workflow.label}": {", ".join(missing)}'
            )

        next_stack = [*stack, workflow_id]
        context_label = f'workflow "{workflow.label}"'
        steps: list[WorkflowStep] = []

        for step in workflow.steps:
            if isinstance(step, SubworkflowStep):
                child = self._lookup(step, workflow)
                child_bindings = resolve_binding_map(
                    step.param_bindings, bindings, warnings,
                    f'subworkflow "{child.label}"',
                )
                steps.extend(self._expand(child, child_bindings, next_stack, warnings).steps)
            else:
                payload = substitute_params_in_object(step.payload(), bindings, warnings, context_label)
                steps.append(WorkflowStep.model_validate(payload))

        return workflow.model_copy(update={"steps": steps}, deep=True)

    def _lookup(self, step: SubworkflowStep, owner: Workflow) -> Workflow:
        if not step.subworkflow_id:
            raise WorkflowValidationError(f'Subworkflow step missing target in "{owner.label}".')
        child = self.workflows.get(step.subworkflow_id)
        if child is None:
            raise WorkflowValidationError(f"Subworkflow not found: {step.subworkflow_id}")
        if workflow_has_loops(child):
            raise WorkflowValidationError(
                f'Subworkflow "{child.label}" contains loops and cannot be used.'
            )
        return child
