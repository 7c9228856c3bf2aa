"""
Workflow loader.

Loads workflows from YAML or JSON files (one workflow, a list, or a
``workflows:`` mapping), checks them for problems, and loads executor
settings overrides.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

import runner_config
from interruptions import handler_signature
from workflow_errors import WorkflowValidationError
from workflow_expander import WorkflowExpander
from workflow_models import StaticBinding, Workflow
from workflow_params import extract_required_params_from_workflow


def parse_workflows(data: Any) -> List[Workflow]:
    """
    Build workflows from loaded YAML/JSON data.

    Raises:
        WorkflowValidationError: If the data does not describe workflows
    """
    if isinstance(data, dict) and 'workflows' in data:
        data = data['workflows']
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not data:
        raise WorkflowValidationError("Workflow file must contain a workflow or a list of workflows")

    workflows = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise WorkflowValidationError(f"Workflow #{index + 1} must be a mapping")
        if 'steps' in item and not isinstance(item['steps'], list):
            raise WorkflowValidationError(f"'steps' of workflow #{index + 1} must be a list")
        try:
            workflows.append(Workflow.model_validate(item))
        except ValidationError as e:
            raise WorkflowValidationError(f"Invalid workflow #{index + 1}: {e}") from e
    return workflows


def load_workflows(file_path: str) -> List[Workflow]:
    """
    Load workflows from a YAML or JSON file.

    Args:
        file_path: Path to the workflow file

    Returns:
        List of workflows in file order

    Raises:
        FileNotFoundError: If file doesn't exist
        WorkflowValidationError: If the content is not a valid workflow
        yaml.YAMLError: If parsing fails
    """
    path = Path(file_path)

    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {file_path}")

    # JSON is a subset of YAML, so one parser covers both
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    return parse_workflows(data)


def validate_workflow(workflow: Workflow, library: Optional[Iterable[Workflow]] = None) -> List[str]:
    """
    Check a workflow and return a list of warnings (not errors).

    The workflow is expanded against ``library`` with placeholder values for
    its own parameters, so broken subworkflow references surface here.

    Raises:
        WorkflowValidationError: If the workflow cannot be expanded
    """
    warnings = []

    if not workflow.steps:
        warnings.append("Workflow has no steps")

    params = extract_required_params_from_workflow(workflow)
    if params:
        warnings.append(f"Workflow needs parameters when used as a subworkflow: {', '.join(params)}")

    known = {w.id: w for w in (library or [])}
    known.setdefault(workflow.id, workflow)
    placeholders = {name: StaticBinding(value=f"<{name}>") for name in params}
    expansion = WorkflowExpander(known).expand(workflow, placeholders)
    warnings.extend(expansion.warnings)

    settings = workflow.settings
    if settings.error_default_mode == 'goto' and not settings.error_default_goto_label:
        warnings.append("Error mode 'goto' has no label to jump to")

    seen = set()
    for handler in workflow.unexpected_event_handlers:
        if not handler.trigger.text_template.strip():
            warnings.append("Interruption handler with empty trigger text matches every event")
        signature = handler_signature(handler)
        if signature in seen:
            warnings.append(f"Duplicate interruption handler: {handler.trigger.text_template!r}")
        seen.add(signature)

    return warnings


def load_settings(file_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Executor settings: defaults, overridden by a YAML mapping if given.

    Unknown keys are kept and forwarded to the executor as-is.
    """
    settings = dict(runner_config.DEFAULT_SETTINGS)
    if not file_path:
        return settings

    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {file_path}")

    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError("Settings file must contain a YAML dictionary")

    settings.update(data)
    return settings
