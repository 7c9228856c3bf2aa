"""
Parameter templates for workflows.

Steps may reference parameters as ``${name}``. A parameter is bound to a
static value, a field of the data row, or the clipboard. Substitution is
best-effort: problems are appended to a caller-supplied warnings list and
never raised. ``\\${name}`` is an escape and is emitted as ``${name}``.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

import runner_config
from workflow_errors import WorkflowValidationError
from workflow_models import (
    LOOP_STEP_TYPES,
    Binding,
    ClipboardBinding,
    DataBinding,
    StaticBinding,
    Workflow,
)

_PARAM_RE = re.compile(r"\$\{([A-Za-z0-9_]+)\}")
_PARAM_OR_ESCAPE_RE = re.compile(r"\\?\$\{([A-Za-z0-9_]+)\}")
_EXACT_PARAM_RE = re.compile(r"^\$\{([A-Za-z0-9_]+)\}$")

# Step types whose value field can be fed from the data row or clipboard
VALUE_SOURCE_STEP_TYPES = frozenset({
    "input", "select", "lookupSelect", "grid-input", "filter", "query-filter",
})

# Fields of a navigate step that only matter for one navigation method
_NAVIGATE_FIELDS_BY_METHOD = {
    "url": ("menuItemName", "menuItemType", "hostRelativePath"),
    "hostRelative": ("menuItemName", "menuItemType", "navigateUrl"),
    "menuItem": ("navigateUrl", "hostRelativePath"),
}


def normalize_param_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


def _iter_param_names(text: str):
    for match in _PARAM_RE.finditer(text):
        start = match.start()
        if start > 0 and text[start - 1] == "\\":
            continue
        yield normalize_param_name(match.group(1))


def get_param_names_from_string(text: Any) -> set[str]:
    """Return normalized names of unescaped ``${name}`` tokens in text."""
    if not isinstance(text, str):
        return set()
    return set(_iter_param_names(text))


def extract_required_params(obj: Any, params: dict[str, None], _depth: int = 0) -> None:
    """
    Walk strings, lists and dicts collecting parameter names into ``params``.

    ``params`` is used as an ordered set. Structures nested deeper than
    MAX_PARAM_SCAN_DEPTH are rejected.
    """
    if _depth > runner_config.MAX_PARAM_SCAN_DEPTH:
        raise WorkflowValidationError(
            f"Step data nested deeper than {runner_config.MAX_PARAM_SCAN_DEPTH} levels"
        )
    if isinstance(obj, str):
        for name in _iter_param_names(obj):
            params.setdefault(name, None)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            extract_required_params(item, params, _depth + 1)
    elif isinstance(obj, dict):
        for value in obj.values():
            extract_required_params(value, params, _depth + 1)


def step_for_param_extraction(step: dict[str, Any]) -> dict[str, Any]:
    """
    Drop navigate fields that the step's navigation method never reads, so
    a stale ``${x}`` left in an unused field is not reported as required.
    """
    if not isinstance(step, dict) or step.get("type") != "navigate":
        return step
    method = step.get("navigateMethod") or "menuItem"
    unused = _NAVIGATE_FIELDS_BY_METHOD.get(method, _NAVIGATE_FIELDS_BY_METHOD["menuItem"])
    return {k: v for k, v in step.items() if k not in unused}


def extract_required_params_from_workflow(workflow: Workflow) -> list[str]:
    params: dict[str, None] = {}
    for step in workflow.steps:
        extract_required_params(step_for_param_extraction(step.payload()), params)
    return list(params)


def workflow_has_loops(workflow: Workflow) -> bool:
    return any(step.type in LOOP_STEP_TYPES for step in workflow.steps)


# --- Bindings ---


def normalize_binding_value(value: Any) -> Binding:
    """Turn an authored binding (or a bare legacy value) into a Binding."""
    if isinstance(value, (StaticBinding, DataBinding, ClipboardBinding)):
        return value
    if isinstance(value, dict):
        source = value.get("valueSource") or "static"
        if source == "data":
            return DataBinding(field_mapping=value.get("fieldMapping") or "")
        if source == "clipboard":
            return ClipboardBinding()
        return StaticBinding(value=value.get("value"))
    return StaticBinding(value=value)


def build_normalized_bindings(bindings: Optional[Mapping[str, Any]]) -> dict[str, Binding]:
    normalized: dict[str, Binding] = {}
    for key, value in (bindings or {}).items():
        name = normalize_param_name(key)
        if not name:
            continue
        normalized[name] = normalize_binding_value(value)
    return normalized


# --- Substitution ---


def substitute_params_in_string(
    text: Any,
    bindings: Mapping[str, Binding],
    warnings: Optional[list[str]] = None,
    context_label: str = "workflow",
) -> Any:
    """Replace ``${name}`` tokens in text. Non-strings are returned as-is."""
    if not isinstance(text, str):
        return text

    def replacer(m: re.Match) -> str:
        token = m.group(0)
        if token.startswith("\\"):
            return token[1:]
        name = m.group(1)
        key = normalize_param_name(name)
        binding = (bindings or {}).get(key)
        if binding is None:
            _warn(warnings, f'Missing parameter "{name}" while expanding {context_label}.')
            return ""
        if not isinstance(binding, StaticBinding):
            _warn(
                warnings,
                f'Parameter "{name}" uses {binding.value_source} and cannot be '
                f"inserted into text in {context_label}.",
            )
            return ""
        if binding.value == "":
            _warn(warnings, f'Parameter "{name}" resolved to empty value in {context_label}.')
        return binding.value

    return _PARAM_OR_ESCAPE_RE.sub(replacer, text)


def apply_param_binding_to_value_field(
    raw_value: str,
    step: Mapping[str, Any],
    bindings: Mapping[str, Binding],
    warnings: Optional[list[str]] = None,
    context_label: str = "workflow",
) -> Optional[dict[str, str]]:
    """
    Resolve a ``value`` field that is exactly one ``${name}`` token.

    Returns the keys to write back onto the step (``value`` and, for
    value-source capable steps, ``valueSource``/``fieldMapping``), or None
    when the field is not a single-token reference.
    """
    exact = _EXACT_PARAM_RE.match(raw_value)
    if not exact:
        return None
    name = exact.group(1)
    binding = (bindings or {}).get(normalize_param_name(name))
    if binding is None:
        _warn(warnings, f'Missing parameter "{name}" while expanding {context_label}.')
        return {"value": ""}

    step_type = step.get("type") or ""
    if not isinstance(binding, StaticBinding) and step_type not in VALUE_SOURCE_STEP_TYPES:
        _warn(
            warnings,
            f'Parameter "{name}" uses {binding.value_source} but step type '
            f'"{step_type}" does not support it in {context_label}.',
        )
        return {"value": ""}

    if isinstance(binding, DataBinding):
        return {"value": "", "valueSource": "data", "fieldMapping": binding.field_mapping}
    if isinstance(binding, ClipboardBinding):
        return {"value": "", "valueSource": "clipboard", "fieldMapping": ""}

    if binding.value == "":
        _warn(warnings, f'Parameter "{name}" resolved to empty value in {context_label}.')
    return {"value": binding.value, "valueSource": "static"}


def substitute_params_in_object(
    obj: Any,
    bindings: Mapping[str, Binding],
    warnings: Optional[list[str]] = None,
    context_label: str = "workflow",
) -> Any:
    """Substitute parameters through strings, lists and dicts. Returns a copy."""
    if isinstance(obj, str):
        return substitute_params_in_string(obj, bindings, warnings, context_label)
    if isinstance(obj, list):
        return [substitute_params_in_object(item, bindings, warnings, context_label) for item in obj]
    if not isinstance(obj, dict):
        return obj

    result = dict(obj)
    overridden: set[str] = set()
    value = obj.get("value")
    if isinstance(value, str):
        applied = apply_param_binding_to_value_field(value, obj, bindings, warnings, context_label)
        if applied is not None:
            result.update(applied)
            overridden.update(applied)

    for key, item in obj.items():
        if key in overridden:
            continue
        result[key] = substitute_params_in_object(item, bindings, warnings, context_label)
    return result


def resolve_binding_map(
    raw_bindings: Optional[Mapping[str, Any]],
    parent_bindings: Mapping[str, Binding],
    warnings: Optional[list[str]] = None,
    context_label: str = "workflow",
) -> dict[str, Binding]:
    """
    Resolve a subworkflow step's bindings against the caller's bindings.

    A static value that is exactly ``${parent}`` takes over the parent's
    binding as-is, so data and clipboard bindings reach nested steps.
    """
    resolved: dict[str, Binding] = {}
    for key, binding in build_normalized_bindings(raw_bindings).items():
        if isinstance(binding, StaticBinding):
            exact = _EXACT_PARAM_RE.match(binding.value)
            inherited = (parent_bindings or {}).get(normalize_param_name(exact.group(1))) if exact else None
            if inherited is not None:
                resolved[key] = inherited
            else:
                resolved[key] = StaticBinding(
                    value=substitute_params_in_string(binding.value, parent_bindings, warnings, context_label)
                )
        elif isinstance(binding, DataBinding):
            resolved[key] = DataBinding(
                field_mapping=substitute_params_in_string(
                    binding.field_mapping, parent_bindings, warnings, context_label
                )
            )
        else:
            resolved[key] = ClipboardBinding()
    return resolved


def _warn(warnings: Optional[list[str]], message: str) -> None:
    if warnings is not None:
        warnings.append(message)
