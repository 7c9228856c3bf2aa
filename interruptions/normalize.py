"""
Normalization and identity of interruption handlers.

Handlers learned while running different workflows often describe the same
dialog with slightly different text (record ids, customer numbers, table
names). normalize_text() folds the known noisy parts into placeholders and
handler_signature() turns a handler into a stable key used to deduplicate the
shared handler repository.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable

from workflow_models import InterruptionHandler, Workflow

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

# (pattern, replacement) applied in order to lower-cased, whitespace-collapsed
# text. Every replacement is a fixed point of the whole battery.
_GENERALIZATIONS = [
    # Duplicate key: "Cannot create a record in Customers (CustTable). Customer account: 1001. The record already exists."
    (
        re.compile(r"cannot create a record in (.+?)\. .*?the record already exists\.?"),
        "cannot create a record in {table}. the record already exists.",
    ),
    # Mandatory field: "Field 'Customer group' must be filled in."
    (
        re.compile(r"field '([^']+)' must be filled in\.?"),
        "field '{field}' must be filled in.",
    ),
    # Delete blocked by dependents: "Cannot delete a record in Vendors (VendTable). ... dependent records exist ..."
    (
        re.compile(r"cannot delete (?:a )?record in (.+?)\. .*?(?:dependent|related) (?:records?|transactions?) exists?\b.*"),
        "cannot delete a record in {table}. dependent records exist.",
    ),
    # "customer US-0042", "customer 1001"
    (
        re.compile(r"\bcustomer (?=[a-z0-9_-]*\d)[a-z0-9_-]+"),
        "customer {number}",
    ),
    # Remaining standalone numbers: 12, 1,250.00, 3.5
    (
        re.compile(r"(?<![\w{])\d+(?:[.,]\d+)*(?![\w}])"),
        "{number}",
    ),
]


def collapse_text(raw: object) -> str:
    """Lower-case, trim and collapse whitespace. No other rewriting."""
    return _WHITESPACE_RE.sub(" ", str(raw if raw is not None else "")).strip().lower()


def normalize_text(raw: object) -> str:
    """
    Canonical form of a trigger text.

    A best-effort heuristic: collapse whitespace and case, then replace known
    noisy fragments with placeholders. Idempotent.
    """
    text = collapse_text(raw)
    for pattern, replacement in _GENERALIZATIONS:
        text = pattern.sub(replacement, text)
    return text


def handler_signature(handler: InterruptionHandler) -> str:
    """
    Stable identity key for a handler.

    Built from trigger kind, normalized trigger text, match mode, the type and
    target of each action (legacy ``action`` or ``actions``) and the outcome.
    """
    actions = [
        {"type": action.type or "none", "target": collapse_text(action.target)}
        for action in handler.effective_actions()
    ]
    key = {
        "kind": handler.trigger.kind or "event",
        "text": normalize_text(handler.trigger.text_template),
        "matchMode": handler.trigger.match_mode or "contains",
        "actions": actions,
        "outcome": handler.outcome or "next-step",
    }
    return json.dumps(key, sort_keys=True, separators=(",", ":"))


def dedupe_handlers(handlers: Iterable[InterruptionHandler]) -> list[InterruptionHandler]:
    """Keep the first handler of every signature, preserving order."""
    seen: set[str] = set()
    unique: list[InterruptionHandler] = []
    for handler in handlers:
        signature = handler_signature(handler)
        if signature in seen:
            continue
        seen.add(signature)
        unique.append(handler)
    return unique


def build_handler_repository(workflows: Iterable[Workflow]) -> list[InterruptionHandler]:
    """Union of all workflows' handlers, deduplicated by signature."""
    collected = [h for w in workflows for h in w.unexpected_event_handlers]
    repository = dedupe_handlers(collected)
    logger.debug(f"Handler repository: {len(repository)} unique of {len(collected)}")
    return [h.model_copy(deep=True) for h in repository]
