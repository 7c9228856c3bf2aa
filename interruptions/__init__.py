"""
Interruption handler normalization, deduplication and pattern unification.

Interruptions are unexpected dialogs or message bars met while a workflow
runs. Learned handlers are deduplicated by signature and their trigger texts
can be generalized into wildcard patterns.
"""

from .normalize import (
    build_handler_repository,
    collapse_text,
    dedupe_handlers,
    handler_signature,
    normalize_text,
)
from .unify import (
    PatternValidation,
    TextMatch,
    compute_lcs,
    compute_unified_pattern,
    has_placeholders,
    pattern_to_regex,
    tokenize,
    trigger_matches,
    validate_pattern_against_texts,
)

__all__ = [
    'build_handler_repository',
    'collapse_text',
    'dedupe_handlers',
    'handler_signature',
    'normalize_text',
    'PatternValidation',
    'TextMatch',
    'compute_lcs',
    'compute_unified_pattern',
    'has_placeholders',
    'pattern_to_regex',
    'tokenize',
    'trigger_matches',
    'validate_pattern_against_texts',
]
