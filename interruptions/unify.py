"""
Generalizing trigger texts into wildcard patterns.

Several observed texts of the same dialog ("error processing order 12345",
"error processing invoice 67890") are aligned token by token with a longest
common subsequence; whatever differs becomes a ``{variable}`` placeholder.
The resulting pattern is matched with a regex where every placeholder is a
lazy ``.*?``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from interruptions.normalize import collapse_text
from workflow_models import InterruptionTrigger, WireModel

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\{[^{}\s]*\}|\w+|[^\w\s]")
_PLACEHOLDER_RE = re.compile(r"\{[^{}]*\}")


@dataclass(frozen=True)
class _Token:
    text: str
    space_before: bool
    is_gap: bool = False

    @property
    def key(self) -> Optional[str]:
        # Gaps never match anything, including other gaps
        return None if self.is_gap else self.text.lower()


class TextMatch(WireModel):
    text: str
    matched: bool


class PatternValidation(WireModel):
    all_match: bool
    per_text: list[TextMatch]


def _scan(text: str) -> list[_Token]:
    tokens = []
    prev_end = 0
    for m in _TOKEN_RE.finditer(text):
        tokens.append(_Token(m.group(0), space_before=m.start() > prev_end))
        prev_end = m.end()
    return tokens


def tokenize(text: str) -> list[str]:
    """Split text into words and punctuation marks. Placeholders stay whole."""
    return [t.text for t in _scan(text or "")]


def _lcs_pairs(a: Sequence[Optional[str]], b: Sequence[Optional[str]]) -> list[tuple[int, int]]:
    """Index pairs of one longest common subsequence of a and b."""
    m, n = len(a), len(b)
    # lengths[i][j] = LCS length of a[i:] and b[j:]
    lengths = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(m - 1, -1, -1):
        row, below = lengths[i], lengths[i + 1]
        for j in range(n - 1, -1, -1):
            if a[i] is not None and a[i] == b[j]:
                row[j] = below[j + 1] + 1
            else:
                row[j] = max(below[j], row[j + 1])

    pairs = []
    i = j = 0
    while i < m and j < n:
        if a[i] is not None and a[i] == b[j]:
            pairs.append((i, j))
            i += 1
            j += 1
        elif lengths[i + 1][j] >= lengths[i][j + 1]:
            i += 1
        else:
            j += 1
    return pairs


def compute_lcs(a: Sequence[str], b: Sequence[str]) -> list[str]:
    """Longest common subsequence of two token lists, in a's order."""
    return [a[i] for i, _ in _lcs_pairs(list(a), list(b))]


def _append_gap(sequence: list[_Token], space_before: bool) -> None:
    if sequence and sequence[-1].is_gap:
        return
    sequence.append(_Token("", space_before=space_before, is_gap=True))


def _fold(common: list[_Token], tokens: list[_Token]) -> list[_Token]:
    pairs = _lcs_pairs([t.key for t in common], [t.key for t in tokens])
    merged: list[_Token] = []
    prev_i = prev_j = 0
    for i, j in [*pairs, (len(common), len(tokens))]:
        dropped_common = common[prev_i:i]
        dropped_tokens = tokens[prev_j:j]
        if dropped_common or dropped_tokens:
            first = dropped_common[0] if dropped_common else dropped_tokens[0]
            _append_gap(merged, first.space_before)
        if i < len(common):
            merged.append(common[i])
        prev_i, prev_j = i + 1, j + 1
    return merged


def _render(sequence: list[_Token]) -> str:
    parts = []
    gap_count = 0
    for index, token in enumerate(sequence):
        if index > 0 and token.space_before:
            parts.append(" ")
        if token.is_gap:
            gap_count += 1
            parts.append("{variable}" if gap_count == 1 else f"{{variable{gap_count}}}")
        else:
            parts.append(token.text)
    return "".join(parts)


def compute_unified_pattern(texts: Sequence[str]) -> str:
    """
    Generalize texts of the same event into one pattern.

    Returns the single text unchanged when only one non-blank text is given,
    and an empty string for no input.
    """
    cleaned = [t for t in texts if t and t.strip()]
    if not cleaned:
        return ""
    if len(cleaned) == 1:
        return cleaned[0]

    common = _scan(cleaned[0])
    for text in cleaned[1:]:
        common = _fold(common, _scan(text))
    pattern = _render(common)
    logger.debug(f"Unified {len(cleaned)} texts into pattern: {pattern}")
    return pattern


def has_placeholders(pattern: str) -> bool:
    return bool(_PLACEHOLDER_RE.search(pattern or ""))


def pattern_to_regex(pattern: str) -> str:
    """
    Regex source: fixed segments escaped, placeholders become ``.*?``.

    Whitespace around a placeholder is optional, so "Record {variable} saved"
    also matches "Record saved", where the placeholder stands for nothing.
    """
    segments = _PLACEHOLDER_RE.split(pattern or "")
    last = len(segments) - 1
    parts = []
    for index, segment in enumerate(segments):
        if index > 0:
            segment = segment.lstrip()
        if index < last:
            segment = segment.rstrip()
        parts.append(re.escape(segment))
    return r"\s*.*?\s*".join(parts)


def _pattern_matches(pattern: str, text: str, match_mode: str,
                     regex: Optional[str] = None) -> bool:
    haystack = collapse_text(text)
    needle = collapse_text(pattern)

    if match_mode == "regex":
        source = regex or pattern_to_regex(needle)
        try:
            return re.search(source, haystack, re.IGNORECASE) is not None
        except re.error as e:
            logger.warning(f"Invalid trigger regex {source!r}: {e}")
            return False

    if match_mode == "exact":
        if has_placeholders(needle):
            return re.fullmatch(pattern_to_regex(needle), haystack, re.IGNORECASE) is not None
        return needle == haystack

    # contains: plain substring test unless the pattern has placeholders
    if not has_placeholders(needle):
        return needle in haystack
    return re.search(pattern_to_regex(needle), haystack, re.IGNORECASE) is not None


def validate_pattern_against_texts(pattern: str, texts: Sequence[str],
                                   match_mode: str = "regex") -> PatternValidation:
    """Report which source texts the pattern still matches."""
    per_text = [
        TextMatch(text=text, matched=_pattern_matches(pattern, text, match_mode))
        for text in texts
    ]
    return PatternValidation(
        all_match=bool(per_text) and all(r.matched for r in per_text),
        per_text=per_text,
    )


def trigger_matches(trigger: InterruptionTrigger, text: str) -> bool:
    """Whether an observed event text fires the trigger."""
    return _pattern_matches(trigger.text_template, text, trigger.match_mode, trigger.regex)
