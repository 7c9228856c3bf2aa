"""
Row resolution for workflow runs.

A workflow iterates over rows built from the shared data sources its steps
reference as ``sourceId:field``. Rows of several sources are merged by index;
a shorter source repeats its last row.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from workflow_errors import RowResolutionError, WorkflowValidationError
from workflow_models import FailureInfo, RunOptions, SharedDataSource, Workflow

logger = logging.getLogger(__name__)

SourcesLoader = Callable[[], Awaitable[list[SharedDataSource]]]
DynamicFetcher = Callable[[str], Awaitable[list[dict[str, Any]]]]


@dataclass
class ResolvedRows:
    rows: list[dict[str, Any]]
    sources: list[SharedDataSource] = field(default_factory=list)

    @property
    def fields(self) -> list[str]:
        return list(self.rows[0]) if self.rows else []


class RowResolver(Protocol):
    """Returns the concrete rows a workflow run iterates over."""

    async def resolve(self, workflow: Workflow) -> ResolvedRows:
        ...


def _source_id_of(mapping: Any) -> Optional[str]:
    if not isinstance(mapping, str):
        return None
    source_id, sep, _ = mapping.partition(":")
    return source_id if sep and source_id else None


def collect_referenced_source_ids(workflow: Workflow) -> list[str]:
    """Shared source ids referenced by the workflow's steps, in first-use order."""
    ids: dict[str, None] = {}
    for step in workflow.steps:
        payload = step.payload()
        for key in ("fieldMapping", "conditionFieldMapping"):
            source_id = _source_id_of(payload.get(key))
            if source_id:
                ids.setdefault(source_id, None)
        if step.type == "loop-start":
            loop_source = payload.get("loopDataSource")
            if loop_source and loop_source != "primary":
                ids.setdefault(loop_source, None)
    return list(ids)


def merge_source_rows(sources: list[SharedDataSource]) -> list[dict[str, Any]]:
    """
    Merge rows of several sources by index.

    Every value is available as ``sourceId:field``; the bare ``field`` key
    holds the value of the first source that has that field.
    """
    if not sources:
        return [{}]
    max_rows = max(len(s.data) for s in sources)
    rows = []
    for index in range(max_rows):
        row: dict[str, Any] = {}
        for source in sources:
            source_row = source.data[index] if index < len(source.data) else source.data[-1]
            for name, value in source_row.items():
                row[f"{source.id}:{name}"] = value
                row.setdefault(name, value)
        rows.append(row)
    return rows or [{}]


class SharedSourceRowResolver:
    """
    Builds rows from shared data sources.

    Dynamic sources are fetched through ``fetcher`` at resolve time. When
    ``sample_size`` is set, a random subset of that many rows is kept in
    their original order.
    """

    def __init__(self, load_sources: SourcesLoader,
                 fetcher: Optional[DynamicFetcher] = None,
                 sample_size: Optional[int] = None,
                 rng: Optional[random.Random] = None):
        self.load_sources = load_sources
        self.fetcher = fetcher
        self.sample_size = sample_size
        self.rng = rng or random.Random()

    async def resolve(self, workflow: Workflow) -> ResolvedRows:
        all_sources = [s.model_copy(deep=True) for s in await self.load_sources()]
        by_id = {s.id: s for s in all_sources}

        referenced = []
        for source_id in collect_referenced_source_ids(workflow):
            source = by_id.get(source_id)
            if source is None:
                raise RowResolutionError(f"Shared data source not found: {source_id}")
            if source.type == "dynamic":
                await self._fetch(source)
            if not source.data:
                raise RowResolutionError(f'Shared data source "{source.label}" has no rows')
            referenced.append(source)

        rows = merge_source_rows(referenced)
        if self.sample_size and 0 < self.sample_size < len(rows):
            picked = sorted(self.rng.sample(range(len(rows)), self.sample_size))
            logger.info(f"Sampling {self.sample_size} of {len(rows)} rows")
            rows = [rows[i] for i in picked]
        return ResolvedRows(rows=rows, sources=all_sources)

    async def _fetch(self, source: SharedDataSource) -> None:
        query = source.query.strip()
        if not query:
            raise RowResolutionError(f'Dynamic source "{source.label}" is missing query')
        if self.fetcher is None:
            raise RowResolutionError(f'No fetcher configured for dynamic source "{source.label}"')
        rows = await self.fetcher(query)
        if not rows:
            raise RowResolutionError(f'Dynamic source "{source.label}" returned no rows')
        source.data = list(rows)
        source.fields = list(rows[0])
        logger.info(f'Fetched dynamic source "{source.label}" ({len(rows)} rows)')


def row_window(total_rows: int, options: RunOptions) -> tuple[int, int]:
    """Half-open ``[start, end)`` row range a run with these options processes."""
    start = min(options.skip_rows, total_rows)
    end = total_rows
    if options.limit_rows > 0:
        end = min(total_rows, start + options.limit_rows)
    return start, end


def resume_run_options(failure: FailureInfo, base_options: Optional[RunOptions],
                       total_rows: int, mode: str) -> RunOptions:
    """
    Run options for resuming a failed run.

    ``next`` starts after the failed row, ``retry`` at it. A run that had a
    row limit stays inside its original ``[skip, skip + limit)`` window.

    Raises:
        WorkflowValidationError: unknown mode, or no rows left to process
    """
    if mode not in ("next", "retry"):
        raise WorkflowValidationError(f"Unknown resume mode: {mode}")
    base = base_options or RunOptions()

    resume_skip = failure.row_index + 1 if mode == "next" else failure.row_index
    if resume_skip >= total_rows:
        raise WorkflowValidationError("No more rows to process")

    resume_limit = 0
    if base.limit_rows > 0:
        _, window_end = row_window(total_rows, base)
        remaining = window_end - resume_skip
        if remaining <= 0:
            raise WorkflowValidationError("No remaining rows within the original limit")
        resume_limit = remaining

    return RunOptions(
        skip_rows=max(0, resume_skip),
        limit_rows=resume_limit,
        dry_run=base.dry_run,
        show_logs=base.show_logs,
    )
