"""
Durable run state.

Everything needed to resume after the orchestrator process restarts lives in
a small key-value store: resume points, the last failure, queued
configuration runs, pending navigation state, workflows and the shared
interruption handler repository.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol

from workflow_models import (
    Configuration,
    ConfigurationRunState,
    ExecutionState,
    FailureInfo,
    InterruptionHandler,
    PendingNavigationState,
    RunContext,
    RunOptions,
    SharedDataSource,
    Workflow,
)

logger = logging.getLogger(__name__)

RESUME_SKIP_KEY = "resumeSkipByWorkflow"
LAST_FAILURE_KEY = "lastFailureInfo"
LAST_RUN_OPTIONS_KEY = "lastRunOptionsByWorkflow"
CONFIGURATION_RUN_KEY = "configurationRunState"
ACTIVE_RUN_CONTEXT_KEY = "activeRunContext"
EXECUTION_STATE_KEY = "executionState"
HANDLER_REPOSITORY_KEY = "interruptionHandlerRepository"
WORKFLOWS_KEY = "workflows"
CONFIGURATIONS_KEY = "configurations"
SHARED_SOURCES_KEY = "sharedDataSources"
PENDING_WORKFLOW_PREFIX = "pendingWorkflow:"


class KeyValueStore(Protocol):
    """
    Abstract interface for durable storage.

    Values are JSON-compatible. Setting a key to None removes it.
    """

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the stored values of the keys that exist."""
        ...

    async def set(self, values: Mapping[str, Any]) -> None:
        """Store all values at once."""
        ...


class JSONKeyValueStore:
    """
    KeyValueStore backed by a single JSON file.

    The whole file is rewritten on every set() and swapped in with an atomic
    rename, so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Could not read state file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring state file {self.path}: not a JSON object")
            return {}
        return data

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return {k: json.loads(json.dumps(self._data[k])) for k in keys if k in self._data}

    async def set(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
        self._save()

    def _save(self) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def keys(self) -> list[str]:
        return list(self._data)


class RunStateRepository:
    """Typed access to the keys the orchestrator persists."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def _get(self, key: str, default: Any = None) -> Any:
        values = await self.store.get([key])
        return values.get(key, default)

    # --- Resume points ---

    async def get_resume_skips(self) -> dict[str, int]:
        return {k: int(v) for k, v in (await self._get(RESUME_SKIP_KEY, {})).items()}

    async def set_resume_skip(self, workflow_id: str, row_index: int) -> None:
        skips = await self.get_resume_skips()
        skips[workflow_id] = max(0, row_index)
        await self.store.set({RESUME_SKIP_KEY: skips})

    async def clear_resume_skip(self, workflow_id: str) -> bool:
        skips = await self.get_resume_skips()
        if workflow_id not in skips:
            return False
        del skips[workflow_id]
        await self.store.set({RESUME_SKIP_KEY: skips})
        return True

    async def get_last_failure(self) -> Optional[FailureInfo]:
        raw = await self._get(LAST_FAILURE_KEY)
        return FailureInfo.model_validate(raw) if raw else None

    async def set_last_failure(self, failure: Optional[FailureInfo]) -> None:
        await self.store.set({LAST_FAILURE_KEY: failure.to_wire() if failure else None})

    async def get_last_run_options(self) -> dict[str, RunOptions]:
        raw = await self._get(LAST_RUN_OPTIONS_KEY, {})
        return {k: RunOptions.model_validate(v) for k, v in raw.items()}

    async def set_last_run_options(self, workflow_id: str, options: RunOptions) -> None:
        raw = await self._get(LAST_RUN_OPTIONS_KEY, {})
        raw[workflow_id] = options.to_wire()
        await self.store.set({LAST_RUN_OPTIONS_KEY: raw})

    # --- Active run ---

    async def get_configuration_run(self) -> Optional[ConfigurationRunState]:
        raw = await self._get(CONFIGURATION_RUN_KEY)
        return ConfigurationRunState.model_validate(raw) if raw else None

    async def set_configuration_run(self, state: Optional[ConfigurationRunState]) -> None:
        await self.store.set({CONFIGURATION_RUN_KEY: state.to_wire() if state else None})

    async def get_active_run_context(self) -> Optional[RunContext]:
        raw = await self._get(ACTIVE_RUN_CONTEXT_KEY)
        return RunContext.model_validate(raw) if raw else None

    async def set_active_run_context(self, context: Optional[RunContext]) -> None:
        await self.store.set({ACTIVE_RUN_CONTEXT_KEY: context.to_wire() if context else None})

    async def get_execution_state(self) -> Optional[ExecutionState]:
        raw = await self._get(EXECUTION_STATE_KEY)
        return ExecutionState.model_validate(raw) if raw else None

    async def set_execution_state(self, state: Optional[ExecutionState]) -> None:
        """Store the state of the run in flight. Row data and step statuses are not kept."""
        if state is None:
            await self.store.set({EXECUTION_STATE_KEY: None})
            return
        raw = state.model_dump(by_alias=True, mode="json", exclude={"current_data", "step_statuses"})
        await self.store.set({EXECUTION_STATE_KEY: raw})

    # --- Pending navigation, one slot per destination ---

    async def get_pending_navigation(self, destination_id: str) -> Optional[PendingNavigationState]:
        raw = await self._get(PENDING_WORKFLOW_PREFIX + destination_id)
        return PendingNavigationState.model_validate(raw) if raw else None

    async def save_pending_navigation(self, destination_id: str,
                                      state: PendingNavigationState) -> bool:
        """
        Store pending navigation state for a destination.

        A state saved by a different workflow at the same time or later is
        kept. Returns False when the save was skipped for that reason.
        """
        if not state.saved_at:
            state = state.model_copy(update={"saved_at": time.time()})
        existing = await self.get_pending_navigation(destination_id)
        if existing is not None:
            existing_id = existing.workflow_id or existing.workflow.id
            next_id = state.workflow_id or state.workflow.id
            if existing_id and next_id and existing_id != next_id and existing.saved_at >= state.saved_at:
                logger.info(
                    f"Keeping newer pending state of {existing_id} on {destination_id}"
                )
                return False
        await self.store.set({PENDING_WORKFLOW_PREFIX + destination_id: state.to_wire()})
        return True

    async def clear_pending_navigation(self, destination_id: str) -> None:
        await self.store.set({PENDING_WORKFLOW_PREFIX + destination_id: None})

    # --- Library ---

    async def get_handler_repository(self) -> list[InterruptionHandler]:
        return [InterruptionHandler.model_validate(h) for h in await self._get(HANDLER_REPOSITORY_KEY, [])]

    async def set_handler_repository(self, handlers: list[InterruptionHandler]) -> None:
        await self.store.set({HANDLER_REPOSITORY_KEY: [h.to_wire() for h in handlers]})

    async def get_workflows(self) -> list[Workflow]:
        return [Workflow.model_validate(w) for w in await self._get(WORKFLOWS_KEY, [])]

    async def set_workflows(self, workflows: list[Workflow]) -> None:
        await self.store.set({WORKFLOWS_KEY: [w.to_wire() for w in workflows]})

    async def get_configurations(self) -> list[Configuration]:
        return [Configuration.model_validate(c) for c in await self._get(CONFIGURATIONS_KEY, [])]

    async def set_configurations(self, configurations: list[Configuration]) -> None:
        await self.store.set({CONFIGURATIONS_KEY: [c.to_wire() for c in configurations]})

    async def get_shared_data_sources(self) -> list[SharedDataSource]:
        return [SharedDataSource.model_validate(s) for s in await self._get(SHARED_SOURCES_KEY, [])]

    async def set_shared_data_sources(self, sources: list[SharedDataSource]) -> None:
        await self.store.set({SHARED_SOURCES_KEY: [s.to_wire() for s in sources]})
