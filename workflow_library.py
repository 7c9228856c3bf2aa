"""
Workflow library: saved workflows, configurations and shared data sources.

Keeps an in-memory copy of the library and writes every change through to
the durable store. The interruption handler repository is rebuilt from all
workflows whenever a workflow is saved or deleted.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from interruptions import build_handler_repository, handler_signature
from persistence import RunStateRepository
from workflow_errors import UnknownItemError, WorkflowValidationError
from workflow_models import Configuration, InterruptionHandler, SharedDataSource, Workflow

logger = logging.getLogger(__name__)


class WorkflowLibrary:
    """Saved workflows and configurations, backed by a RunStateRepository."""

    def __init__(self, repository: RunStateRepository):
        self.repository = repository
        self._workflows: list[Workflow] = []
        self._configurations: list[Configuration] = []
        self._sources: list[SharedDataSource] = []
        self._handlers: list[InterruptionHandler] = []

    async def load(self) -> None:
        self._workflows = await self.repository.get_workflows()
        self._configurations = await self.repository.get_configurations()
        self._sources = await self.repository.get_shared_data_sources()
        self._handlers = await self.repository.get_handler_repository()
        logger.info(
            f"Loaded {len(self._workflows)} workflows, "
            f"{len(self._configurations)} configurations, "
            f"{len(self._sources)} shared data sources"
        )

    # --- Workflows ---

    @property
    def workflows(self) -> list[Workflow]:
        return list(self._workflows)

    def workflows_by_id(self) -> dict[str, Workflow]:
        return {w.id: w for w in self._workflows}

    def find_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return next((w for w in self._workflows if w.id == workflow_id), None)

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.find_workflow(workflow_id)
        if workflow is None:
            raise UnknownItemError(f"Workflow not found: {workflow_id}")
        return workflow

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Insert or replace a workflow by id."""
        saved = workflow.model_copy(deep=True)
        for index, existing in enumerate(self._workflows):
            if existing.id == saved.id:
                self._workflows[index] = saved
                break
        else:
            self._workflows.append(saved)

        orders_changed = self._sync_configuration_order(saved)
        await self.repository.set_workflows(self._workflows)
        if orders_changed:
            await self.repository.set_configurations(self._configurations)
        await self.rebuild_handler_repository()
        logger.info(f"Saved workflow {saved.label} ({len(saved.steps)} steps)")
        return saved

    async def save_workflows(self, workflows: Iterable[Workflow]) -> list[Workflow]:
        return [await self.save_workflow(w) for w in workflows]

    async def delete_workflow(self, workflow_id: str) -> None:
        workflow = self.get_workflow(workflow_id)
        self._workflows = [w for w in self._workflows if w.id != workflow_id]
        for configuration in self._configurations:
            if workflow_id in configuration.workflow_order:
                configuration.workflow_order.remove(workflow_id)
        await self.repository.set_workflows(self._workflows)
        await self.repository.set_configurations(self._configurations)
        await self.rebuild_handler_repository()
        logger.info(f"Deleted workflow {workflow.label}")

    def _sync_configuration_order(self, workflow: Workflow) -> bool:
        """Keep each configuration's order list in step with workflow.configuration_ids."""
        selected = set(workflow.configuration_ids)
        changed = False
        for configuration in self._configurations:
            listed = workflow.id in configuration.workflow_order
            if configuration.id in selected and not listed:
                configuration.workflow_order.append(workflow.id)
                changed = True
            elif configuration.id not in selected and listed:
                configuration.workflow_order.remove(workflow.id)
                changed = True
        return changed

    # --- Interruption handlers ---

    @property
    def handler_repository(self) -> list[InterruptionHandler]:
        return list(self._handlers)

    async def rebuild_handler_repository(self) -> list[InterruptionHandler]:
        self._handlers = build_handler_repository(self._workflows)
        await self.repository.set_handler_repository(self._handlers)
        return list(self._handlers)

    async def add_learned_handler(self, workflow_id: str, handler: InterruptionHandler) -> bool:
        """
        Append a learned handler to a workflow.

        Returns False if the workflow already has a handler with the same
        signature.
        """
        workflow = self.get_workflow(workflow_id)
        signature = handler_signature(handler)
        if any(handler_signature(h) == signature for h in workflow.unexpected_event_handlers):
            logger.info(f"Learned handler already exists on {workflow.label}, skipping duplicate")
            return False
        updated = workflow.model_copy(
            update={"unexpected_event_handlers": [*workflow.unexpected_event_handlers, handler]},
            deep=True,
        )
        await self.save_workflow(updated)
        return True

    # --- Configurations ---

    @property
    def configurations(self) -> list[Configuration]:
        return list(self._configurations)

    def get_configuration(self, configuration_id: str) -> Configuration:
        for configuration in self._configurations:
            if configuration.id == configuration_id:
                return configuration
        raise UnknownItemError(f"Configuration not found: {configuration_id}")

    def _check_name(self, name: str, exclude_id: Optional[str] = None) -> str:
        name = (name or "").strip()
        if not name:
            raise WorkflowValidationError("Configuration name is required")
        if any(c.id != exclude_id and c.name.lower() == name.lower() for c in self._configurations):
            raise WorkflowValidationError("A configuration with this name already exists")
        return name

    async def create_configuration(self, name: str) -> Configuration:
        configuration = Configuration(name=self._check_name(name))
        self._configurations.append(configuration)
        await self.repository.set_configurations(self._configurations)
        return configuration

    async def rename_configuration(self, configuration_id: str, name: str) -> Configuration:
        configuration = self.get_configuration(configuration_id)
        configuration.name = self._check_name(name, exclude_id=configuration_id)
        await self.repository.set_configurations(self._configurations)
        return configuration

    async def delete_configuration(self, configuration_id: str) -> None:
        """Delete a configuration and unlink it from every workflow."""
        self.get_configuration(configuration_id)
        self._configurations = [c for c in self._configurations if c.id != configuration_id]
        for workflow in self._workflows:
            if configuration_id in workflow.configuration_ids:
                workflow.configuration_ids.remove(configuration_id)
        await self.repository.set_configurations(self._configurations)
        await self.repository.set_workflows(self._workflows)

    async def assign_workflow(self, workflow_id: str, configuration_id: str) -> None:
        workflow = self.get_workflow(workflow_id)
        configuration = self.get_configuration(configuration_id)
        if configuration_id not in workflow.configuration_ids:
            workflow.configuration_ids.append(configuration_id)
        if workflow_id not in configuration.workflow_order:
            configuration.workflow_order.append(workflow_id)
        await self.repository.set_workflows(self._workflows)
        await self.repository.set_configurations(self._configurations)

    async def unassign_workflow(self, workflow_id: str,
                                configuration_id: Optional[str] = None) -> None:
        """Remove a workflow from one configuration, or from all when none is given."""
        workflow = self.get_workflow(workflow_id)
        targets = [configuration_id] if configuration_id else list(workflow.configuration_ids)
        workflow.configuration_ids = [c for c in workflow.configuration_ids if c not in targets]
        for configuration in self._configurations:
            if configuration.id in targets and workflow_id in configuration.workflow_order:
                configuration.workflow_order.remove(workflow_id)
        await self.repository.set_workflows(self._workflows)
        await self.repository.set_configurations(self._configurations)

    async def reorder_configuration(self, configuration_id: str,
                                    workflow_ids: list[str]) -> Configuration:
        configuration = self.get_configuration(configuration_id)
        seen: dict[str, None] = {}
        for workflow_id in workflow_ids:
            seen.setdefault(workflow_id, None)
        configuration.workflow_order = list(seen)
        await self.repository.set_configurations(self._configurations)
        return configuration

    def workflows_for_configuration(self, configuration_id: str) -> list[Workflow]:
        """Linked workflows: explicit order first, the rest sorted by name."""
        configuration = self.get_configuration(configuration_id)
        by_id = {w.id: w for w in self._workflows if configuration_id in w.configuration_ids}
        ordered = [by_id.pop(wid) for wid in configuration.workflow_order if wid in by_id]
        unordered = sorted(by_id.values(), key=lambda w: (w.name or "").lower())
        return ordered + unordered

    # --- Shared data sources ---

    @property
    def shared_data_sources(self) -> list[SharedDataSource]:
        return [s.model_copy(deep=True) for s in self._sources]

    async def load_shared_data_sources(self) -> list[SharedDataSource]:
        return self.shared_data_sources

    async def save_shared_data_source(self, source: SharedDataSource) -> SharedDataSource:
        self._sources = [s for s in self._sources if s.id != source.id] + [source]
        await self.repository.set_shared_data_sources(self._sources)
        return source

    async def delete_shared_data_source(self, source_id: str) -> None:
        if not any(s.id == source_id for s in self._sources):
            raise UnknownItemError(f"Shared data source not found: {source_id}")
        self._sources = [s for s in self._sources if s.id != source_id]
        await self.repository.set_shared_data_sources(self._sources)
