"""Orchestrator for gitops-local.

This module wires the store, source resolver, template dispatcher, inventory
and applier into a running GitOpsConfigController and provides a way to run
reconciliation until every flow has finished.
"""

import logging

from .applier import ResourceApplier
from .config import OrchestratorConfig
from .controller import GitOpsConfigController
from .inventory import InventoryStore
from .manifest import GITOPS_CONFIG_KIND, GitOpsConfig, Phase
from .source_controller import GitSource, SourceResolver
from .store import Store
from .task import get_task_service
from .template import JobRunner, LocalJobRunner, TemplateDispatcher

_LOGGER = logging.getLogger(__name__)

__all__ = ["Orchestrator"]


class Orchestrator:
    """Orchestrator for the reconcile controller.

    The orchestrator is responsible for:
    - Creating the components used by the controller
    - Starting and stopping the controller
    - Running until all reconcile flows are complete
    """

    def __init__(
        self,
        store: Store,
        source: SourceResolver | None = None,
        runner: JobRunner | None = None,
        config: OrchestratorConfig | None = None,
    ) -> None:
        """Initialize the orchestrator."""
        self.store = store
        self.source = source or GitSource()
        self.runner = runner or LocalJobRunner()
        self.config = config or OrchestratorConfig()
        self.inventory = InventoryStore(store, self.config.applier)
        self.dispatcher = TemplateDispatcher(
            store, self.source, self.runner, self.config.dispatcher
        )
        self.applier = ResourceApplier(store, self.inventory, self.config.applier)
        self.controller: GitOpsConfigController | None = None

    async def start(self) -> None:
        """Start the controller."""
        if self.controller is not None:
            return
        _LOGGER.info("Starting orchestrator")
        self.controller = GitOpsConfigController(
            self.store,
            self.source,
            self.dispatcher,
            self.applier,
            self.inventory,
            self.config.controller,
        )

    async def stop(self) -> None:
        """Stop the controller after in progress flows complete."""
        if self.controller is None:
            return
        _LOGGER.info("Stopping orchestrator")
        await self.controller.close()
        await get_task_service().block_till_done()
        self.controller = None
        _LOGGER.info("Orchestrator stopped")

    async def run_until_idle(self) -> None:
        """Wait until no reconcile flow is in progress."""
        await get_task_service().block_till_done()

    def failed_configs(self) -> list[GitOpsConfig]:
        """Return configuration objects whose last flow failed."""
        return [
            config
            for config in self.configs()
            if config.status.phase == Phase.FAILED
        ]

    def configs(self) -> list[GitOpsConfig]:
        """Return every configuration object in the store."""
        return [
            GitOpsConfig.parse_doc(doc)
            for doc in self.store.list_objects(kind=GITOPS_CONFIG_KIND)
        ]

    async def run(self) -> bool:
        """Reconcile every configuration object once and stop.

        Returns:
            bool: True if no configuration object failed.
        """
        await self.start()
        try:
            await self.run_until_idle()
        finally:
            await self.stop()
        if failed := self.failed_configs():
            for config in failed:
                _LOGGER.error("%s failed", config.namespaced_name)
            return False
        return True
