"""
GitOpsConfig controller implementation.

This controller watches GitOpsConfig objects in the store and drives each one
through its reconcile flow:

    Observed -> TriggerCheck -> (Idle | Dispatching -> Applying -> Converged)

with any error ending the flow in Failed. Deleting an object moves it to
Deleting, where owned resources are cleaned up per the deletion mode before the
finalizer is released.

Key Concepts:
    - One flow per object: events for an object whose flow is in progress are
      coalesced into a single follow-up run by the TaskService.
    - Status is written through the status subresource, which does not
      re-trigger the controller. Each status write re-reads the object and is
      retried on conflict; the rendering and applying work is never redone.
    - A flow never aborts mid-apply. When the object starts deleting while its
      templating job runs, the apply step is skipped and the queued follow-up
      run performs the cleanup.

Dependencies:
    - gitops_local.trigger.evaluate: Decides whether a reconcile is due.
    - gitops_local.template.TemplateDispatcher: Renders the manifest set.
    - gitops_local.applier.ResourceApplier: Converges the target.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, UTC
from functools import partial
import logging
from typing import Any

from .applier import ResourceApplier
from .config import ControllerConfig
from .exceptions import (
    ConflictError,
    DispatchTimeoutError,
    GitOpsException,
    InputException,
    ObjectNotFoundError,
)
from .inventory import InventoryStore
from .manifest import (
    Condition,
    ConditionStatus,
    FINALIZER,
    GITOPS_CONFIG_KIND,
    GitOpsConfig,
    GitOpsConfigStatus,
    INITIALIZED_ANNOTATION,
    NamedResource,
    Phase,
)
from .retry import retry_on_conflict
from .source_controller import SourceResolver
from .store import Store, StoreEvent
from .task import get_task_service
from .template import TemplateDispatcher
from .trigger import TriggerDecision, evaluate

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "GitOpsConfigController",
    "READY_CONDITION",
    "TRANSIENT_ERRORS",
]

READY_CONDITION = "Ready"

# Errors expected to clear up on their own when the flow runs again
TRANSIENT_ERRORS: tuple[type[GitOpsException], ...] = (
    ConflictError,
    DispatchTimeoutError,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GitOpsConfigController:
    """Controller for reconciling GitOpsConfig objects."""

    def __init__(
        self,
        store: Store,
        source: SourceResolver,
        dispatcher: TemplateDispatcher,
        applier: ResourceApplier,
        inventory: InventoryStore,
        config: ControllerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the controller and start watching the store.

        Args:
            store: The store holding configuration objects and target resources
            source: Resolves the current revision of template and parameter sources
            dispatcher: Runs templating jobs
            applier: Applies rendered manifest sets
            inventory: Records the resources owned by each configuration object
            config: Retry and resync settings
            clock: Source of status timestamps
        """
        self._store = store
        self._source = source
        self._dispatcher = dispatcher
        self._applier = applier
        self._inventory = inventory
        self._config = config or ControllerConfig()
        self._clock = clock or _utcnow
        self._task_service = get_task_service()
        self._tasks: list[asyncio.Task[None]] = []
        # Last document of configuration objects removed from the store
        self._removed: dict[NamedResource, dict[str, Any]] = {}
        self._listeners = [
            store.add_listener(StoreEvent.OBJECT_ADDED, self._on_event, flush=True),
            store.add_listener(StoreEvent.OBJECT_UPDATED, self._on_event),
            store.add_listener(StoreEvent.OBJECT_DELETED, self._on_removed),
        ]
        if self._config.resync_interval:
            self._tasks.append(
                self._task_service.create_background_task(
                    self._resync(self._config.resync_interval), name="resync"
                )
            )

    async def close(self) -> None:
        """Stop watching the store and cancel the periodic resync."""
        _LOGGER.info("Closing GitOpsConfigController")
        for remove in self._listeners:
            remove()
        self._listeners.clear()
        for task in self._tasks:
            task.cancel()
        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        except asyncio.CancelledError:
            pass
        self._tasks.clear()

    def enqueue(self, resource_id: NamedResource) -> None:
        """Request a reconcile flow for the object."""
        self._task_service.schedule(resource_id, partial(self.reconcile, resource_id))

    def _on_event(self, resource_id: NamedResource, obj: dict[str, Any]) -> None:
        if resource_id.kind != GITOPS_CONFIG_KIND:
            return
        _LOGGER.debug("Observed change to %s", resource_id)
        self.enqueue(resource_id)

    def _on_removed(self, resource_id: NamedResource, obj: dict[str, Any]) -> None:
        if resource_id.kind != GITOPS_CONFIG_KIND:
            return
        self._removed[resource_id] = obj
        self.enqueue(resource_id)

    async def _resync(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            objs = self._store.list_objects(kind=GITOPS_CONFIG_KIND)
            _LOGGER.debug("Resyncing %d objects", len(objs))
            for obj in objs:
                metadata = obj["metadata"]
                self.enqueue(
                    NamedResource(GITOPS_CONFIG_KIND, metadata.get("namespace"), metadata["name"])
                )

    async def reconcile(self, resource_id: NamedResource) -> None:
        """Run one reconcile flow for the object."""
        try:
            await self._reconcile(resource_id)
        except ConflictError as err:
            # Status could not be recorded, the next run applies the same render again
            _LOGGER.error("Unable to record status for %s: %s", resource_id, err)
        except ObjectNotFoundError:
            _LOGGER.debug("%s was removed during reconcile", resource_id)

    async def _reconcile(self, resource_id: NamedResource) -> None:
        if (doc := self._store.get(resource_id)) is None:
            await self._orphaned(resource_id)
            return
        self._removed.pop(resource_id, None)
        try:
            config = GitOpsConfig.parse_doc(doc)
        except InputException as err:
            _LOGGER.error("Invalid object %s: %s", resource_id, err)
            await self._record_failure(resource_id, err)
            return

        if config.deleting:
            await self._finalize(config)
            return
        if not config.initialized or FINALIZER not in config.finalizers:
            config = await self._initialize(resource_id)

        if config.status.phase in (None, Phase.OBSERVED):
            await self._set_phase(resource_id, Phase.TRIGGER_CHECK)
        try:
            template_revision, parameter_revision = await asyncio.gather(
                self._source.resolve(config.spec.template_source),
                self._source.resolve(config.spec.parameter_source),
            )
        except GitOpsException as err:
            await self._record_failure(resource_id, err)
            return
        decision = evaluate(config, template_revision, parameter_revision)
        if not decision.due:
            _LOGGER.debug("%s is up to date (%s)", resource_id, decision.reason)
            # Keep the outcome of the last flow
            if config.status.phase not in (Phase.FAILED, Phase.CONVERGED):
                await self._set_phase(resource_id, Phase.IDLE)
            return

        _LOGGER.info("Reconciling %s (%s)", resource_id, decision.reason)
        await self._set_phase(resource_id, Phase.DISPATCHING)
        try:
            manifest_set = await self._dispatcher.dispatch(config)
        except GitOpsException as err:
            await self._record_failure(resource_id, err)
            return

        current = self._store.get(resource_id)
        if current is None or current["metadata"].get("deletionTimestamp"):
            _LOGGER.info("%s is being deleted, skipping apply", resource_id)
            return

        await self._set_phase(resource_id, Phase.APPLYING)
        try:
            prior = self._inventory.get(config.resource_id)
            result = await self._applier.apply(config, manifest_set, prior)
        except GitOpsException as err:
            await self._record_failure(resource_id, err)
            return

        _LOGGER.info(
            "Converged %s at %s: %d created, %d replaced, %d deleted, %d released",
            resource_id,
            manifest_set.revision,
            len(result.created),
            len(result.replaced),
            len(result.deleted),
            len(result.released),
        )
        await self._record_success(
            resource_id,
            decision,
            template_revision=manifest_set.template_revision,
            parameter_revision=manifest_set.parameter_revision,
            resource_count=result.resource_count,
        )

    async def _initialize(self, resource_id: NamedResource) -> GitOpsConfig:
        """Add the finalizer and mark the object as observed."""

        async def write() -> GitOpsConfig:
            if (doc := self._store.get(resource_id)) is None:
                raise ObjectNotFoundError(f"Object {resource_id} not found")
            metadata = doc["metadata"]
            metadata.setdefault("annotations", {})[INITIALIZED_ANNOTATION] = "true"
            finalizers = metadata.setdefault("finalizers", [])
            if FINALIZER not in finalizers:
                finalizers.append(FINALIZER)
            return GitOpsConfig.parse_doc(self._store.replace(doc))

        config = await retry_on_conflict(
            write, self._config.status_backoff, description=f"initialize {resource_id}"
        )
        _LOGGER.info("Observed new object %s", resource_id)
        await self._set_phase(resource_id, Phase.OBSERVED)
        return config

    async def _finalize(self, config: GitOpsConfig) -> None:
        """Clean up owned resources and release the finalizer."""
        resource_id = config.resource_id
        if FINALIZER not in config.finalizers:
            return
        await self._set_phase(resource_id, Phase.DELETING)
        try:
            entry = self._inventory.get(resource_id)
            await self._applier.cleanup(config, entry)
        except GitOpsException as err:
            await self._record_failure(resource_id, err)
            return

        async def write() -> None:
            if (doc := self._store.get(resource_id)) is None:
                return
            metadata = doc["metadata"]
            metadata["finalizers"] = [
                value for value in metadata.get("finalizers") or [] if value != FINALIZER
            ]
            try:
                self._store.replace(doc)
            except ObjectNotFoundError:
                return

        await retry_on_conflict(
            write, self._config.status_backoff, description=f"finalize {resource_id}"
        )
        _LOGGER.info("Finalized %s", resource_id)

    async def _orphaned(self, resource_id: NamedResource) -> None:
        """Clean up after an object removed without running its finalizer."""
        if (doc := self._removed.pop(resource_id, None)) is None:
            return
        try:
            if (entry := self._inventory.get(resource_id)) is None:
                return
            _LOGGER.info("Cleaning up resources of removed object %s", resource_id)
            await self._applier.cleanup(GitOpsConfig.parse_doc(doc), entry)
        except GitOpsException as err:
            _LOGGER.error("Unable to clean up after %s: %s", resource_id, err)

    async def _update_status(
        self,
        resource_id: NamedResource,
        mutate: Callable[[GitOpsConfigStatus], bool | None],
    ) -> None:
        """Re-read the object, apply `mutate` to its status and write it back.

        When `mutate` returns False the write is skipped.
        """

        async def write() -> None:
            if (doc := self._store.get(resource_id)) is None:
                return
            status = GitOpsConfigStatus.from_dict(doc.get("status") or {})
            if mutate(status) is False:
                return
            doc["status"] = status.to_dict()
            try:
                self._store.replace_status(doc)
            except ObjectNotFoundError:
                return

        await retry_on_conflict(
            write, self._config.status_backoff, description=f"status of {resource_id}"
        )

    async def _set_phase(self, resource_id: NamedResource, phase: Phase) -> None:
        def mutate(status: GitOpsConfigStatus) -> bool:
            if status.phase == phase:
                return False
            status.phase = phase
            status.last_transition_time = self._now()
            return True

        await self._update_status(resource_id, mutate)

    async def _record_success(
        self,
        resource_id: NamedResource,
        decision: TriggerDecision,
        template_revision: str | None,
        parameter_revision: str | None,
        resource_count: int,
    ) -> None:
        now = self._now()

        def mutate(status: GitOpsConfigStatus) -> None:
            status.phase = Phase.CONVERGED
            status.last_template_revision = template_revision
            status.last_parameter_revision = parameter_revision
            status.last_spec_hash = decision.spec_hash
            status.last_trigger_token = decision.trigger_token
            status.resource_count = resource_count
            status.last_transition_time = now
            status.set_condition(
                Condition(
                    type=READY_CONDITION,
                    status=ConditionStatus.TRUE,
                    reason=Phase.CONVERGED.value,
                    message=f"Applied revision {template_revision}/{parameter_revision}",
                    last_transition_time=now,
                )
            )

        await self._update_status(resource_id, mutate)

    async def _record_failure(
        self, resource_id: NamedResource, err: GitOpsException
    ) -> None:
        transient = isinstance(err, TRANSIENT_ERRORS)
        _LOGGER.log(
            logging.WARNING if transient else logging.ERROR,
            "Reconcile of %s failed: %s",
            resource_id,
            err,
        )
        now = self._now()
        message = f"{'Transient' if transient else 'Durable'} failure: {err}"

        def mutate(status: GitOpsConfigStatus) -> None:
            status.phase = Phase.FAILED
            status.last_transition_time = now
            status.set_condition(
                Condition(
                    type=READY_CONDITION,
                    status=ConditionStatus.FALSE,
                    reason=type(err).__name__,
                    message=message,
                    last_transition_time=now,
                )
            )

        await self._update_status(resource_id, mutate)

    def _now(self) -> str:
        return self._clock().isoformat()
